"""
Wallet Ledger - the only write path to a user's wallet balance

Every balance change is one ``apply_delta`` call under a row lock on the
user, recorded as a WalletLedgerEntry with a unique reference. Replaying a
reference is a no-op, so retries never double-apply.

Two layers:
- ``debit`` / ``credit_refund`` join the caller's open unit of work and raise
  typed errors (used inside booking transitions).
- ``charge`` / ``refund`` and the topup commands are complete atomic units
  returning an ``OperationResult``.
"""
import secrets
import string
from decimal import Decimal
from typing import Optional
from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from parkwash.core.clock import Clock, system_clock
from parkwash.core.config import settings
from parkwash.core.exceptions import (
    AlreadyProcessedError,
    AppException,
    ErrorCode,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidCodeError,
    NotFoundException,
    OperationResult,
    TransactionStatusError,
    ValidationException,
)
from parkwash.core.logging import get_logger
from parkwash.db.database import atomic
from parkwash.db.models.user import User
from parkwash.db.models.wallet_ledger import WalletLedgerEntry
from parkwash.db.models.wallet_transaction import (
    WalletTransaction,
    TransactionType,
    TransactionStatus,
)
from parkwash.domain.services.outbox_service import OutboxService
from parkwash.domain.services.settlement import to_money, ZERO

logger = get_logger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_REFERENCE_ALPHABET = string.ascii_letters + string.digits


def generate_reference(now) -> str:
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"TXN{now:%Y%m%d%H%M%S}{suffix}"


def generate_verification_code(length: Optional[int] = None) -> str:
    length = length or settings.VERIFICATION_CODE_LENGTH
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


class WalletLedger:
    """Prepaid wallet: topups, payments, refunds and reconciliation"""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock
        self.outbox = OutboxService(db, clock)

    # ==================== Core primitive ====================

    async def lock_user(self, user_id: int) -> User:
        """Row lock on the user; held until the caller's unit ends"""
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundException("User", user_id)
        return user

    async def apply_delta(self, user_id: int, signed_amount, reference: str) -> Decimal:
        """
        Add ``signed_amount`` to the user's balance exactly once per reference.

        Runs inside the caller's transaction and does not commit. Raises
        InsufficientFundsError (nothing written) if the balance would go
        below zero.
        """
        amount = to_money(signed_amount)
        user = await self.lock_user(user_id)

        result = await self.db.execute(
            select(WalletLedgerEntry).where(WalletLedgerEntry.reference == reference)
        )
        if result.scalar_one_or_none() is not None:
            logger.info(
                "Ledger reference already applied",
                extra_data={"user_id": user_id, "reference": reference}
            )
            return user.wallet_balance

        current = user.wallet_balance or ZERO
        new_balance = current + amount
        if new_balance < 0:
            raise InsufficientFundsError(user_id, current, -amount)

        user._wallet_balance = new_balance
        self.db.add(WalletLedgerEntry(
            user_id=user_id,
            reference=reference,
            amount=amount,
            balance_after=new_balance,
            created_at=self.clock.now(),
        ))
        await self.db.flush()
        return new_balance

    # ==================== Payments and refunds ====================

    async def _find_by_reference(self, reference: str) -> Optional[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction).where(WalletTransaction.reference == reference)
        )
        return result.scalar_one_or_none()

    async def _record(
        self,
        user_id: int,
        amount,
        reason: str,
        reference: str,
        tx_type: TransactionType,
    ) -> WalletTransaction:
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError(amount, "must be positive")

        existing = await self._find_by_reference(reference)
        if existing is not None:
            if existing.type != tx_type or existing.user_id != user_id:
                raise ValidationException(f"Reference {reference} belongs to another transaction", field="reference")
            if existing.amount != amount:
                raise ValidationException(
                    f"Reference {reference} was already used for {existing.amount}",
                    field="amount",
                    details={"recorded_amount": str(existing.amount), "requested_amount": str(amount)},
                )
            return existing

        signed = -amount if tx_type == TransactionType.PAYMENT else amount
        balance_after = await self.apply_delta(user_id, signed, reference)

        now = self.clock.now()
        transaction = WalletTransaction(
            reference=reference,
            user_id=user_id,
            type=tx_type,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            payment_method="wallet",
            description=reason,
            balance_after=balance_after,
            created_at=now,
            approved_at=now,
        )
        self.db.add(transaction)
        await self.db.flush()
        return transaction

    async def debit(self, user_id: int, amount, reason: str, reference: str) -> WalletTransaction:
        """Completed payment in the caller's unit; idempotent per reference"""
        return await self._record(user_id, amount, reason, reference, TransactionType.PAYMENT)

    async def credit_refund(self, user_id: int, amount, reason: str, reference: str) -> WalletTransaction:
        """Completed refund in the caller's unit; idempotent per reference"""
        return await self._record(user_id, amount, reason, reference, TransactionType.REFUND)

    async def charge(
        self, user_id: int, amount, reason: str, reference: Optional[str] = None
    ) -> OperationResult[WalletTransaction]:
        """Debit as its own atomic unit. On failure balance and log are unchanged."""
        reference = reference or generate_reference(self.clock.now())
        try:
            async with atomic(self.db):
                transaction = await self.debit(user_id, amount, reason, reference)
        except AppException as exc:
            return OperationResult.failure(exc)
        return OperationResult.success(transaction)

    async def refund(
        self, user_id: int, amount, reason: str, reference: Optional[str] = None
    ) -> OperationResult[WalletTransaction]:
        reference = reference or generate_reference(self.clock.now())
        try:
            async with atomic(self.db):
                transaction = await self.credit_refund(user_id, amount, reason, reference)
        except AppException as exc:
            return OperationResult.failure(exc)
        return OperationResult.success(transaction)

    # ==================== Topups ====================

    async def initiate_topup(
        self, user_id: int, amount, method: str, mobile_number: str
    ) -> OperationResult[WalletTransaction]:
        """Create a pending topup and send the customer its verification code"""
        try:
            amount = to_money(amount)
            low = to_money(settings.TOPUP_MIN_AMOUNT)
            high = to_money(settings.TOPUP_MAX_AMOUNT)
            if not low <= amount <= high:
                raise InvalidAmountError(amount, f"must be between {low} and {high}")
            if method not in settings.topup_methods:
                raise ValidationException(f"Unsupported payment method: {method}", field="method")

            async with atomic(self.db):
                if await self.db.get(User, user_id) is None:
                    raise NotFoundException("User", user_id)

                now = self.clock.now()
                transaction = WalletTransaction(
                    reference=generate_reference(now),
                    user_id=user_id,
                    type=TransactionType.TOPUP,
                    amount=amount,
                    status=TransactionStatus.PENDING,
                    payment_method=method,
                    mobile_number=mobile_number,
                    verification_code=generate_verification_code(),
                    description=f"Wallet top-up via {method}",
                    created_at=now,
                )
                self.db.add(transaction)
        except AppException as exc:
            return OperationResult.failure(exc)

        logger.info(
            "Topup initiated",
            extra_data={"user_id": user_id, "reference": transaction.reference, "amount": str(amount)}
        )
        await self.outbox.queue_verification_code(transaction)
        return OperationResult.success(transaction)

    async def _lock_transaction(self, *conditions) -> Optional[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction)
            .where(*conditions)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def verify_topup(self, reference: str, code: str) -> OperationResult[WalletTransaction]:
        """pending -> verified when ``code`` matches exactly; balance untouched"""
        try:
            async with atomic(self.db):
                transaction = await self._lock_transaction(
                    WalletTransaction.reference == reference,
                    WalletTransaction.type == TransactionType.TOPUP,
                )
                if transaction is None:
                    raise NotFoundException("Transaction", reference, ErrorCode.TRANSACTION_NOT_FOUND)
                if transaction.status != TransactionStatus.PENDING:
                    raise TransactionStatusError(reference, transaction.status.value, "pending")
                if not code or not secrets.compare_digest(transaction.verification_code.encode(), code.encode()):
                    raise InvalidCodeError(reference)

                transaction.status = TransactionStatus.VERIFIED
                transaction.verified_at = self.clock.now()
        except AppException as exc:
            return OperationResult.failure(exc)

        logger.info("Topup verified", extra_data={"reference": reference})
        return OperationResult.success(transaction)

    async def _lock_topup_for_decision(self, transaction_id: int) -> WalletTransaction:
        transaction = await self._lock_transaction(
            WalletTransaction.id == transaction_id,
            WalletTransaction.type == TransactionType.TOPUP,
        )
        if transaction is None:
            raise NotFoundException("Transaction", transaction_id, ErrorCode.TRANSACTION_NOT_FOUND)
        if transaction.status in (TransactionStatus.COMPLETED, TransactionStatus.FAILED):
            raise AlreadyProcessedError("Transaction", transaction_id, transaction.status.value)
        if transaction.status != TransactionStatus.VERIFIED:
            raise TransactionStatusError(transaction.reference, transaction.status.value, "verified")
        return transaction

    async def approve_topup(self, transaction_id: int, approver_id: int) -> OperationResult[WalletTransaction]:
        """verified -> completed and credit the amount, in one unit"""
        try:
            async with atomic(self.db):
                transaction = await self._lock_topup_for_decision(transaction_id)
                balance_after = await self.apply_delta(
                    transaction.user_id, transaction.amount, transaction.reference
                )
                transaction.status = TransactionStatus.COMPLETED
                transaction.approved_by = approver_id
                transaction.approved_at = self.clock.now()
                transaction.balance_after = balance_after
        except AppException as exc:
            return OperationResult.failure(exc)

        logger.info(
            "Topup approved",
            extra_data={
                "transaction_id": transaction_id,
                "approver_id": approver_id,
                "amount": str(transaction.amount),
            }
        )
        await self.outbox.queue_topup_approved(transaction)
        return OperationResult.success(transaction)

    async def reject_topup(
        self, transaction_id: int, approver_id: int, reason: str
    ) -> OperationResult[WalletTransaction]:
        """verified -> failed; the balance is not touched"""
        try:
            async with atomic(self.db):
                transaction = await self._lock_topup_for_decision(transaction_id)
                transaction.status = TransactionStatus.FAILED
                transaction.approved_by = approver_id
                transaction.approved_at = self.clock.now()
                transaction.description = f"{transaction.description or ''} (Rejected: {reason})".strip()
        except AppException as exc:
            return OperationResult.failure(exc)

        logger.info(
            "Topup rejected",
            extra_data={"transaction_id": transaction_id, "approver_id": approver_id, "reason": reason}
        )
        await self.outbox.queue_topup_rejected(transaction, reason)
        return OperationResult.success(transaction)

    # ==================== Reads ====================

    async def get_balance(self, user_id: int) -> Decimal:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundException("User", user_id)
        return user.wallet_balance

    async def get_history(self, user_id: int, limit: int = 20) -> list[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_topups(
        self,
        status: Optional[TransactionStatus] = TransactionStatus.VERIFIED,
        limit: int = 50,
    ) -> list[WalletTransaction]:
        """Topups across all users, oldest first. Defaults to the ones waiting for a staff decision."""
        query = (
            select(WalletTransaction)
            .where(WalletTransaction.type == TransactionType.TOPUP)
            .order_by(WalletTransaction.created_at.asc(), WalletTransaction.id.asc())
            .limit(limit)
        )
        if status is not None:
            query = query.where(WalletTransaction.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def reconcile(self, user_id: int) -> dict:
        """
        Recompute the balance from completed transactions and from the ledger.

        ``consistent`` is False when either sum drifts from the stored balance.
        """
        balance = await self.get_balance(user_id)

        signed = case(
            (WalletTransaction.type == TransactionType.PAYMENT, -WalletTransaction.amount),
            else_=WalletTransaction.amount,
        )
        expected = await self.db.scalar(
            select(func.coalesce(func.sum(signed), 0)).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.status == TransactionStatus.COMPLETED,
            )
        )
        ledger = await self.db.scalar(
            select(func.coalesce(func.sum(WalletLedgerEntry.amount), 0))
            .where(WalletLedgerEntry.user_id == user_id)
        )

        balance = to_money(balance or 0)
        expected = to_money(expected)
        ledger = to_money(ledger)
        drift = balance - expected
        if drift or balance != ledger:
            logger.error(
                "Wallet drift detected",
                extra_data={
                    "user_id": user_id,
                    "balance": str(balance),
                    "expected": str(expected),
                    "ledger": str(ledger),
                }
            )
        return {
            "user_id": user_id,
            "balance": balance,
            "expected_balance": expected,
            "ledger_balance": ledger,
            "drift": drift,
            "consistent": drift == 0 and balance == ledger,
        }
