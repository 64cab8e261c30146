"""
Wallet API Routes - balance, history and the customer side of topups
"""
from datetime import datetime
from decimal import Decimal
from typing import List
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from parkwash.api.dependencies.clock import get_clock
from parkwash.core.clock import Clock
from parkwash.db.database import get_db
from parkwash.db.models.wallet_transaction import TransactionType, TransactionStatus
from parkwash.domain.services.wallet_service import WalletLedger

router = APIRouter()


class BalanceResponse(BaseModel):
    user_id: int
    balance: Decimal


class TransactionResponse(BaseModel):
    id: int
    reference: str
    type: TransactionType
    amount: Decimal
    status: TransactionStatus
    payment_method: str | None
    description: str | None
    balance_after: Decimal | None
    created_at: datetime | None
    verified_at: datetime | None
    approved_at: datetime | None

    class Config:
        from_attributes = True


class TopupRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    method: str = Field(..., min_length=1, max_length=20)
    mobile_number: str = Field(..., min_length=6, max_length=20)


class VerifyTopupRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


@router.get(
    "/{user_id}/balance",
    response_model=BalanceResponse,
    summary="Current wallet balance",
)
async def get_balance(
    user_id: int,
    db: AsyncSession = Depends(get_db)
):
    balance = await WalletLedger(db).get_balance(user_id)
    return BalanceResponse(user_id=user_id, balance=balance)


@router.get(
    "/{user_id}/history",
    response_model=List[TransactionResponse],
    summary="Wallet transactions, newest first",
)
async def get_history(
    user_id: int,
    limit: int = 20,
    db: AsyncSession = Depends(get_db)
):
    return await WalletLedger(db).get_history(user_id, min(max(limit, 1), 100))


@router.post(
    "/{user_id}/topups",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a topup",
    description="Creates a pending topup and emails the verification code to the customer.",
)
async def initiate_topup(
    user_id: int,
    body: TopupRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await WalletLedger(db, clock).initiate_topup(
        user_id, body.amount, body.method, body.mobile_number
    )
    return result.unwrap()


@router.post(
    "/topups/{reference}/verify",
    response_model=TransactionResponse,
    summary="Verify a topup with the emailed code",
)
async def verify_topup(
    reference: str,
    body: VerifyTopupRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await WalletLedger(db, clock).verify_topup(reference, body.code)
    return result.unwrap()
