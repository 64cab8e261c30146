"""
Parking Booking API Routes - customer side
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
from parkwash.db.models.parking_booking import ParkingBookingStatus
from parkwash.domain.services.parking_booking_service import ParkingBookingService

router = APIRouter()


class ParkingBookingResponse(BaseModel):
    id: int
    user_id: int
    parking_id: int
    slot_id: int
    status: ParkingBookingStatus
    hours: int
    total_price: Decimal
    extra_minutes: int
    extra_charges: Decimal
    grand_total: Decimal
    end_time: datetime | None
    actual_end_time: datetime | None
    checkout_requested: bool
    checkout_approved: bool
    ticket_number: str | None
    created_at: datetime | None

    class Config:
        from_attributes = True


class CancellationResponse(BaseModel):
    booking: ParkingBookingResponse
    refund_amount: Decimal


class AvailabilityResponse(BaseModel):
    parking_id: int
    total_slots: int
    available_slots: int
    price_per_hour: Decimal


class CreateParkingBookingRequest(BaseModel):
    user_id: int
    slot_id: int
    hours: int = Field(..., ge=1)


class CustomerActionRequest(BaseModel):
    user_id: int


class ExtendRequest(BaseModel):
    user_id: int
    additional_hours: int = Field(..., ge=1)


def _service(db: AsyncSession, clock: Clock) -> ParkingBookingService:
    return ParkingBookingService(db, clock)


@router.post(
    "",
    response_model=ParkingBookingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reserve a slot",
    description="Charges price_per_hour x hours from the wallet, reserves the slot and confirms the booking.",
)
async def create_parking_booking(
    body: CreateParkingBookingRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await _service(db, clock).create_parking_booking(body.user_id, body.slot_id, body.hours)
    return result.unwrap()


@router.get("", response_model=List[ParkingBookingResponse], summary="A customer's bookings")
async def list_parking_bookings(
    user_id: int,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
):
    return await ParkingBookingService(db).list_user_bookings(user_id, min(max(limit, 1), 100))


@router.get(
    "/availability/{parking_id}",
    response_model=AvailabilityResponse,
    summary="Free slots in a parking",
)
async def get_availability(
    parking_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await ParkingBookingService(db).get_availability(parking_id)


@router.get("/{booking_id}", response_model=ParkingBookingResponse)
async def get_parking_booking(
    booking_id: int,
    user_id: int | None = None,
    db: AsyncSession = Depends(get_db),
):
    return await ParkingBookingService(db).get_booking(booking_id, user_id)


@router.post("/{booking_id}/check-in", response_model=ParkingBookingResponse, summary="Start parking")
async def check_in(
    booking_id: int,
    body: CustomerActionRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await _service(db, clock).check_in(booking_id, body.user_id)
    return result.unwrap()


@router.post(
    "/{booking_id}/checkout",
    response_model=ParkingBookingResponse,
    summary="Request checkout",
    description=(
        "Prices the overrun in 10-minute blocks. With nothing owed the booking "
        "moves straight to checkout_paid; otherwise pay via /pay-extra."
    ),
)
async def request_checkout(
    booking_id: int,
    body: CustomerActionRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await _service(db, clock).request_checkout(booking_id, body.user_id)
    return result.unwrap()


@router.post("/{booking_id}/pay-extra", response_model=ParkingBookingResponse, summary="Pay extra charges")
async def pay_extra_charges(
    booking_id: int,
    body: CustomerActionRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await _service(db, clock).pay_extra_charges(booking_id, body.user_id)
    return result.unwrap()


@router.post("/{booking_id}/extend", response_model=ParkingBookingResponse, summary="Buy more hours")
async def extend_parking_booking(
    booking_id: int,
    body: ExtendRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await _service(db, clock).extend_parking_booking(
        booking_id, body.additional_hours, body.user_id
    )
    return result.unwrap()


@router.post("/{booking_id}/cancel", response_model=CancellationResponse, summary="Cancel before check-in")
async def cancel_parking_booking(
    booking_id: int,
    body: CustomerActionRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await _service(db, clock).cancel_parking_booking(booking_id, body.user_id)
    booking = result.unwrap()
    return CancellationResponse(
        booking=ParkingBookingResponse.model_validate(booking),
        refund_amount=result.meta["refund_amount"],
    )
