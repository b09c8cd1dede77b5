"""
services/public_booking/router.py
Unauthenticated booking-link endpoints. The token in the path is the credential.
Errors carry a `state` so the booking page can show the right screen:
invalid_link, already_booked, expired, processing or no_slots.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.public_booking import gateway
from shared.schemas.schemas import (
    ErrorResponse,
    PublicBookingPage,
    PublicBookingStatus,
    PublicBookingSubmitRequest,
    PublicBookingSubmitResponse,
)

router = APIRouter(prefix="/public/bookings", tags=["Public Booking"])

_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.get("/{token}", response_model=PublicBookingPage, responses=_ERRORS)
async def get_booking_page(token: str, db: AsyncSession = Depends(get_db)):
    """Booking page data; returns the existing booking when the link was already used."""
    return await gateway.get_booking_page_data(db, token)


@router.post(
    "/{token}",
    response_model=PublicBookingSubmitResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
)
async def submit_booking(
    token: str,
    data: PublicBookingSubmitRequest,
    db: AsyncSession = Depends(get_db),
):
    return await gateway.submit_booking(db, token, data)


@router.get("/{token}/status", response_model=PublicBookingStatus, responses=_ERRORS)
async def get_booking_status(token: str, db: AsyncSession = Depends(get_db)):
    return await gateway.get_booking_status(db, token)
