"""
services/booking/router.py
Booking lifecycle for paid services.
States: confirmed → in-progress → completed | cancelled (pending and refunded are settable too).
Every status change is written to BookingAuditLog.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.wallet.ledger import add_booking_points
from shared.middleware.auth import get_current_user, get_provider_for_user
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    BookingType,
    BookingUrgency,
    ServiceProvider,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    FeedbackRequest,
    PaginatedResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

UPDATABLE_STATUSES = {
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
}


# ── Helpers ───────────────────────────────────────────────────

async def generate_booking_number(db: AsyncSession) -> str:
    """Human-readable booking number: RS{epoch millis}{count+1 padded to 4}."""
    count = await db.scalar(select(func.count(Booking.id)))
    return f"RS{int(time.time() * 1000)}{(count or 0) + 1:04d}"


async def _get_booking_or_404(booking_id: UUID, db: AsyncSession) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


async def _get_provider(provider_id: UUID, db: AsyncSession) -> ServiceProvider | None:
    result = await db.execute(select(ServiceProvider).where(ServiceProvider.id == provider_id))
    return result.scalar_one_or_none()


async def log_status_change(
    db: AsyncSession,
    booking: Booking,
    from_status: str | None,
    to_status: str,
    changed_by: User | None,
    reason: str = None,
):
    """Append an immutable audit log entry for every status change."""
    db.add(BookingAuditLog(
        booking_id=booking.id,
        from_status=from_status,
        to_status=to_status,
        changed_by_id=changed_by.id if changed_by else None,
        reason=reason,
    ))


async def _ensure_participant(booking: Booking, user: User, db: AsyncSession) -> None:
    """Booking owner, the booked provider's user, or an admin."""
    if user.role == UserRole.ADMIN or booking.user_id == user.id:
        return
    provider = await get_provider_for_user(user, db)
    if not provider or booking.provider_id != provider.id:
        raise HTTPException(status_code=403, detail="Not authorized to access this booking")


async def complete_booking(db: AsyncSession, booking: Booking) -> None:
    """
    Mark a booking completed and credit everyone's counters:
    user completed bookings and coins, provider completed bookings,
    and booking reward points in the user's wallet. A booking is only ever
    credited once.
    """
    if booking.status == BookingStatus.COMPLETED:
        return

    booking.status = BookingStatus.COMPLETED
    booking.completed_at = datetime.now(timezone.utc)

    user = await db.get(User, booking.user_id)
    if user:
        user.completed_bookings = (user.completed_bookings or 0) + 1
        user.coins_earned = (user.coins_earned or 0) + settings.BOOKING_COMPLETION_COINS

    provider = await _get_provider(booking.provider_id, db)
    if provider:
        provider.completed_bookings = (provider.completed_bookings or 0) + 1

    points = await add_booking_points(db, booking)
    logger.info(f"Booking {booking.booking_number} completed, {points} points credited")


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Book a provider. The total is the quoted base amount, or the provider's
    base price when none is sent. New bookings start confirmed.
    """
    provider = await _get_provider(data.provider_id, db)
    if not provider:
        raise HTTPException(status_code=404, detail="Service provider not found")

    amount = Decimal(str(data.base_amount)) if data.base_amount else provider.base_price

    booking = Booking(
        booking_number=await generate_booking_number(db),
        user_id=current_user.id,
        provider_id=provider.id,
        service_type=data.service_type,
        problem_description=data.problem_description,
        booking_type=BookingType(data.booking_type),
        urgency=BookingUrgency(data.urgency),
        location=data.location.model_dump(),
        scheduled_date=data.scheduled_date,
        scheduled_time=data.scheduled_time,
        base_amount=amount,
        total_amount=amount,
        is_paid=False,
        status=BookingStatus.CONFIRMED,
    )
    db.add(booking)
    await db.flush()

    current_user.total_bookings = (current_user.total_bookings or 0) + 1
    provider.total_bookings = (provider.total_bookings or 0) + 1

    await log_status_change(db, booking, None, BookingStatus.CONFIRMED.value, current_user)
    await db.commit()

    logger.info(f"Booking created: {booking.booking_number} by user {current_user.id}")
    return BookingResponse.model_validate(booking)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_my_bookings(
    status_filter: str = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings made by the caller. Helpers also see bookings made with their provider profile."""
    conditions = [Booking.user_id == current_user.id]
    provider = await get_provider_for_user(current_user, db)
    if provider:
        conditions.append(Booking.provider_id == provider.id)
    query = select(Booking).where(or_(*conditions))

    if status_filter:
        try:
            query = query.where(Booking.status == BookingStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    bookings = result.scalars().all()

    return PaginatedResponse(
        items=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=-(-total // page_size),
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await _get_booking_or_404(booking_id, db)
    await _ensure_participant(booking, current_user, db)
    return BookingResponse.model_validate(booking)


# ── Status & Feedback ─────────────────────────────────────────

@router.put("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Set a new status. Cancellation records who, why and when; completion
    credits counters, coins and wallet points.
    """
    try:
        new_status = BookingStatus(data.status)
    except ValueError:
        new_status = None
    if new_status not in UPDATABLE_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")

    booking = await _get_booking_or_404(booking_id, db)
    await _ensure_participant(booking, current_user, db)

    if booking.status == new_status:
        raise HTTPException(status_code=400, detail=f"Booking is already {new_status.value}")

    prev_status = booking.status.value

    if new_status == BookingStatus.COMPLETED:
        await complete_booking(db, booking)
    else:
        booking.status = new_status
        if new_status == BookingStatus.CANCELLED:
            booking.cancelled_by_id = current_user.id
            booking.cancellation_reason = data.reason
            booking.cancelled_at = datetime.now(timezone.utc)
            provider = await _get_provider(booking.provider_id, db)
            if provider:
                provider.cancelled_bookings = (provider.cancelled_bookings or 0) + 1

    await log_status_change(db, booking, prev_status, new_status.value, current_user, data.reason)
    await db.commit()
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/feedback", response_model=BookingResponse)
async def submit_feedback(
    booking_id: UUID,
    data: FeedbackRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Rate a completed booking. Folds the rating into the provider's running average."""
    booking = await _get_booking_or_404(booking_id, db)
    if booking.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Only the booking owner can leave feedback")
    if booking.status != BookingStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Can only rate completed bookings")

    booking.rating = data.rating
    booking.feedback_comment = data.comment

    provider = await _get_provider(booking.provider_id, db)
    if provider:
        provider.add_rating(data.rating)

    await db.commit()
    return BookingResponse.model_validate(booking)
