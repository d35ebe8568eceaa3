"""
services/emergency/router.py
Emergency requests: create → dispatch (background) → track → complete → feedback.
Status changes always append to the request's tracking log.
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from config.settings import settings
from services.booking.router import generate_booking_number, log_status_change
from services.emergency.dispatch import dispatch_emergency
from shared.middleware.auth import get_current_user, get_provider_for_user
from shared.models.models import (
    Booking,
    BookingStatus,
    BookingType,
    BookingUrgency,
    EmergencyService,
    EmergencyStatus,
    EmergencyType,
    Priority,
    ServiceProvider,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingResponse,
    CancelRequest,
    EmergencyCreateRequest,
    EmergencyResponse,
    EmergencyStatusUpdateRequest,
    FeedbackRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emergency", tags=["Emergency"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_emergency_or_404(emergency_id: UUID, db: AsyncSession) -> EmergencyService:
    emergency = await db.get(EmergencyService, emergency_id)
    if not emergency:
        raise HTTPException(status_code=404, detail="Emergency service not found")
    return emergency


async def _is_assigned_provider(emergency: EmergencyService, user: User, db: AsyncSession) -> bool:
    if not emergency.provider_id:
        return False
    provider = await get_provider_for_user(user, db)
    return provider is not None and provider.id == emergency.provider_id


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=EmergencyResponse, status_code=status.HTTP_201_CREATED)
async def request_emergency_service(
    data: EmergencyCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Raise an emergency request. Responds immediately with the tracking link;
    provider matching runs after the response is sent.
    """
    emergency = EmergencyService(
        user_id=current_user.id,
        service_type=EmergencyType(data.service_type),
        description=data.description,
        address=data.location.address or "Location provided by coordinates",
        latitude=data.location.latitude,
        longitude=data.location.longitude,
        priority=Priority(data.priority),
        status=EmergencyStatus.REQUESTED,
        requested_at=datetime.now(timezone.utc),
        tracking=[],
    )
    emergency.add_tracking(
        EmergencyStatus.REQUESTED.value,
        "Emergency request received",
        data.location.latitude,
        data.location.longitude,
    )
    db.add(emergency)
    await db.commit()

    background_tasks.add_task(dispatch_emergency, emergency.id, redis)

    logger.info(f"Emergency {emergency.id} requested by user {current_user.id} ({data.service_type})")
    return EmergencyResponse.model_validate(emergency)


# ── Lists ─────────────────────────────────────────────────────

@router.get("/user/services", response_model=list[EmergencyResponse])
async def get_user_emergency_services(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(EmergencyService)
        .where(EmergencyService.user_id == current_user.id)
        .order_by(EmergencyService.created_at.desc())
    )
    return [EmergencyResponse.model_validate(e) for e in result.scalars().all()]


@router.get("/provider/services", response_model=list[EmergencyResponse])
async def get_provider_emergency_services(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Emergencies assigned to the caller's provider profile."""
    provider = await get_provider_for_user(current_user, db)
    if not provider:
        return []
    result = await db.execute(
        select(EmergencyService)
        .where(EmergencyService.provider_id == provider.id)
        .order_by(EmergencyService.created_at.desc())
    )
    return [EmergencyResponse.model_validate(e) for e in result.scalars().all()]


# ── Single Request ────────────────────────────────────────────

@router.get("/{emergency_id}", response_model=EmergencyResponse)
async def get_emergency_service(
    emergency_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Visible to the requester, the assigned provider and admins."""
    emergency = await _get_emergency_or_404(emergency_id, db)
    if (
        emergency.user_id != current_user.id
        and current_user.role != UserRole.ADMIN
        and not await _is_assigned_provider(emergency, current_user, db)
    ):
        raise HTTPException(status_code=403, detail="Not authorized to view this emergency service")
    return EmergencyResponse.model_validate(emergency)


@router.put("/{emergency_id}/status", response_model=EmergencyResponse)
async def update_emergency_status(
    emergency_id: UUID,
    data: EmergencyStatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Provider progress update with the provider's current position.
    assigned → sets ETA; started → in-progress; arrived/completed → completed.
    Any other status string is only recorded in the tracking log.
    A provider may take an unassigned request by sending `assigned`.
    """
    emergency = await _get_emergency_or_404(emergency_id, db)

    if current_user.role != UserRole.ADMIN:
        provider = await get_provider_for_user(current_user, db)
        if emergency.provider_id:
            allowed = provider is not None and provider.id == emergency.provider_id
        else:
            allowed = provider is not None and data.status == "assigned"
        if not allowed:
            raise HTTPException(status_code=403, detail="Not authorized to update this emergency service")

    if emergency.status in (EmergencyStatus.COMPLETED, EmergencyStatus.CANCELLED):
        raise HTTPException(
            status_code=400,
            detail=f"Emergency service is already {emergency.status.value}",
        )

    if current_user.role != UserRole.ADMIN and not emergency.provider_id:
        emergency.provider_id = provider.id

    now = datetime.now(timezone.utc)
    if data.status == "assigned":
        emergency.status = EmergencyStatus.ASSIGNED
        emergency.assigned_at = now
        emergency.estimated_arrival = now + timedelta(minutes=settings.DISPATCH_ETA_MINUTES)
    elif data.status == "started":
        emergency.status = EmergencyStatus.IN_PROGRESS
        emergency.started_at = now
    elif data.status in ("arrived", "completed"):
        emergency.status = EmergencyStatus.COMPLETED
        emergency.completed_at = now

    emergency.add_tracking(
        data.status, data.notes or "", data.location.latitude, data.location.longitude
    )
    await db.commit()
    return EmergencyResponse.model_validate(emergency)


@router.put("/{emergency_id}/cancel", response_model=EmergencyResponse)
async def cancel_emergency_service(
    emergency_id: UUID,
    data: CancelRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    emergency = await _get_emergency_or_404(emergency_id, db)
    if emergency.user_id != current_user.id and current_user.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Not authorized to cancel this emergency service")
    if emergency.status == EmergencyStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Cannot cancel a completed emergency service")

    emergency.status = EmergencyStatus.CANCELLED
    emergency.cancelled_at = datetime.now(timezone.utc)
    emergency.cancellation_reason = data.reason or "Cancelled by user"
    emergency.add_tracking(
        EmergencyStatus.CANCELLED.value,
        emergency.cancellation_reason,
        emergency.latitude,
        emergency.longitude,
    )
    await db.commit()
    return EmergencyResponse.model_validate(emergency)


@router.post("/{emergency_id}/feedback", response_model=EmergencyResponse)
async def submit_emergency_feedback(
    emergency_id: UUID,
    data: FeedbackRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    emergency = await _get_emergency_or_404(emergency_id, db)
    if emergency.user_id != current_user.id:
        raise HTTPException(
            status_code=403,
            detail="Not authorized to submit feedback for this emergency service",
        )
    if emergency.status != EmergencyStatus.COMPLETED:
        raise HTTPException(
            status_code=400,
            detail="Can only submit feedback for completed emergency services",
        )

    emergency.rating = data.rating
    emergency.feedback_comment = data.comment

    if emergency.provider_id:
        provider = await db.get(ServiceProvider, emergency.provider_id)
        if provider:
            provider.add_rating(data.rating)

    await db.commit()
    return EmergencyResponse.model_validate(emergency)


@router.post("/{emergency_id}/convert", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def convert_to_booking(
    emergency_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Record a completed emergency as an Emergency Call booking with the assigned provider."""
    emergency = await _get_emergency_or_404(emergency_id, db)
    if (
        emergency.user_id != current_user.id
        and current_user.role != UserRole.ADMIN
        and not await _is_assigned_provider(emergency, current_user, db)
    ):
        raise HTTPException(status_code=403, detail="Not authorized to convert this emergency service")
    if not emergency.provider_id:
        raise HTTPException(status_code=400, detail="Cannot convert to booking without assigned provider")
    if emergency.status != EmergencyStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Only completed emergency services can be converted")
    if emergency.booking_id:
        raise HTTPException(status_code=400, detail="Emergency service already converted to a booking")

    provider = await db.get(ServiceProvider, emergency.provider_id)
    user = await db.get(User, emergency.user_id)

    booking = Booking(
        booking_number=await generate_booking_number(db),
        user_id=emergency.user_id,
        provider_id=provider.id,
        service_type=emergency.service_type.value,
        problem_description=emergency.description,
        booking_type=BookingType.EMERGENCY,
        urgency=BookingUrgency.EMERGENCY,
        location={
            "address": emergency.address,
            "latitude": emergency.latitude,
            "longitude": emergency.longitude,
        },
        scheduled_date=emergency.assigned_at or emergency.requested_at,
        base_amount=provider.base_price,
        total_amount=provider.base_price,
        is_paid=False,
        status=BookingStatus.COMPLETED,
        completed_at=emergency.completed_at,
    )
    db.add(booking)
    await db.flush()

    emergency.booking_id = booking.id
    provider.total_bookings = (provider.total_bookings or 0) + 1
    provider.completed_bookings = (provider.completed_bookings or 0) + 1
    if user:
        user.total_bookings = (user.total_bookings or 0) + 1
        user.completed_bookings = (user.completed_bookings or 0) + 1

    await log_status_change(
        db, booking, None, BookingStatus.COMPLETED.value, current_user,
        f"Converted from emergency {emergency.id}",
    )
    await db.commit()
    return BookingResponse.model_validate(booking)
