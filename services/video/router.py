"""
services/video/router.py
Video consultations attached to bookings.
Each consultation has one session id and one token per participant;
a participant only ever receives their own token.
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.router import complete_booking, log_status_change
from shared.middleware.auth import get_current_user, get_provider_for_user
from shared.models.models import (
    ArtifactType,
    Booking,
    BookingStatus,
    ConsultationStatus,
    ServiceProvider,
    User,
    UserRole,
    VideoConsultation,
    as_utc,
)
from shared.schemas.schemas import (
    ArtifactRequest,
    FeedbackRequest,
    VideoConsultationCreateRequest,
    VideoConsultationEndRequest,
    VideoConsultationResponse,
    VideoConsultationSession,
)
from shared.utils.security import generate_participant_token, generate_session_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/video-consultations", tags=["Video Consultations"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_consultation_or_404(consultation_id: UUID, db: AsyncSession) -> VideoConsultation:
    consultation = await db.get(VideoConsultation, consultation_id)
    if not consultation:
        raise HTTPException(status_code=404, detail="Video consultation not found")
    return consultation


async def _participant_role(consultation: VideoConsultation, user: User, db: AsyncSession) -> str | None:
    """'user', 'provider', 'admin' or None for outsiders."""
    if consultation.user_id == user.id:
        return "user"
    provider = await get_provider_for_user(user, db)
    if provider and provider.id == consultation.provider_id:
        return "provider"
    if user.role == UserRole.ADMIN:
        return "admin"
    return None


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=VideoConsultationResponse, status_code=status.HTTP_201_CREATED)
async def create_video_consultation(
    data: VideoConsultationCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Open a consultation for a booking. AR annotation is on for trade services,
    recording is on for doctors. Sets the booking's meeting link.
    """
    if data.scheduled_end <= data.scheduled_start:
        raise HTTPException(status_code=400, detail="Scheduled end must be after scheduled start")

    booking = await db.get(Booking, data.booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")

    provider = await get_provider_for_user(current_user, db)
    is_provider = provider is not None and provider.id == booking.provider_id
    if booking.user_id != current_user.id and not is_provider and current_user.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Not authorized")

    existing = await db.execute(
        select(VideoConsultation).where(VideoConsultation.booking_id == booking.id)
    )
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Video consultation already exists for this booking")

    session_id = generate_session_id()
    is_doctor = booking.service_type == "doctor"
    consultation = VideoConsultation(
        booking_id=booking.id,
        user_id=booking.user_id,
        provider_id=booking.provider_id,
        session_id=session_id,
        user_token=generate_participant_token(),
        provider_token=generate_participant_token(),
        meeting_url=f"/video-call/{session_id}",
        scheduled_start=data.scheduled_start,
        scheduled_end=data.scheduled_end,
        status=ConsultationStatus.SCHEDULED,
        features={
            "ar_enabled": not is_doctor,
            "recording_enabled": is_doctor,
            "screen_sharing": True,
            "chat": True,
        },
        artifacts=[],
    )
    db.add(consultation)
    booking.meeting_link = consultation.meeting_url

    await db.commit()
    logger.info(f"Video consultation {consultation.id} created for booking {booking.booking_number}")
    return VideoConsultationResponse.model_validate(consultation)


# ── Lists ─────────────────────────────────────────────────────

@router.get("/user/consultations", response_model=list[VideoConsultationResponse])
async def get_user_consultations(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(VideoConsultation)
        .where(VideoConsultation.user_id == current_user.id)
        .order_by(VideoConsultation.scheduled_start.desc())
    )
    return [VideoConsultationResponse.model_validate(c) for c in result.scalars().all()]


@router.get("/provider/consultations", response_model=list[VideoConsultationResponse])
async def get_provider_consultations(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    provider = await get_provider_for_user(current_user, db)
    if not provider:
        return []
    result = await db.execute(
        select(VideoConsultation)
        .where(VideoConsultation.provider_id == provider.id)
        .order_by(VideoConsultation.scheduled_start.desc())
    )
    return [VideoConsultationResponse.model_validate(c) for c in result.scalars().all()]


# ── Session ───────────────────────────────────────────────────

@router.get("/{consultation_id}", response_model=VideoConsultationSession)
async def get_video_consultation(
    consultation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Session details with the caller's own join token. Admins join with the provider token."""
    consultation = await _get_consultation_or_404(consultation_id, db)
    role = await _participant_role(consultation, current_user, db)
    if role is None:
        raise HTTPException(status_code=403, detail="Not authorized")

    token = consultation.user_token if role == "user" else consultation.provider_token
    return VideoConsultationSession(
        **VideoConsultationResponse.model_validate(consultation).model_dump(),
        token=token,
        role=role,
    )


@router.put("/{consultation_id}/start", response_model=VideoConsultationResponse)
async def start_video_consultation(
    consultation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    consultation = await _get_consultation_or_404(consultation_id, db)
    role = await _participant_role(consultation, current_user, db)
    if role not in ("provider", "admin"):
        raise HTTPException(status_code=403, detail="Only the provider can start the consultation")
    if consultation.status not in (ConsultationStatus.SCHEDULED, ConsultationStatus.READY):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot start consultation in {consultation.status.value} status",
        )

    consultation.status = ConsultationStatus.IN_PROGRESS
    consultation.actual_start = datetime.now(timezone.utc)
    await db.commit()
    return VideoConsultationResponse.model_validate(consultation)


@router.put("/{consultation_id}/end", response_model=VideoConsultationResponse)
async def end_video_consultation(
    consultation_id: UUID,
    data: VideoConsultationEndRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Close the session, record the outcome and complete the underlying booking."""
    consultation = await _get_consultation_or_404(consultation_id, db)
    role = await _participant_role(consultation, current_user, db)
    if role not in ("provider", "admin"):
        raise HTTPException(status_code=403, detail="Only the provider can end the consultation")
    if consultation.status != ConsultationStatus.IN_PROGRESS:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot end consultation in {consultation.status.value} status",
        )

    if data.diagnosis:
        consultation.diagnosis = data.diagnosis
    if data.recommendations:
        consultation.recommendations = data.recommendations

    now = datetime.now(timezone.utc)
    consultation.status = ConsultationStatus.COMPLETED
    consultation.actual_end = now
    started = as_utc(consultation.actual_start) or now
    consultation.duration_minutes = round((now - started).total_seconds() / 60)

    booking = await db.get(Booking, consultation.booking_id)
    if booking and booking.status != BookingStatus.COMPLETED:
        prev_status = booking.status.value
        await complete_booking(db, booking)
        await log_status_change(
            db, booking, prev_status, BookingStatus.COMPLETED.value, current_user,
            "Video consultation ended",
        )

    await db.commit()
    return VideoConsultationResponse.model_validate(consultation)


# ── Artifacts & Feedback ──────────────────────────────────────

@router.post("/{consultation_id}/artifacts", response_model=VideoConsultationResponse)
async def add_artifact(
    consultation_id: UUID,
    data: ArtifactRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    consultation = await _get_consultation_or_404(consultation_id, db)
    role = await _participant_role(consultation, current_user, db)
    if role is None:
        raise HTTPException(status_code=403, detail="Not authorized")

    consultation.add_artifact(
        ArtifactType(data.type),
        data.url,
        data.name,
        created_by="user" if role == "user" else "provider",
        description=data.description or "",
    )
    await db.commit()
    return VideoConsultationResponse.model_validate(consultation)


@router.post("/{consultation_id}/feedback", response_model=VideoConsultationResponse)
async def submit_consultation_feedback(
    consultation_id: UUID,
    data: FeedbackRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """User feedback also updates the provider's rating; provider feedback is stored only."""
    consultation = await _get_consultation_or_404(consultation_id, db)
    role = await _participant_role(consultation, current_user, db)
    if role is None:
        raise HTTPException(status_code=403, detail="Not authorized to submit feedback")

    if role == "user":
        consultation.user_rating = data.rating
        consultation.user_comments = data.comment or ""
        provider = await db.get(ServiceProvider, consultation.provider_id)
        if provider:
            provider.add_rating(data.rating)
    else:
        consultation.provider_rating = data.rating
        consultation.provider_comments = data.comment or ""

    await db.commit()
    return VideoConsultationResponse.model_validate(consultation)
