"""
services/community/router.py
Community volunteers and unpaid help requests.
Requests are matched to volunteers by skill and distance, either in the
background after creation or by a volunteer accepting from the nearby list.
"""

import logging
import time
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.community.dispatch import DISPATCHABLE_STATUSES, accept_by, dispatch_help_request
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import (
    AvailabilityFrequency,
    CommunityHelpRequest,
    CommunityVolunteer,
    HelpRequestStatus,
    Priority,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    FeedbackRequest,
    HelpRequestCreateRequest,
    HelpRequestResponse,
    HelpRequestStatusUpdateRequest,
    PaginatedResponse,
    VolunteerRegisterRequest,
    VolunteerResponse,
    VolunteerUpdateRequest,
)
from shared.utils.geo import HELP_REQUESTS_GEO_KEY, VOLUNTEERS_GEO_KEY, rank_by_distance

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/community", tags=["Community"])

NEARBY_REQUEST_LIMIT = 10


# ── Helpers ───────────────────────────────────────────────────

async def _get_volunteer_for_user(user: User, db: AsyncSession) -> CommunityVolunteer | None:
    result = await db.execute(
        select(CommunityVolunteer).where(CommunityVolunteer.user_id == user.id)
    )
    return result.scalar_one_or_none()


async def _volunteer_or_404(user: User, db: AsyncSession) -> CommunityVolunteer:
    volunteer = await _get_volunteer_for_user(user, db)
    if not volunteer:
        raise HTTPException(status_code=404, detail="Volunteer profile not found")
    return volunteer


async def _get_help_request_or_404(request_id: UUID, db: AsyncSession) -> CommunityHelpRequest:
    help_request = await db.get(CommunityHelpRequest, request_id)
    if not help_request:
        raise HTTPException(status_code=404, detail="Help request not found")
    return help_request


async def generate_request_number(db: AsyncSession) -> str:
    count = await db.scalar(select(func.count(CommunityHelpRequest.id)))
    return f"CH{int(time.time() * 1000)}{(count or 0) + 1:04d}"


async def _help_request_role(help_request: CommunityHelpRequest, user: User, db: AsyncSession) -> str | None:
    """'user', 'volunteer', 'admin' or None for outsiders."""
    if help_request.user_id == user.id:
        return "user"
    if help_request.volunteer_id:
        volunteer = await _get_volunteer_for_user(user, db)
        if volunteer and volunteer.id == help_request.volunteer_id:
            return "volunteer"
    if user.role == UserRole.ADMIN:
        return "admin"
    return None


def _paginated(items, total: int, page: int, page_size: int) -> PaginatedResponse:
    return PaginatedResponse(
        items=items,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=-(-total // page_size),
    )


# ── Volunteers ────────────────────────────────────────────────

@router.post("/volunteers/register", response_model=VolunteerResponse, status_code=status.HTTP_201_CREATED)
async def register_as_volunteer(
    data: VolunteerRegisterRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Create the caller's volunteer profile. Plain users become helpers.
    Missing coordinates fall back to the default city centre.
    """
    if await _get_volunteer_for_user(current_user, db):
        raise HTTPException(status_code=400, detail="You are already registered as a volunteer")

    latitude = data.location.latitude
    longitude = data.location.longitude
    if latitude is None or longitude is None:
        latitude, longitude = settings.DEFAULT_LATITUDE, settings.DEFAULT_LONGITUDE

    volunteer = CommunityVolunteer(
        user_id=current_user.id,
        name=data.name,
        skills=[s.strip().lower() for s in data.skills],
        bio=data.bio or "",
        contact_phone=data.contact.phone,
        contact_email=data.contact.email or current_user.email,
        address=data.location.address,
        latitude=latitude,
        longitude=longitude,
        service_radius_km=data.service_radius_km,
        availability_frequency=AvailabilityFrequency(data.availability_frequency),
        availability_days=data.availability_days
        or ["monday", "tuesday", "wednesday", "thursday", "friday"],
        is_verified=False,
        is_active=True,
    )
    db.add(volunteer)

    if current_user.role == UserRole.USER:
        current_user.role = UserRole.HELPER

    await db.commit()
    await RedisCache(redis).index_location(VOLUNTEERS_GEO_KEY, volunteer.id, latitude, longitude)
    logger.info(f"Volunteer registered: user {current_user.id} ({', '.join(volunteer.skills)})")
    return VolunteerResponse.model_validate(volunteer)


@router.get("/volunteers/profile", response_model=VolunteerResponse)
async def get_volunteer_profile(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return VolunteerResponse.model_validate(await _volunteer_or_404(current_user, db))


@router.put("/volunteers/profile", response_model=VolunteerResponse)
async def update_volunteer_profile(
    data: VolunteerUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    volunteer = await _volunteer_or_404(current_user, db)

    if data.name is not None:
        volunteer.name = data.name
    if data.skills is not None:
        volunteer.skills = [s.strip().lower() for s in data.skills]
    if data.bio is not None:
        volunteer.bio = data.bio
    if data.contact is not None:
        volunteer.contact_phone = data.contact.phone
        if data.contact.email:
            volunteer.contact_email = data.contact.email
    if data.location is not None:
        volunteer.address = data.location.address
        if data.location.latitude is not None and data.location.longitude is not None:
            volunteer.latitude = data.location.latitude
            volunteer.longitude = data.location.longitude
    if data.service_radius_km is not None:
        volunteer.service_radius_km = data.service_radius_km
    if data.availability_frequency is not None:
        volunteer.availability_frequency = AvailabilityFrequency(data.availability_frequency)
    if data.availability_days is not None:
        volunteer.availability_days = data.availability_days
    if data.is_active is not None:
        volunteer.is_active = data.is_active

    await db.commit()
    cache = RedisCache(redis)
    if volunteer.is_active:
        await cache.index_location(
            VOLUNTEERS_GEO_KEY, volunteer.id, volunteer.latitude, volunteer.longitude
        )
    else:
        await cache.remove_location(VOLUNTEERS_GEO_KEY, volunteer.id)
    return VolunteerResponse.model_validate(volunteer)


@router.get("/volunteers/requests")
async def get_volunteer_requests(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Requests assigned to the caller, plus open public requests inside their
    service radius that match one of their skills.
    """
    volunteer = await _volunteer_or_404(current_user, db)

    assigned = await db.execute(
        select(CommunityHelpRequest)
        .where(CommunityHelpRequest.volunteer_id == volunteer.id)
        .order_by(CommunityHelpRequest.created_at.desc())
    )

    nearby = await RedisCache(redis).nearby(
        HELP_REQUESTS_GEO_KEY, volunteer.latitude, volunteer.longitude, volunteer.service_radius_km
    )
    matches = []
    if nearby:
        open_requests = await db.execute(
            select(CommunityHelpRequest).where(
                CommunityHelpRequest.id.in_([member_id for member_id, _ in nearby]),
                CommunityHelpRequest.is_public == True,
                CommunityHelpRequest.volunteer_id.is_(None),
                CommunityHelpRequest.status.in_(DISPATCHABLE_STATUSES),
                CommunityHelpRequest.help_type.in_(volunteer.skills or []),
            )
        )
        matches = rank_by_distance(open_requests.scalars().all(), nearby)[:NEARBY_REQUEST_LIMIT]

    return {
        "success": True,
        "assigned_requests": [
            HelpRequestResponse.model_validate(r).model_dump(mode="json")
            for r in assigned.scalars().all()
        ],
        "nearby_requests": [
            {
                **HelpRequestResponse.model_validate(r).model_dump(mode="json"),
                "distance_km": round(distance, 2),
            }
            for r, distance in matches
        ],
    }


# ── Help Requests ─────────────────────────────────────────────

@router.post("/help-requests", response_model=HelpRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_help_request(
    data: HelpRequestCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Create a help request; volunteer matching runs after the response is sent."""
    latitude = data.location.latitude
    longitude = data.location.longitude
    if latitude is None or longitude is None:
        latitude, longitude = settings.DEFAULT_LATITUDE, settings.DEFAULT_LONGITUDE

    help_request = CommunityHelpRequest(
        request_number=await generate_request_number(db),
        user_id=current_user.id,
        help_type=data.help_type.strip().lower(),
        description=data.description,
        address=data.location.address,
        latitude=latitude,
        longitude=longitude,
        requested_date=data.requested_date,
        requested_time=data.requested_time or "10:00",
        estimated_hours=data.estimated_hours,
        urgency=Priority(data.urgency),
        status=HelpRequestStatus.PENDING,
        is_public=data.is_public,
        tracking=[],
    )
    help_request.add_tracking(HelpRequestStatus.PENDING.value, "Help request created")
    db.add(help_request)
    await db.commit()

    await RedisCache(redis).index_location(HELP_REQUESTS_GEO_KEY, help_request.id, latitude, longitude)
    background_tasks.add_task(dispatch_help_request, help_request.id, redis)

    logger.info(f"Help request {help_request.request_number} created by user {current_user.id}")
    return HelpRequestResponse.model_validate(help_request)


@router.get("/help-requests", response_model=list[HelpRequestResponse])
async def get_user_help_requests(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(CommunityHelpRequest)
        .where(CommunityHelpRequest.user_id == current_user.id)
        .order_by(CommunityHelpRequest.created_at.desc())
    )
    return [HelpRequestResponse.model_validate(r) for r in result.scalars().all()]


@router.get("/help-requests/{request_id}", response_model=HelpRequestResponse)
async def get_help_request(
    request_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    help_request = await _get_help_request_or_404(request_id, db)
    if await _help_request_role(help_request, current_user, db) is None:
        raise HTTPException(status_code=403, detail="Not authorized to view this help request")
    return HelpRequestResponse.model_validate(help_request)


@router.post("/help-requests/{request_id}/accept", response_model=HelpRequestResponse)
async def accept_help_request(
    request_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    volunteer = await _volunteer_or_404(current_user, db)
    help_request = await _get_help_request_or_404(request_id, db)

    if help_request.status not in DISPATCHABLE_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot accept request in {help_request.status.value} status",
        )
    if help_request.volunteer_id:
        raise HTTPException(
            status_code=400,
            detail="This request has already been accepted by another volunteer",
        )
    if not volunteer.has_skill(help_request.help_type):
        raise HTTPException(
            status_code=400,
            detail="You do not have the required skill for this help request",
        )

    accept_by(help_request, volunteer)
    await db.commit()
    await RedisCache(redis).remove_location(HELP_REQUESTS_GEO_KEY, help_request.id)

    logger.info(f"Help request {help_request.request_number} accepted by volunteer {volunteer.id}")
    return HelpRequestResponse.model_validate(help_request)


@router.put("/help-requests/{request_id}/status", response_model=HelpRequestResponse)
async def update_help_request_status(
    request_id: UUID,
    data: HelpRequestStatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Completion credits the volunteer with one more person helped and the estimated hours."""
    help_request = await _get_help_request_or_404(request_id, db)
    role = await _help_request_role(help_request, current_user, db)
    if role is None:
        raise HTTPException(status_code=403, detail="Not authorized to update this help request")

    new_status = HelpRequestStatus(data.status)
    prev_status = help_request.status
    help_request.status = new_status
    help_request.add_tracking(
        new_status.value,
        data.notes or f"Status updated from {prev_status.value} to {new_status.value}",
    )

    if new_status == HelpRequestStatus.COMPLETED:
        help_request.completed_at = datetime.now(timezone.utc)
        if help_request.volunteer_id:
            volunteer = await db.get(CommunityVolunteer, help_request.volunteer_id)
            if volunteer:
                volunteer.completed_requests = (volunteer.completed_requests or 0) + 1
                volunteer.people_helped = (volunteer.people_helped or 0) + 1
                volunteer.hours_donated = (volunteer.hours_donated or 0) + (help_request.estimated_hours or 0)

    await db.commit()
    cache = RedisCache(redis)
    if new_status in DISPATCHABLE_STATUSES and not help_request.volunteer_id:
        await cache.index_location(
            HELP_REQUESTS_GEO_KEY, help_request.id, help_request.latitude, help_request.longitude
        )
    else:
        await cache.remove_location(HELP_REQUESTS_GEO_KEY, help_request.id)
    return HelpRequestResponse.model_validate(help_request)


@router.post("/help-requests/{request_id}/feedback", response_model=HelpRequestResponse)
async def submit_help_request_feedback(
    request_id: UUID,
    data: FeedbackRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Requester feedback also updates the volunteer's rating."""
    help_request = await _get_help_request_or_404(request_id, db)
    role = await _help_request_role(help_request, current_user, db)
    if role not in ("user", "volunteer"):
        raise HTTPException(status_code=403, detail="Not authorized to submit feedback")
    if help_request.status != HelpRequestStatus.COMPLETED:
        raise HTTPException(
            status_code=400, detail="Can only submit feedback for completed help requests"
        )

    feedback = {
        "rating": data.rating,
        "comment": data.comment or "",
        "submitted_at": datetime.now(timezone.utc).isoformat(),
    }
    if role == "user":
        help_request.user_feedback = feedback
        if help_request.volunteer_id:
            volunteer = await db.get(CommunityVolunteer, help_request.volunteer_id)
            if volunteer:
                volunteer.add_rating(data.rating)
    else:
        help_request.volunteer_feedback = feedback

    await db.commit()
    return HelpRequestResponse.model_validate(help_request)


# ── Admin ─────────────────────────────────────────────────────

@router.get("/admin/volunteers", response_model=PaginatedResponse)
async def list_volunteers(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    verified: bool | None = None,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(CommunityVolunteer)
    if verified is not None:
        query = query.where(CommunityVolunteer.is_verified == verified)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(CommunityVolunteer.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [VolunteerResponse.model_validate(v) for v in result.scalars().all()]
    return _paginated(items, total, page, page_size)


@router.get("/admin/help-requests", response_model=PaginatedResponse)
async def list_help_requests(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status_filter: HelpRequestStatus | None = Query(None, alias="status"),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(CommunityHelpRequest)
    if status_filter:
        query = query.where(CommunityHelpRequest.status == status_filter)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(CommunityHelpRequest.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [HelpRequestResponse.model_validate(r) for r in result.scalars().all()]
    return _paginated(items, total, page, page_size)
