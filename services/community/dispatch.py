"""
services/community/dispatch.py
Nearest-volunteer matching for community help requests.
Only active, verified volunteers who list the requested skill are considered.
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select

from config.database import get_db_context
from config.redis_client import RedisCache
from config.settings import settings
from shared.models.models import (
    CommunityHelpRequest,
    CommunityVolunteer,
    HelpRequestStatus,
)
from shared.utils.geo import HELP_REQUESTS_GEO_KEY, VOLUNTEERS_GEO_KEY, rank_by_distance

logger = logging.getLogger(__name__)

DISPATCHABLE_STATUSES = (HelpRequestStatus.PENDING, HelpRequestStatus.SEARCHING)


def candidate_query(nearby: list[tuple[UUID, float]]):
    return select(CommunityVolunteer).where(
        CommunityVolunteer.id.in_([member_id for member_id, _ in nearby]),
        CommunityVolunteer.is_active == True,
        CommunityVolunteer.is_verified == True,
    )


def nearest_candidates(
    help_request: CommunityHelpRequest, nearby: list[tuple[UUID, float]], volunteers
) -> list[tuple[CommunityVolunteer, float]]:
    # skills is a JSON list, so the skill filter runs here rather than in SQL
    skilled = [v for v in volunteers if v.has_skill(help_request.help_type)]
    return rank_by_distance(skilled, nearby)[: settings.DISPATCH_CANDIDATE_LIMIT]


def mark_searching(help_request: CommunityHelpRequest) -> None:
    help_request.status = HelpRequestStatus.SEARCHING
    help_request.add_tracking(HelpRequestStatus.SEARCHING.value, "Searching for nearby volunteers")


def accept_by(help_request: CommunityHelpRequest, volunteer: CommunityVolunteer, notes: str = "") -> None:
    """Assign the volunteer, confirm the request for now and count it against the volunteer."""
    now = datetime.now(timezone.utc)
    help_request.volunteer_id = volunteer.id
    help_request.status = HelpRequestStatus.ACCEPTED
    help_request.confirmed_date = now
    help_request.confirmed_time = now.strftime("%H:%M")
    volunteer.total_help_requests = (volunteer.total_help_requests or 0) + 1
    help_request.add_tracking(
        HelpRequestStatus.ACCEPTED.value,
        notes or f"Accepted by volunteer {volunteer.name}",
    )


async def dispatch_help_request(request_id: UUID, redis) -> bool:
    """
    Mark the request searching, then hand it to the nearest matching volunteer.
    Returns True when a volunteer was assigned. Failures are logged, never raised.
    """
    try:
        async with get_db_context() as db:
            help_request = await db.get(CommunityHelpRequest, request_id)
            if (
                not help_request
                or help_request.volunteer_id
                or help_request.status not in DISPATCHABLE_STATUSES
            ):
                return False

            mark_searching(help_request)
            await db.flush()

            nearby = await RedisCache(redis).nearby(
                VOLUNTEERS_GEO_KEY,
                help_request.latitude,
                help_request.longitude,
                settings.DISPATCH_RADIUS_KM,
            )
            candidates = []
            if nearby:
                result = await db.execute(candidate_query(nearby))
                candidates = nearest_candidates(help_request, nearby, result.scalars().all())
            logger.info(f"Found {len(candidates)} nearby volunteers for help request {request_id}")

            if not candidates:
                logger.info(f"No volunteers found for help request {request_id}")
                return False

            volunteer, distance = candidates[0]
            accept_by(help_request, volunteer)
            await RedisCache(redis).remove_location(HELP_REQUESTS_GEO_KEY, request_id)
            logger.info(
                f"Help request {request_id} assigned to volunteer {volunteer.id} ({distance:.1f} km)"
            )
            return True
    except Exception:
        logger.exception(f"Dispatch failed for help request {request_id}")
        return False
