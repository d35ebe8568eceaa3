"""
shared/utils/geo.py
Redis GEO index for provider, volunteer and help-request matching.

Members are row ids. A radius search returns ids nearest first with their
distance in km; callers then load the rows and apply the remaining
filters in SQL. Request handlers go through RedisCache; Celery workers
pass a blocking client to nearby_sync.
"""

import logging
from typing import Iterable, List, Optional, Tuple, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    CommunityHelpRequest,
    CommunityVolunteer,
    HelpRequestStatus,
    ServiceProvider,
)

logger = logging.getLogger(__name__)

VOLUNTEERS_GEO_KEY = "geo:volunteers"
HELP_REQUESTS_GEO_KEY = "geo:help_requests"

# Redis GEO cannot store points closer to the poles than this
GEO_MAX_LATITUDE = 85.05112878

T = TypeVar("T")


def providers_geo_key(service_type: str) -> str:
    return f"geo:providers:{service_type}"


def indexable(lat: Optional[float], lng: Optional[float]) -> bool:
    return (
        lat is not None
        and lng is not None
        and abs(lat) <= GEO_MAX_LATITUDE
        and abs(lng) <= 180
    )


def nearby_options(count: Optional[int] = None) -> dict:
    return {"unit": "km", "withdist": True, "sort": "ASC", "count": count}


def parse_nearby(results) -> List[Tuple[UUID, float]]:
    return [(UUID(member), float(distance)) for member, distance in results]


def nearby_sync(client, key: str, lat: float, lng: float, radius_km: float, count: Optional[int] = None):
    """Blocking radius search. Returns [(id, distance_km)] nearest first."""
    results = client.georadius(key, lng, lat, radius_km, **nearby_options(count))
    return parse_nearby(results)


def rank_by_distance(rows: Iterable[T], nearby: List[Tuple[UUID, float]]) -> List[Tuple[T, float]]:
    """Pair loaded rows with their distance, keeping the index's nearest-first order."""
    by_id = {row.id: row for row in rows}
    return [(by_id[member_id], distance) for member_id, distance in nearby if member_id in by_id]


async def rebuild_geo_index(db: AsyncSession, client) -> int:
    """
    Replace the GEO sets with every active provider, active volunteer and
    open help request. Run at startup so a flushed or stale Redis matches
    the database again.
    Returns the number of members written.
    """
    entries: list[tuple[str, object]] = []

    providers = await db.execute(select(ServiceProvider).where(ServiceProvider.is_active == True))
    for p in providers.scalars().all():
        entries.append((providers_geo_key(p.service_type.value), p))

    volunteers = await db.execute(
        select(CommunityVolunteer).where(CommunityVolunteer.is_active == True)
    )
    for v in volunteers.scalars().all():
        entries.append((VOLUNTEERS_GEO_KEY, v))

    open_requests = await db.execute(
        select(CommunityHelpRequest).where(
            CommunityHelpRequest.status.in_((HelpRequestStatus.PENDING, HelpRequestStatus.SEARCHING)),
            CommunityHelpRequest.volunteer_id.is_(None),
        )
    )
    for r in open_requests.scalars().all():
        entries.append((HELP_REQUESTS_GEO_KEY, r))

    stale = await client.keys("geo:*")

    written = 0
    pipe = client.pipeline()
    if stale:
        pipe.delete(*stale)
    for key, row in entries:
        if indexable(row.latitude, row.longitude):
            pipe.geoadd(key, [row.longitude, row.latitude, str(row.id)])
            written += 1
    await pipe.execute()

    logger.info(f"Geo index rebuilt with {written} members")
    return written
