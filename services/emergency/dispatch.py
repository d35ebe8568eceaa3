"""
services/emergency/dispatch.py
Nearest-provider matching for emergency requests.
Runs after the creating request has returned (FastAPI BackgroundTasks) and
again from the Celery beat task for requests left unassigned.
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import select

from config.database import get_db_context
from config.redis_client import RedisCache
from config.settings import settings
from shared.models.models import (
    EmergencyService,
    EmergencyStatus,
    EmergencyType,
    ServiceProvider,
    ServiceType,
)
from shared.utils.geo import providers_geo_key, rank_by_distance

logger = logging.getLogger(__name__)

DISPATCHABLE_STATUSES = (EmergencyStatus.REQUESTED, EmergencyStatus.SEARCHING)


def provider_service_type(emergency_type: EmergencyType) -> ServiceType:
    """Ambulance, fire and police requests go to general emergency providers."""
    try:
        return ServiceType(emergency_type.value)
    except ValueError:
        return ServiceType.EMERGENCY


def candidates_geo_key(emergency: EmergencyService) -> str:
    return providers_geo_key(provider_service_type(emergency.service_type).value)


def candidate_query(emergency: EmergencyService, nearby: list[tuple[UUID, float]]):
    return select(ServiceProvider).where(
        ServiceProvider.id.in_([member_id for member_id, _ in nearby]),
        ServiceProvider.service_type == provider_service_type(emergency.service_type),
        ServiceProvider.is_active == True,
    )


def nearest_candidates(nearby: list[tuple[UUID, float]], providers) -> list[tuple[ServiceProvider, float]]:
    return rank_by_distance(providers, nearby)[: settings.DISPATCH_CANDIDATE_LIMIT]


def mark_searching(emergency: EmergencyService) -> None:
    emergency.status = EmergencyStatus.SEARCHING
    emergency.add_tracking(
        EmergencyStatus.SEARCHING.value,
        "Searching for nearby providers",
        emergency.latitude,
        emergency.longitude,
    )


def assign_provider(emergency: EmergencyService, provider: ServiceProvider) -> None:
    now = datetime.now(timezone.utc)
    emergency.provider_id = provider.id
    emergency.status = EmergencyStatus.ASSIGNED
    emergency.assigned_at = now
    emergency.estimated_arrival = now + timedelta(minutes=settings.DISPATCH_ETA_MINUTES)
    emergency.add_tracking(
        EmergencyStatus.ASSIGNED.value,
        f"Assigned to provider {provider.business_name}",
        provider.latitude,
        provider.longitude,
    )


async def dispatch_emergency(emergency_id: UUID, redis) -> bool:
    """
    Mark the request searching, then assign the nearest matching provider.
    Returns True when a provider was assigned. Failures are logged, never raised.
    """
    try:
        async with get_db_context() as db:
            emergency = await db.get(EmergencyService, emergency_id)
            if not emergency or emergency.status not in DISPATCHABLE_STATUSES:
                return False

            mark_searching(emergency)
            await db.flush()

            nearby = await RedisCache(redis).nearby(
                candidates_geo_key(emergency),
                emergency.latitude,
                emergency.longitude,
                settings.DISPATCH_RADIUS_KM,
            )
            candidates = []
            if nearby:
                result = await db.execute(candidate_query(emergency, nearby))
                candidates = nearest_candidates(nearby, result.scalars().all())
            logger.info(f"Found {len(candidates)} nearby providers for emergency {emergency_id}")

            if not candidates:
                logger.info(f"No providers found for emergency {emergency_id}")
                return False

            provider, distance = candidates[0]
            assign_provider(emergency, provider)
            logger.info(
                f"Emergency {emergency_id} assigned to provider {provider.id} ({distance:.1f} km)"
            )
            return True
    except Exception:
        logger.exception(f"Dispatch failed for emergency {emergency_id}")
        return False
