"""
services/provider/router.py
Provider discovery and onboarding.
Nearby search reads ids and distances from the per-type Redis GEO set,
then loads the active rows.
Search results are cached in Redis for a short TTL.
"""

import logging
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import get_current_user, get_provider_for_user
from shared.models.models import PriceUnit, ServiceProvider, ServiceType, User, UserRole
from shared.schemas.schemas import (
    NearbyProviderResponse,
    ProviderRegisterRequest,
    ProviderResponse,
)
from shared.utils.geo import providers_geo_key, rank_by_distance

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/services", tags=["Services"])

SERVICE_TYPES = [
    {"value": "plumber", "label": "Plumber", "icon": "fas fa-wrench"},
    {"value": "electrician", "label": "Electrician", "icon": "fas fa-bolt"},
    {"value": "carpenter", "label": "Carpenter", "icon": "fas fa-hammer"},
    {"value": "doctor", "label": "Doctor", "icon": "fas fa-user-md"},
    {"value": "emergency", "label": "Emergency", "icon": "fas fa-ambulance"},
]


def _nearby_entry(provider: ServiceProvider, distance_km: float) -> dict:
    distance_km = round(distance_km, 1)
    return NearbyProviderResponse(
        id=provider.id,
        name=provider.business_name,
        service_type=provider.service_type,
        rating=provider.rating_avg or 4.5,
        distance=f"{distance_km} km",
        distance_km=distance_km,
        price=f"₹{int(provider.base_price)}/{provider.price_unit.value}",
        verified=provider.is_verified,
        phone=provider.contact_phone,
        experience=f"{provider.experience_years} years",
        lat=provider.latitude,
        lng=provider.longitude,
        address=provider.address or "Address not specified",
    ).model_dump(mode="json")


async def find_nearby_providers(
    db: AsyncSession,
    redis,
    service_type: str,
    lat: float,
    lng: float,
    radius_km: float,
) -> list[tuple[ServiceProvider, float]]:
    """Active providers of a type within radius_km, paired with their distance, nearest first."""
    nearby = await RedisCache(redis).nearby(providers_geo_key(service_type), lat, lng, radius_km)
    if not nearby:
        return []
    result = await db.execute(
        select(ServiceProvider).where(
            ServiceProvider.id.in_([member_id for member_id, _ in nearby]),
            ServiceProvider.is_active == True,
        )
    )
    return rank_by_distance(result.scalars().all(), nearby)


async def index_provider(redis, provider: ServiceProvider) -> None:
    """Make a provider findable by nearby search and dispatch."""
    cache = RedisCache(redis)
    await cache.index_location(
        providers_geo_key(provider.service_type.value),
        provider.id,
        provider.latitude,
        provider.longitude,
    )
    await cache.invalidate_provider_search(provider.service_type.value)


# ── Discovery ─────────────────────────────────────────────────

@router.get("/types")
async def get_service_types():
    return {"success": True, "service_types": SERVICE_TYPES}


@router.get("/providers")
async def get_nearby_providers(
    service_type: str = Query(None),
    lat: float = Query(None, ge=-90, le=90),
    lng: float = Query(None, ge=-180, le=180),
    radius: float = Query(None, gt=0, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Providers near a point, verified first, then by rating, then by distance.
    lat/lng default to the city centre, radius to the configured search radius.
    """
    if not service_type:
        raise HTTPException(status_code=400, detail="Service type is required")
    if service_type not in {s.value for s in ServiceType}:
        raise HTTPException(status_code=400, detail=f"Invalid service type: {service_type}")

    lat = lat if lat is not None else settings.DEFAULT_LATITUDE
    lng = lng if lng is not None else settings.DEFAULT_LONGITUDE
    radius = radius or settings.PROVIDER_SEARCH_RADIUS_KM

    cache = RedisCache(redis)
    cache_key = cache.provider_search_key(service_type, lat, lng, radius)
    cached = await cache.get(cache_key)
    if cached is not None:
        return cached

    matches = await find_nearby_providers(db, redis, service_type, lat, lng, radius)
    matches.sort(key=lambda m: (not m[0].is_verified, -(m[0].rating_avg or 0), m[1]))
    providers = [_nearby_entry(p, d) for p, d in matches[: settings.PROVIDER_SEARCH_LIMIT]]

    payload = {
        "success": True,
        "providers": providers,
        "total": len(providers),
        "service_type": service_type,
        "search_location": {"lat": lat, "lng": lng},
        "radius": radius,
    }
    await cache.set(cache_key, payload, ttl=settings.PROVIDER_SEARCH_CACHE_TTL)
    return payload


@router.get("/provider/{provider_id}", response_model=ProviderResponse)
async def get_provider(
    provider_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(ServiceProvider).where(ServiceProvider.id == provider_id))
    provider = result.scalar_one_or_none()
    if not provider:
        raise HTTPException(status_code=404, detail="Service provider not found")
    return ProviderResponse.model_validate(provider)


# ── Onboarding ────────────────────────────────────────────────

@router.post("/providers/register", response_model=ProviderResponse, status_code=status.HTTP_201_CREATED)
async def register_provider(
    data: ProviderRegisterRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Create a provider profile for the caller. Starts unverified until an admin
    approves it. A plain user is promoted to helper.
    """
    if await get_provider_for_user(current_user, db):
        raise HTTPException(status_code=400, detail="Service provider profile already exists")

    provider = ServiceProvider(
        user_id=current_user.id,
        business_name=data.business_name,
        service_type=ServiceType(data.service_type),
        description=data.description,
        base_price=Decimal(str(data.base_price)),
        price_unit=PriceUnit(data.price_unit),
        address=data.address,
        city=data.location.city,
        state=data.location.state,
        latitude=data.location.latitude,
        longitude=data.location.longitude,
        availability=data.availability,
        emergency_24x7=data.emergency_24x7,
        experience_years=data.experience_years,
        specializations=data.specializations,
        contact_phone=data.phone,
        contact_email=data.email,
        rating_avg=0.0,
        rating_count=0,
        is_verified=False,
        total_bookings=0,
        completed_bookings=0,
        cancelled_bookings=0,
        is_active=True,
    )
    db.add(provider)

    if current_user.role == UserRole.USER:
        current_user.role = UserRole.HELPER

    await db.commit()
    await index_provider(redis, provider)

    logger.info(f"Provider profile created: {provider.id} for user {current_user.id}")
    return ProviderResponse.model_validate(provider)
