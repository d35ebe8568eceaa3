"""
config/redis_client.py
Shared async Redis connection and the RahaSeva key helpers built on it:
cached provider searches, the GEO sets used for nearby matching,
revoked access tokens and per-IP request counters.
"""

import json
from typing import Any, Optional
from uuid import UUID

import redis.asyncio as aioredis

from config.settings import settings
from shared.utils.geo import indexable, nearby_options, parse_nearby


# ── Connection (opened in the app lifespan) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Open the connection pool and fail fast if Redis is unreachable."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    await redis_client.ping()


async def close_redis() -> None:
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """Request dependency. Overridden with a fake client in tests."""
    if not redis_client:
        raise RuntimeError("Redis connection is not open yet")
    return redis_client


# ── Key Helpers ───────────────────────────────────────────────
class RedisCache:
    """JSON values, GEO sets, token deny-list and counters over one client."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete_pattern(self, pattern: str) -> int:
        """Drop every key matching a glob pattern. Only used for short-lived search entries."""
        keys = await self.client.keys(pattern)
        if keys:
            return await self.client.delete(*keys)
        return 0

    # ── Provider Search ───────────────────────────────────────
    @staticmethod
    def provider_search_key(service_type: str, lat: float, lng: float, radius_km: float) -> str:
        return f"providers:{service_type}:{lat:.4f}:{lng:.4f}:{radius_km:.1f}"

    async def invalidate_provider_search(self, service_type: str) -> int:
        return await self.delete_pattern(f"providers:{service_type}:*")

    # ── Geo Index ─────────────────────────────────────────────
    async def index_location(self, key: str, member_id: UUID, lat: float, lng: float) -> bool:
        """Add or move a member. Points Redis cannot store are left out."""
        if not indexable(lat, lng):
            return False
        await self.client.geoadd(key, [lng, lat, str(member_id)])
        return True

    async def remove_location(self, key: str, member_id: UUID) -> None:
        await self.client.zrem(key, str(member_id))

    async def nearby(
        self,
        key: str,
        lat: float,
        lng: float,
        radius_km: float,
        count: Optional[int] = None,
    ) -> list[tuple[UUID, float]]:
        """Members within radius_km as (id, distance_km), nearest first."""
        results = await self.client.georadius(key, lng, lat, radius_km, **nearby_options(count))
        return parse_nearby(results)

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Remember a logged-out token id until the token would have expired anyway."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Count one hit against key in the current window.
        False once the count goes over limit.
        """
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        results = await pipe.execute()
        return results[0] <= limit
