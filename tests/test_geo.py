"""
tests/test_geo.py
Redis GEO index: radius search, ranking of loaded rows, the blocking
client used by workers and the startup rebuild.
"""

import uuid
from types import SimpleNamespace

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from shared.models.models import User
from shared.utils.geo import nearby_sync, providers_geo_key, rank_by_distance, rebuild_geo_index
from tests.conftest import make_provider

CHARMINAR = (17.3616, 78.4747)
HITEC_CITY = (17.4435, 78.3772)
KEY = providers_geo_key("plumber")


@pytest.mark.asyncio
async def test_nearby_reports_distance_in_km(fake_redis):
    cache = RedisCache(fake_redis)
    hitec = uuid.uuid4()
    await cache.index_location(KEY, hitec, *HITEC_CITY)

    # Charminar to HITEC City is about 13.8 km as the crow flies
    [(member_id, distance)] = await cache.nearby(KEY, *CHARMINAR, 20)
    assert member_id == hitec
    assert distance == pytest.approx(13.8, abs=0.3)


@pytest.mark.asyncio
async def test_nearby_filters_by_radius_and_sorts(fake_redis):
    cache = RedisCache(fake_redis)
    near, mid, far = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    await cache.index_location(KEY, far, *HITEC_CITY)
    await cache.index_location(KEY, mid, 17.4000, 78.4800)
    await cache.index_location(KEY, near, 17.3650, 78.4750)

    results = await cache.nearby(KEY, *CHARMINAR, 10)
    assert [member_id for member_id, _ in results] == [near, mid]
    assert results[0][1] < results[1][1]


@pytest.mark.asyncio
async def test_nearby_wraps_across_the_date_line(fake_redis):
    cache = RedisCache(fake_redis)
    east = uuid.uuid4()
    await cache.index_location(KEY, east, -16.5, 179.95)

    # 0.1 degrees of longitude apart near Fiji, on opposite sides of 180
    [(member_id, distance)] = await cache.nearby(KEY, -16.5, -179.95, 15)
    assert member_id == east
    assert distance == pytest.approx(10.7, abs=0.3)


@pytest.mark.asyncio
async def test_moving_a_member_replaces_its_position(fake_redis):
    cache = RedisCache(fake_redis)
    member = uuid.uuid4()
    await cache.index_location(KEY, member, *HITEC_CITY)
    await cache.index_location(KEY, member, 17.3650, 78.4750)

    results = await cache.nearby(KEY, *CHARMINAR, 50)
    assert len(results) == 1
    assert results[0][1] < 1


@pytest.mark.asyncio
async def test_points_redis_cannot_store_are_skipped(fake_redis):
    cache = RedisCache(fake_redis)
    assert await cache.index_location(KEY, uuid.uuid4(), 89.9, 10.0) is False
    assert await cache.index_location(KEY, uuid.uuid4(), None, None) is False
    assert await fake_redis.exists(KEY) == 0


@pytest.mark.asyncio
async def test_removed_member_is_not_found(fake_redis):
    cache = RedisCache(fake_redis)
    member = uuid.uuid4()
    await cache.index_location(KEY, member, *CHARMINAR)
    await cache.remove_location(KEY, member)
    assert await cache.nearby(KEY, *CHARMINAR, 5) == []


def test_rank_by_distance_keeps_index_order_and_drops_unloaded_rows():
    a, b, c = (SimpleNamespace(id=uuid.uuid4()) for _ in range(3))
    nearby = [(b.id, 0.5), (c.id, 1.2), (a.id, 3.0)]

    ranked = rank_by_distance([a, b], nearby)
    assert ranked == [(b, 0.5), (a, 3.0)]


@pytest.mark.asyncio
async def test_blocking_client_sees_the_same_index(fake_server, fake_redis):
    member = uuid.uuid4()
    await RedisCache(fake_redis).index_location(KEY, member, 17.3650, 78.4750)

    client = fakeredis.FakeRedis(server=fake_server, decode_responses=True)
    results = nearby_sync(client, KEY, *CHARMINAR, 5)
    assert [member_id for member_id, _ in results] == [member]


@pytest.mark.asyncio
async def test_rebuild_replaces_stale_members(db: AsyncSession, fake_redis, helper: User, user: User):
    active = await make_provider(db, helper)
    await make_provider(db, user, business_name="Closed", is_active=False)
    await fake_redis.geoadd(KEY, [78.47, 17.36, str(uuid.uuid4())])

    assert await rebuild_geo_index(db, fake_redis) == 1

    results = await RedisCache(fake_redis).nearby(KEY, *CHARMINAR, 50)
    assert [member_id for member_id, _ in results] == [active.id]
