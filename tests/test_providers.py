"""
tests/test_providers.py
Service types, nearby provider search and provider onboarding.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import ServiceProvider, ServiceType, User, UserRole
from tests.conftest import auth_headers, make_provider, make_user

HYDERABAD = {"lat": 17.385044, "lng": 78.486671}


@pytest.mark.asyncio
async def test_service_types_are_public(client: AsyncClient):
    response = await client.get("/api/services/types")
    assert response.status_code == 200
    values = [t["value"] for t in response.json()["service_types"]]
    assert values == ["plumber", "electrician", "carpenter", "doctor", "emergency"]


@pytest.mark.asyncio
async def test_search_requires_auth(client: AsyncClient):
    response = await client.get("/api/services/providers", params={"service_type": "plumber"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_search_requires_service_type(client: AsyncClient, user: User):
    response = await client.get("/api/services/providers", headers=auth_headers(user))
    assert response.status_code == 400
    assert response.json()["detail"] == "Service type is required"


@pytest.mark.asyncio
async def test_search_rejects_unknown_service_type(client: AsyncClient, user: User):
    response = await client.get(
        "/api/services/providers",
        headers=auth_headers(user),
        params={"service_type": "astrologer"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_search_finds_provider_within_radius(
    client: AsyncClient, user: User, provider: ServiceProvider
):
    response = await client.get(
        "/api/services/providers",
        headers=auth_headers(user),
        params={"service_type": "plumber", **HYDERABAD, "radius": 10},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    found = data["providers"][0]
    assert found["id"] == str(provider.id)
    assert found["price"] == "₹500/hour"
    assert found["verified"] is True
    assert found["distance_km"] < 10


@pytest.mark.asyncio
async def test_search_excludes_far_and_other_type_providers(
    client: AsyncClient, db: AsyncSession, user: User, provider: ServiceProvider, fake_redis
):
    # Secunderabad-ish electrician and a Bengaluru plumber
    electrician_owner = await make_user(db, "spark@example.com", UserRole.HELPER)
    await make_provider(
        db, electrician_owner, geo=fake_redis, business_name="Spark", service_type=ServiceType.ELECTRICIAN
    )
    far_owner = await make_user(db, "far@example.com", UserRole.HELPER)
    await make_provider(
        db, far_owner, geo=fake_redis, business_name="Far Away", latitude=12.9716, longitude=77.5946
    )

    response = await client.get(
        "/api/services/providers",
        headers=auth_headers(user),
        params={"service_type": "plumber", **HYDERABAD, "radius": 10},
    )
    names = [p["name"] for p in response.json()["providers"]]
    assert names == ["Quick Fix Plumbing"]


@pytest.mark.asyncio
async def test_search_ranks_verified_first(
    client: AsyncClient, db: AsyncSession, user: User, provider: ServiceProvider, fake_redis
):
    owner = await make_user(db, "new@example.com", UserRole.HELPER)
    await make_provider(
        db, owner, geo=fake_redis, business_name="Nearer But New",
        latitude=17.3851, longitude=78.4867, is_verified=False, rating_avg=5.0,
    )

    response = await client.get(
        "/api/services/providers",
        headers=auth_headers(user),
        params={"service_type": "plumber", **HYDERABAD},
    )
    names = [p["name"] for p in response.json()["providers"]]
    assert names == ["Quick Fix Plumbing", "Nearer But New"]


@pytest.mark.asyncio
async def test_search_skips_deactivated_provider(
    client: AsyncClient, db: AsyncSession, user: User, provider: ServiceProvider
):
    provider.is_active = False
    await db.commit()

    response = await client.get(
        "/api/services/providers",
        headers=auth_headers(user),
        params={"service_type": "plumber", **HYDERABAD, "radius": 10},
    )
    assert response.json()["providers"] == []


@pytest.mark.asyncio
async def test_search_uses_geo_index(client: AsyncClient, db: AsyncSession, user: User, helper: User):
    # a provider row that was never indexed is not found by distance
    await make_provider(db, helper)
    response = await client.get(
        "/api/services/providers",
        headers=auth_headers(user),
        params={"service_type": "plumber", **HYDERABAD, "radius": 10},
    )
    assert response.json()["providers"] == []


@pytest.mark.asyncio
async def test_search_results_are_cached(
    client: AsyncClient, db: AsyncSession, user: User, provider: ServiceProvider, fake_redis
):
    params = {"service_type": "plumber", **HYDERABAD, "radius": 10}
    await client.get("/api/services/providers", headers=auth_headers(user), params=params)
    assert await fake_redis.keys("providers:plumber:*")


@pytest.mark.asyncio
async def test_get_provider_by_id(client: AsyncClient, user: User, provider: ServiceProvider):
    response = await client.get(f"/api/services/provider/{provider.id}", headers=auth_headers(user))
    assert response.status_code == 200
    data = response.json()
    assert data["business_name"] == "Quick Fix Plumbing"
    assert data["completion_rate"] == 0


@pytest.mark.asyncio
async def test_get_unknown_provider_returns_404(client: AsyncClient, user: User):
    response = await client.get(f"/api/services/provider/{uuid.uuid4()}", headers=auth_headers(user))
    assert response.status_code == 404
    assert response.json()["detail"] == "Service provider not found"


# ── Onboarding ────────────────────────────────────────────────

PROVIDER_PAYLOAD = {
    "business_name": "Asha Woodworks",
    "service_type": "carpenter",
    "description": "Furniture repair and custom shelves",
    "phone": "9123456780",
    "email": "woodworks@example.com",
    "address": "Gachibowli, Hyderabad",
    "base_price": 650,
    "location": {"latitude": 17.4401, "longitude": 78.3489, "city": "Hyderabad"},
    "experience_years": 4,
}


@pytest.mark.asyncio
async def test_register_provider_promotes_user(client: AsyncClient, user: User):
    response = await client.post(
        "/api/services/providers/register", headers=auth_headers(user), json=PROVIDER_PAYLOAD
    )
    assert response.status_code == 201
    data = response.json()
    assert data["service_type"] == "carpenter"
    assert data["is_verified"] is False
    assert user.role == UserRole.HELPER


@pytest.mark.asyncio
async def test_register_provider_twice_rejected(client: AsyncClient, helper: User, provider: ServiceProvider):
    response = await client.post(
        "/api/services/providers/register", headers=auth_headers(helper), json=PROVIDER_PAYLOAD
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_registered_provider_is_searchable(client: AsyncClient, user: User, helper: User):
    params = {"service_type": "carpenter", "lat": 17.44, "lng": 78.35, "radius": 5}
    before = await client.get("/api/services/providers", headers=auth_headers(helper), params=params)
    assert before.json()["total"] == 0

    response = await client.post(
        "/api/services/providers/register", headers=auth_headers(user), json=PROVIDER_PAYLOAD
    )
    assert response.status_code == 201

    # onboarding drops the cached empty result
    after = await client.get("/api/services/providers", headers=auth_headers(helper), params=params)
    assert [p["name"] for p in after.json()["providers"]] == ["Asha Woodworks"]
