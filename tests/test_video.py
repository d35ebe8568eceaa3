"""
tests/test_video.py
Video consultations: creation per booking, per-participant tokens,
start/end lifecycle, artifacts and feedback.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import ServiceProvider, User
from tests.conftest import auth_headers, make_user
from tests.test_bookings import create_booking


def window(hours_from_now: int = 1) -> dict:
    start = datetime.now(timezone.utc) + timedelta(hours=hours_from_now)
    return {
        "scheduled_start": start.isoformat(),
        "scheduled_end": (start + timedelta(minutes=30)).isoformat(),
    }


async def open_consultation(client: AsyncClient, user: User, provider: ServiceProvider, **booking) -> dict:
    created = await create_booking(client, user, provider, booking_type="Video Consultation", **booking)
    response = await client.post(
        "/api/video-consultations",
        headers=auth_headers(user),
        json={"booking_id": created["id"], **window()},
    )
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_create_consultation_for_trade_service(
    client: AsyncClient, user: User, provider: ServiceProvider
):
    data = await open_consultation(client, user, provider)
    assert data["status"] == "scheduled"
    assert data["features"]["ar_enabled"] is True
    assert data["features"]["recording_enabled"] is False
    assert data["meeting_url"] == f"/video-call/{data['session_id']}"


@pytest.mark.asyncio
async def test_doctor_consultation_records_instead_of_ar(
    client: AsyncClient, user: User, provider: ServiceProvider
):
    data = await open_consultation(client, user, provider, service_type="doctor")
    assert data["features"]["ar_enabled"] is False
    assert data["features"]["recording_enabled"] is True


@pytest.mark.asyncio
async def test_end_before_start_rejected(client: AsyncClient, user: User, provider: ServiceProvider):
    booking = await create_booking(client, user, provider)
    start = datetime.now(timezone.utc) + timedelta(hours=2)
    response = await client.post("/api/video-consultations", headers=auth_headers(user), json={
        "booking_id": booking["id"],
        "scheduled_start": start.isoformat(),
        "scheduled_end": (start - timedelta(minutes=5)).isoformat(),
    })
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_one_consultation_per_booking(client: AsyncClient, user: User, provider: ServiceProvider):
    data = await open_consultation(client, user, provider)
    response = await client.post(
        "/api/video-consultations",
        headers=auth_headers(user),
        json={"booking_id": data["booking_id"], **window(3)},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_each_participant_gets_own_token(
    client: AsyncClient, db: AsyncSession, user: User, helper: User, provider: ServiceProvider
):
    data = await open_consultation(client, user, provider)

    as_user = (await client.get(f"/api/video-consultations/{data['id']}", headers=auth_headers(user))).json()
    as_provider = (await client.get(f"/api/video-consultations/{data['id']}", headers=auth_headers(helper))).json()
    assert as_user["role"] == "user"
    assert as_provider["role"] == "provider"
    assert as_user["token"] != as_provider["token"]

    outsider = await make_user(db, "peeker@example.com")
    response = await client.get(f"/api/video-consultations/{data['id']}", headers=auth_headers(outsider))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_user_cannot_start(client: AsyncClient, user: User, provider: ServiceProvider):
    data = await open_consultation(client, user, provider)
    response = await client.put(f"/api/video-consultations/{data['id']}/start", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_end_requires_in_progress(
    client: AsyncClient, user: User, helper: User, provider: ServiceProvider
):
    data = await open_consultation(client, user, provider)
    response = await client.put(
        f"/api/video-consultations/{data['id']}/end", headers=auth_headers(helper), json={}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_full_session_completes_booking(
    client: AsyncClient, user: User, helper: User, provider: ServiceProvider
):
    data = await open_consultation(client, user, provider)

    started = await client.put(f"/api/video-consultations/{data['id']}/start", headers=auth_headers(helper))
    assert started.json()["status"] == "in-progress"

    artifact = await client.post(
        f"/api/video-consultations/{data['id']}/artifacts",
        headers=auth_headers(helper),
        json={"type": "ar_annotation", "url": "https://cdn.example.com/a.png", "name": "Valve location"},
    )
    assert artifact.status_code == 200
    assert artifact.json()["artifacts"][0]["created_by"] == "provider"

    ended = await client.put(
        f"/api/video-consultations/{data['id']}/end",
        headers=auth_headers(helper),
        json={"diagnosis": "Worn washer", "recommendations": "Replace the tap washer"},
    )
    assert ended.status_code == 200
    assert ended.json()["status"] == "completed"
    assert ended.json()["duration_minutes"] == 0

    booking = await client.get(f"/api/bookings/{data['booking_id']}", headers=auth_headers(user))
    assert booking.json()["status"] == "completed"

    feedback = await client.post(
        f"/api/video-consultations/{data['id']}/feedback",
        headers=auth_headers(user),
        json={"rating": 5, "comment": "Very clear"},
    )
    assert feedback.status_code == 200
    assert provider.rating_count == 1
