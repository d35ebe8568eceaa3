"""
tests/test_community.py
Volunteer registration, help requests, matching by skill and distance,
acceptance, completion stats and feedback.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.community.dispatch import dispatch_help_request
from shared.models.models import (
    CommunityHelpRequest,
    CommunityVolunteer,
    HelpRequestStatus,
    User,
    UserRole,
)
from tests.conftest import auth_headers, make_user

VOLUNTEER_PAYLOAD = {
    "name": "Ravi Kumar",
    "skills": ["Elderly-Care", "tutoring"],
    "bio": "Retired teacher",
    "contact": {"phone": "9876501234"},
    "location": {"address": "Himayatnagar, Hyderabad", "latitude": 17.4010, "longitude": 78.4870},
    "service_radius_km": 10,
}


@pytest_asyncio.fixture
async def volunteer(client: AsyncClient, db: AsyncSession, helper: User) -> CommunityVolunteer:
    response = await client.post(
        "/api/community/volunteers/register", headers=auth_headers(helper), json=VOLUNTEER_PAYLOAD
    )
    assert response.status_code == 201
    volunteer = await db.get(CommunityVolunteer, uuid.UUID(response.json()["id"]))
    volunteer.is_verified = True
    await db.commit()
    return volunteer


async def ask_for_help(client: AsyncClient, user: User, help_type: str = "elderly-care", **overrides) -> dict:
    payload = {
        "help_type": help_type,
        "description": "Need someone to accompany my father to the clinic",
        "location": {"address": "Narayanguda, Hyderabad", "latitude": 17.3950, "longitude": 78.4890},
        "requested_date": (datetime.now(timezone.utc) + timedelta(days=1)).isoformat(),
        "estimated_hours": 3,
    }
    payload.update(overrides)
    with patch("services.community.router.dispatch_help_request") as dispatch:
        response = await client.post("/api/community/help-requests", headers=auth_headers(user), json=payload)
    assert response.status_code == 201
    dispatch.assert_called_once()
    return response.json()


# ── Volunteers ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_register_volunteer_promotes_user(client: AsyncClient, user: User):
    response = await client.post(
        "/api/community/volunteers/register", headers=auth_headers(user), json=VOLUNTEER_PAYLOAD
    )
    assert response.status_code == 201
    data = response.json()
    assert data["skills"] == ["elderly-care", "tutoring"]
    assert data["contact_email"] == user.email
    assert data["is_verified"] is False
    assert user.role == UserRole.HELPER


@pytest.mark.asyncio
async def test_register_volunteer_twice_rejected(client: AsyncClient, helper: User, volunteer):
    response = await client.post(
        "/api/community/volunteers/register", headers=auth_headers(helper), json=VOLUNTEER_PAYLOAD
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "You are already registered as a volunteer"


@pytest.mark.asyncio
async def test_register_volunteer_requires_phone_and_skills(client: AsyncClient, user: User):
    payload = {**VOLUNTEER_PAYLOAD, "skills": [], "contact": {}}
    response = await client.post(
        "/api/community/volunteers/register", headers=auth_headers(user), json=payload
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_register_volunteer_defaults_coordinates(client: AsyncClient, user: User):
    payload = {**VOLUNTEER_PAYLOAD, "location": {"address": "Somewhere in the city"}}
    response = await client.post(
        "/api/community/volunteers/register", headers=auth_headers(user), json=payload
    )
    assert response.json()["latitude"] == 17.385044
    assert response.json()["longitude"] == 78.486671


@pytest.mark.asyncio
async def test_volunteer_profile_missing(client: AsyncClient, user: User):
    response = await client.get("/api/community/volunteers/profile", headers=auth_headers(user))
    assert response.status_code == 404
    assert response.json()["detail"] == "Volunteer profile not found"


@pytest.mark.asyncio
async def test_update_volunteer_profile(client: AsyncClient, helper: User, volunteer):
    response = await client.put(
        "/api/community/volunteers/profile",
        headers=auth_headers(helper),
        json={"service_radius_km": 25, "availability_frequency": "on-call"},
    )
    assert response.status_code == 200
    assert response.json()["service_radius_km"] == 25
    assert response.json()["availability_frequency"] == "on-call"


# ── Help Requests ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_help_request(client: AsyncClient, user: User):
    data = await ask_for_help(client, user)
    assert data["status"] == "pending"
    assert data["request_number"].startswith("CH")
    assert data["tracking"][0]["notes"] == "Help request created"


@pytest.mark.asyncio
async def test_help_request_visible_to_requester_only(client: AsyncClient, db: AsyncSession, user: User):
    data = await ask_for_help(client, user)
    stranger = await make_user(db, "stranger@example.com")

    assert (await client.get(
        f"/api/community/help-requests/{data['id']}", headers=auth_headers(user)
    )).status_code == 200
    assert (await client.get(
        f"/api/community/help-requests/{data['id']}", headers=auth_headers(stranger)
    )).status_code == 403

    listed = await client.get("/api/community/help-requests", headers=auth_headers(user))
    assert len(listed.json()) == 1


@pytest.mark.asyncio
async def test_nearby_requests_match_skill_and_radius(client: AsyncClient, user: User, helper: User, volunteer):
    await ask_for_help(client, user)
    await ask_for_help(client, user, help_type="plumbing")
    await ask_for_help(
        client, user,
        location={"address": "Vijayawada", "latitude": 16.5062, "longitude": 80.6480},
    )

    response = await client.get("/api/community/volunteers/requests", headers=auth_headers(helper))
    data = response.json()
    assert data["assigned_requests"] == []
    assert len(data["nearby_requests"]) == 1
    assert data["nearby_requests"][0]["help_type"] == "elderly-care"


# ── Dispatch ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dispatch_assigns_verified_volunteer_with_skill(
    client: AsyncClient, db: AsyncSession, user: User, volunteer, fake_redis
):
    data = await ask_for_help(client, user)

    assert await dispatch_help_request(uuid.UUID(data["id"]), fake_redis) is True

    help_request = await db.get(CommunityHelpRequest, uuid.UUID(data["id"]))
    await db.refresh(help_request)
    await db.refresh(volunteer)
    assert help_request.status == HelpRequestStatus.ACCEPTED
    assert help_request.volunteer_id == volunteer.id
    assert help_request.confirmed_time is not None
    assert help_request.tracking[-1]["notes"] == "Accepted by volunteer Ravi Kumar"
    assert volunteer.total_help_requests == 1


@pytest.mark.asyncio
async def test_dispatch_skips_unverified_volunteers(
    client: AsyncClient, db: AsyncSession, user: User, volunteer, fake_redis
):
    volunteer.is_verified = False
    await db.commit()
    data = await ask_for_help(client, user)

    assert await dispatch_help_request(uuid.UUID(data["id"]), fake_redis) is False

    help_request = await db.get(CommunityHelpRequest, uuid.UUID(data["id"]))
    await db.refresh(help_request)
    assert help_request.status == HelpRequestStatus.SEARCHING


# ── Accept ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_volunteer_accepts_request(client: AsyncClient, user: User, helper: User, volunteer):
    data = await ask_for_help(client, user)
    response = await client.post(
        f"/api/community/help-requests/{data['id']}/accept", headers=auth_headers(helper)
    )
    assert response.status_code == 200
    assert response.json()["status"] == "accepted"
    assert response.json()["volunteer_id"] == str(volunteer.id)
    assert volunteer.total_help_requests == 1


@pytest.mark.asyncio
async def test_accepted_request_leaves_geo_index(
    client: AsyncClient, user: User, helper: User, volunteer, fake_redis
):
    data = await ask_for_help(client, user)
    assert await fake_redis.zscore("geo:help_requests", data["id"]) is not None

    await client.post(f"/api/community/help-requests/{data['id']}/accept", headers=auth_headers(helper))
    assert await fake_redis.zscore("geo:help_requests", data["id"]) is None


@pytest.mark.asyncio
async def test_accept_already_assigned_request_fails(
    client: AsyncClient, db: AsyncSession, user: User, volunteer
):
    data = await ask_for_help(client, user)
    help_request = await db.get(CommunityHelpRequest, uuid.UUID(data["id"]))
    help_request.volunteer_id = volunteer.id
    await db.commit()

    other = await make_user(db, "second@example.com")
    await client.post(
        "/api/community/volunteers/register", headers=auth_headers(other), json=VOLUNTEER_PAYLOAD
    )
    response = await client.post(
        f"/api/community/help-requests/{data['id']}/accept", headers=auth_headers(other)
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "This request has already been accepted by another volunteer"


@pytest.mark.asyncio
async def test_accept_requires_skill(client: AsyncClient, user: User, helper: User, volunteer):
    data = await ask_for_help(client, user, help_type="plumbing")
    response = await client.post(
        f"/api/community/help-requests/{data['id']}/accept", headers=auth_headers(helper)
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "You do not have the required skill for this help request"


@pytest.mark.asyncio
async def test_accept_without_volunteer_profile(client: AsyncClient, db: AsyncSession, user: User):
    data = await ask_for_help(client, user)
    other = await make_user(db, "notvol@example.com")
    response = await client.post(
        f"/api/community/help-requests/{data['id']}/accept", headers=auth_headers(other)
    )
    assert response.status_code == 404


# ── Status & Feedback ─────────────────────────────────────────

@pytest.mark.asyncio
async def test_completion_updates_volunteer_stats(client: AsyncClient, user: User, helper: User, volunteer):
    data = await ask_for_help(client, user)
    await client.post(f"/api/community/help-requests/{data['id']}/accept", headers=auth_headers(helper))

    response = await client.put(
        f"/api/community/help-requests/{data['id']}/status",
        headers=auth_headers(helper),
        json={"status": "completed"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["completed_at"] is not None
    assert body["tracking"][-1]["notes"] == "Status updated from accepted to completed"
    assert volunteer.completed_requests == 1
    assert volunteer.people_helped == 1
    assert volunteer.hours_donated == 3


@pytest.mark.asyncio
async def test_invalid_status_rejected(client: AsyncClient, user: User):
    data = await ask_for_help(client, user)
    response = await client.put(
        f"/api/community/help-requests/{data['id']}/status",
        headers=auth_headers(user),
        json={"status": "teleported"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_feedback_requires_completion(client: AsyncClient, user: User):
    data = await ask_for_help(client, user)
    response = await client.post(
        f"/api/community/help-requests/{data['id']}/feedback",
        headers=auth_headers(user),
        json={"rating": 5},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_feedback_updates_volunteer_rating(client: AsyncClient, user: User, helper: User, volunteer):
    data = await ask_for_help(client, user)
    await client.post(f"/api/community/help-requests/{data['id']}/accept", headers=auth_headers(helper))
    await client.put(
        f"/api/community/help-requests/{data['id']}/status",
        headers=auth_headers(helper),
        json={"status": "completed"},
    )

    user_side = await client.post(
        f"/api/community/help-requests/{data['id']}/feedback",
        headers=auth_headers(user),
        json={"rating": 4, "comment": "Very patient"},
    )
    assert user_side.json()["user_feedback"]["rating"] == 4
    assert volunteer.rating_count == 1
    assert volunteer.rating_avg == 4

    volunteer_side = await client.post(
        f"/api/community/help-requests/{data['id']}/feedback",
        headers=auth_headers(helper),
        json={"rating": 5},
    )
    assert volunteer_side.json()["volunteer_feedback"]["rating"] == 5


# ── Admin Lists ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_lists(client: AsyncClient, user: User, admin: User, volunteer):
    await ask_for_help(client, user)

    volunteers = await client.get("/api/community/admin/volunteers", headers=auth_headers(admin))
    assert volunteers.json()["total"] == 1

    requests = await client.get(
        "/api/community/admin/help-requests", headers=auth_headers(admin), params={"status": "pending"}
    )
    assert requests.json()["total"] == 1

    forbidden = await client.get("/api/community/admin/volunteers", headers=auth_headers(user))
    assert forbidden.status_code == 403
