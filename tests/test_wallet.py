"""
tests/test_wallet.py
Wallet balances, point redemption, referrals, rewards and wallet payments.
"""

from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.wallet.ledger import get_or_create_wallet
from shared.models.models import TransactionType, User
from tests.conftest import auth_headers, make_user
from tests.test_bookings import create_booking


async def give_points(db: AsyncSession, user: User, points: int):
    wallet = await get_or_create_wallet(db, user.id)
    db.add(wallet.add_transaction(TransactionType.POINT_EARNED, points, False, "Test points"))
    await db.commit()
    return wallet


async def give_money(db: AsyncSession, user: User, amount: str):
    wallet = await get_or_create_wallet(db, user.id)
    db.add(wallet.add_transaction(TransactionType.CREDIT, Decimal(amount), True, "Test top-up"))
    await db.commit()
    return wallet


# ── Balance ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_wallet_created_on_first_access(client: AsyncClient, user: User):
    response = await client.get("/api/wallet", headers=auth_headers(user))
    assert response.status_code == 200
    data = response.json()
    assert data["money_balance"] == 0
    assert data["points_balance"] == 0
    assert data["reward_level"] == "bronze"
    assert data["referral_code"].startswith("RH")


@pytest.mark.asyncio
async def test_add_money(client: AsyncClient, user: User):
    response = await client.post(
        "/api/wallet/add", headers=auth_headers(user), json={"amount": 250.5, "payment_method": "upi"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["money_balance"] == 250.5
    assert data["recent_transactions"][0]["type"] == "credit"


@pytest.mark.asyncio
async def test_add_money_rejects_non_positive(client: AsyncClient, user: User):
    response = await client.post("/api/wallet/add", headers=auth_headers(user), json={"amount": 0})
    assert response.status_code == 400


# ── Redeem ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_redeem_points(client: AsyncClient, db: AsyncSession, user: User):
    await give_points(db, user, 600)
    response = await client.post("/api/wallet/redeem", headers=auth_headers(user), json={"points": 200})
    assert response.status_code == 200
    data = response.json()
    assert data["points_balance"] == 400
    assert data["money_balance"] == 50
    assert data["points_spent"] == 200


@pytest.mark.asyncio
async def test_redeem_below_minimum_rejected(client: AsyncClient, db: AsyncSession, user: User):
    await give_points(db, user, 300)
    response = await client.post("/api/wallet/redeem", headers=auth_headers(user), json={"points": 50})
    assert response.status_code == 400
    assert response.json()["detail"] == "Minimum 100 points required for redemption"


@pytest.mark.asyncio
async def test_redeem_more_than_balance_rejected(client: AsyncClient, db: AsyncSession, user: User):
    await give_points(db, user, 150)
    response = await client.post("/api/wallet/redeem", headers=auth_headers(user), json={"points": 200})
    assert response.status_code == 400
    assert response.json()["detail"] == "Insufficient points balance"


@pytest.mark.asyncio
async def test_redeem_without_wallet(client: AsyncClient, user: User):
    response = await client.post("/api/wallet/redeem", headers=auth_headers(user), json={"points": 100})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_reward_level_follows_points(client: AsyncClient, db: AsyncSession, user: User):
    wallet = await give_points(db, user, 2100)
    assert wallet.reward_level.value == "gold"

    response = await client.get("/api/wallet/rewards", headers=auth_headers(user))
    data = response.json()["data"]
    assert data["current_level"] == "gold"
    assert data["benefits"]["next_level"] == "platinum"
    assert data["benefits"]["points_to_next_level"] == 2900
    assert data["points_earned_this_month"] == 2100


# ── Referral ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_referral_credits_both_wallets(client: AsyncClient, db: AsyncSession, user: User):
    friend = await make_user(db, "friend@example.com")
    friend_wallet = await get_or_create_wallet(db, friend.id)
    await db.commit()

    response = await client.post(
        "/api/wallet/referral",
        headers=auth_headers(user),
        json={"referral_code": friend_wallet.referral_code.lower()},
    )
    assert response.status_code == 200
    assert response.json()["points_balance"] == 100
    assert friend_wallet.points_balance == 100

    again = await client.post(
        "/api/wallet/referral",
        headers=auth_headers(user),
        json={"referral_code": friend_wallet.referral_code},
    )
    assert again.status_code == 400


@pytest.mark.asyncio
async def test_own_referral_code_rejected(client: AsyncClient, db: AsyncSession, user: User):
    wallet = await get_or_create_wallet(db, user.id)
    await db.commit()
    response = await client.post(
        "/api/wallet/referral", headers=auth_headers(user), json={"referral_code": wallet.referral_code}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_referral_code(client: AsyncClient, user: User):
    response = await client.post(
        "/api/wallet/referral", headers=auth_headers(user), json={"referral_code": "RHNOPE0000"}
    )
    assert response.status_code == 404
    assert response.json()["detail"] == "Invalid referral code"


# ── History & Payments ────────────────────────────────────────

@pytest.mark.asyncio
async def test_transactions_paginated(client: AsyncClient, db: AsyncSession, user: User):
    await give_money(db, user, "100")
    await give_points(db, user, 10)
    response = await client.get(
        "/api/wallet/transactions", headers=auth_headers(user), params={"page_size": 1}
    )
    data = response.json()
    assert data["total"] == 2
    assert data["total_pages"] == 2
    assert len(data["items"]) == 1


@pytest.mark.asyncio
async def test_pay_booking_from_wallet(client: AsyncClient, db: AsyncSession, user: User, provider):
    booking = await create_booking(client, user, provider)
    await give_money(db, user, "800")

    response = await client.post("/api/wallet/pay", headers=auth_headers(user), json={
        "booking_id": booking["id"], "amount": 500,
    })
    assert response.status_code == 200
    assert response.json()["money_balance"] == 300

    paid = await client.get(f"/api/bookings/{booking['id']}", headers=auth_headers(user))
    assert paid.json()["is_paid"] is True


@pytest.mark.asyncio
async def test_pay_with_insufficient_balance(client: AsyncClient, db: AsyncSession, user: User, provider):
    booking = await create_booking(client, user, provider)
    await give_money(db, user, "100")

    response = await client.post("/api/wallet/pay", headers=auth_headers(user), json={
        "booking_id": booking["id"], "amount": 500,
    })
    assert response.status_code == 400
    assert response.json()["detail"] == "Insufficient wallet balance"
