"""
services/wallet/router.py
Wallet money balance, reward points, tiers and referrals.
Every balance change is recorded as a WalletTransaction.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.wallet.ledger import get_or_create_wallet, get_wallet
from shared.middleware.auth import get_current_user
from shared.models.models import (
    Booking,
    RewardLevel,
    TransactionType,
    User,
    Wallet,
    WalletTransaction,
)
from shared.schemas.schemas import (
    AddMoneyRequest,
    PaginatedResponse,
    RedeemPointsRequest,
    ReferralRequest,
    WalletPayRequest,
    WalletResponse,
    WalletTransactionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["Wallet"])

# cashback and discount in percent
TIER_BENEFITS = {
    RewardLevel.BRONZE: {"cashback_rate": 1, "booking_discount": 0, "points_per_booking": 10,
                         "next_level": RewardLevel.SILVER, "next_level_points": 500},
    RewardLevel.SILVER: {"cashback_rate": 2, "booking_discount": 5, "points_per_booking": 20,
                         "next_level": RewardLevel.GOLD, "next_level_points": 2000},
    RewardLevel.GOLD: {"cashback_rate": 3, "booking_discount": 10, "points_per_booking": 30,
                       "next_level": RewardLevel.PLATINUM, "next_level_points": 5000},
    RewardLevel.PLATINUM: {"cashback_rate": 5, "booking_discount": 15, "points_per_booking": 50,
                           "next_level": None, "next_level_points": None},
}


async def _wallet_response(wallet: Wallet, db: AsyncSession) -> WalletResponse:
    result = await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.wallet_id == wallet.id)
        .order_by(WalletTransaction.created_at.desc())
        .limit(10)
    )
    return WalletResponse(
        id=wallet.id,
        user_id=wallet.user_id,
        money_balance=float(wallet.money_balance),
        points_balance=wallet.points_balance,
        money_earned=float(wallet.money_earned),
        money_spent=float(wallet.money_spent),
        points_earned=wallet.points_earned,
        points_spent=wallet.points_spent,
        reward_level=wallet.reward_level,
        referral_code=wallet.referral_code,
        recent_transactions=[
            WalletTransactionResponse.model_validate(t) for t in result.scalars().all()
        ],
    )


async def _wallet_or_404(db: AsyncSession, user: User) -> Wallet:
    wallet = await get_wallet(db, user.id)
    if not wallet:
        raise HTTPException(status_code=404, detail="Wallet not found")
    return wallet


# ── Balance ───────────────────────────────────────────────────

@router.get("", response_model=WalletResponse)
async def get_wallet_details(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Balances, tier, referral code and the last 10 transactions. Creates the wallet on first use."""
    wallet = await get_or_create_wallet(db, current_user.id)
    await db.commit()
    return await _wallet_response(wallet, db)


@router.post("/add", response_model=WalletResponse)
async def add_money(
    data: AddMoneyRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if data.amount is None or data.amount <= 0:
        raise HTTPException(status_code=400, detail="Valid amount greater than 0 is required")

    wallet = await get_or_create_wallet(db, current_user.id)
    db.add(wallet.add_transaction(
        TransactionType.CREDIT,
        Decimal(str(data.amount)),
        True,
        f"Added money via {data.payment_method or 'online payment'}",
        reference=data.reference,
    ))
    await db.commit()

    logger.info(f"Wallet {wallet.id} credited {data.amount:.2f}")
    return await _wallet_response(wallet, db)


@router.post("/redeem", response_model=WalletResponse)
async def redeem_points(
    data: RedeemPointsRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Convert points to money at POINT_REDEMPTION_RATE per point."""
    if data.points is None or data.points <= 0:
        raise HTTPException(
            status_code=400, detail="Valid number of points greater than 0 is required"
        )

    wallet = await _wallet_or_404(db, current_user)
    if data.points > (wallet.points_balance or 0):
        raise HTTPException(status_code=400, detail="Insufficient points balance")
    if data.points < settings.MIN_REDEEMABLE_POINTS:
        raise HTTPException(
            status_code=400,
            detail=f"Minimum {settings.MIN_REDEEMABLE_POINTS} points required for redemption",
        )

    db.add_all(wallet.redeem_points(data.points))
    await db.commit()
    return await _wallet_response(wallet, db)


# ── Referrals ─────────────────────────────────────────────────

@router.post("/referral", response_model=WalletResponse)
async def apply_referral_code(
    data: ReferralRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Apply someone else's referral code once. Both wallets receive the referral bonus."""
    if not data.referral_code:
        raise HTTPException(status_code=400, detail="Referral code is required")

    code = data.referral_code.strip().upper()
    result = await db.execute(select(Wallet).where(Wallet.referral_code == code))
    referrer_wallet = result.scalar_one_or_none()
    if not referrer_wallet:
        raise HTTPException(status_code=404, detail="Invalid referral code")
    if referrer_wallet.user_id == current_user.id:
        raise HTTPException(status_code=400, detail="Cannot use your own referral code")

    wallet = await get_or_create_wallet(db, current_user.id)
    if wallet.referred_by_id:
        raise HTTPException(status_code=400, detail="You have already used a referral code")

    bonus = settings.REFERRAL_BONUS_POINTS
    wallet.referred_by_id = referrer_wallet.user_id
    db.add(wallet.add_transaction(
        TransactionType.REFERRAL_BONUS, bonus, False,
        f"Referral bonus for using code {code}", reference=code,
    ))
    db.add(referrer_wallet.add_transaction(
        TransactionType.REFERRAL_BONUS, bonus, False,
        f"Referral bonus for inviting {current_user.name}", reference=code,
    ))
    await db.commit()

    logger.info(f"Referral {code} applied by user {current_user.id}")
    return await _wallet_response(wallet, db)


# ── History & Rewards ─────────────────────────────────────────

@router.get("/transactions", response_model=PaginatedResponse)
async def get_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    wallet = await _wallet_or_404(db, current_user)

    query = select(WalletTransaction).where(WalletTransaction.wallet_id == wallet.id)
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(WalletTransaction.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )

    return PaginatedResponse(
        items=[WalletTransactionResponse.model_validate(t) for t in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=-(-total // page_size),
    )


@router.get("/rewards")
async def get_reward_details(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current tier benefits, points to the next tier, and points earned this calendar month."""
    wallet = await _wallet_or_404(db, current_user)
    points = wallet.points_balance or 0

    tier = TIER_BENEFITS[wallet.reward_level]
    benefits = {
        "cashback_rate": tier["cashback_rate"],
        "booking_discount": tier["booking_discount"],
        "points_per_booking": tier["points_per_booking"],
        "next_level": tier["next_level"].value if tier["next_level"] else None,
        "points_to_next_level": max(0, tier["next_level_points"] - points)
        if tier["next_level_points"] else 0,
    }

    month_start = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    earned_this_month = await db.scalar(
        select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
            WalletTransaction.wallet_id == wallet.id,
            WalletTransaction.is_money == False,
            WalletTransaction.type.in_([TransactionType.POINT_EARNED, TransactionType.REFERRAL_BONUS]),
            WalletTransaction.created_at >= month_start,
        )
    )

    return {
        "success": True,
        "data": {
            "current_points": points,
            "current_level": wallet.reward_level.value,
            "benefits": benefits,
            "points_earned_this_month": int(earned_this_month or 0),
        },
    }


# ── Payments ──────────────────────────────────────────────────

@router.post("/pay", response_model=WalletResponse)
async def pay_with_wallet(
    data: WalletPayRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Pay for one of the caller's bookings from the money balance."""
    if not data.booking_id or data.amount is None:
        raise HTTPException(status_code=400, detail="Booking ID and amount are required")
    if data.amount <= 0:
        raise HTTPException(status_code=400, detail="Valid amount greater than 0 is required")

    wallet = await _wallet_or_404(db, current_user)
    amount = Decimal(str(data.amount))
    if (wallet.money_balance or 0) < amount:
        raise HTTPException(status_code=400, detail="Insufficient wallet balance")

    booking = await db.get(Booking, data.booking_id)
    if not booking or booking.user_id != current_user.id:
        raise HTTPException(status_code=404, detail="Booking not found")

    db.add(wallet.add_transaction(
        TransactionType.BOOKING_PAYMENT,
        amount,
        True,
        data.description or f"Payment for booking {booking.booking_number}",
        booking_id=booking.id,
    ))
    booking.is_paid = True
    await db.commit()

    logger.info(f"Booking {booking.booking_number} paid from wallet {wallet.id}")
    return await _wallet_response(wallet, db)
