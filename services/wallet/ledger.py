"""
services/wallet/ledger.py
Wallet lookups and balance mutations shared by the wallet and booking routers.
"""

import logging
import math
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import Booking, TransactionType, Wallet

logger = logging.getLogger(__name__)


async def get_wallet(db: AsyncSession, user_id: uuid.UUID) -> Optional[Wallet]:
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_wallet(db: AsyncSession, user_id: uuid.UUID) -> Wallet:
    """The user's wallet, created empty on first access."""
    wallet = await get_wallet(db, user_id)
    if wallet:
        return wallet

    wallet = Wallet.for_user(user_id)
    db.add(wallet)
    await db.flush()
    logger.info(f"Wallet created for user {user_id}")
    return wallet


async def add_booking_points(db: AsyncSession, booking: Booking) -> int:
    """
    Credit reward points for a completed booking: BOOKING_POINTS_PERCENT of the
    total amount, rounded down. Returns the points credited.
    """
    points = math.floor(float(booking.total_amount) * settings.BOOKING_POINTS_PERCENT / 100)
    if points <= 0:
        return 0

    wallet = await get_or_create_wallet(db, booking.user_id)
    db.add(wallet.add_transaction(
        TransactionType.POINT_EARNED,
        points,
        False,
        f"Points earned from booking {booking.booking_number}",
        booking_id=booking.id,
    ))
    return points
