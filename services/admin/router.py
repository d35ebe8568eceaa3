"""
services/admin/router.py
Admin-only endpoints: provider and volunteer verification, user moderation,
platform counts, and the audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    Booking,
    CommunityHelpRequest,
    CommunityVolunteer,
    EmergencyService,
    EmergencyStatus,
    ServiceProvider,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AdminSuspendRequest,
    AdminVerifyRequest,
    MessageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ───────────────────────────────────────────────────

async def _log(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    db.add(AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    ))


# ── Provider Verification Queue ───────────────────────────────

@router.get("/providers/pending")
async def get_pending_providers(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Unverified providers, oldest application first."""
    query = (
        select(ServiceProvider, User)
        .join(User, User.id == ServiceProvider.user_id)
        .where(ServiceProvider.is_verified == False)
        .order_by(ServiceProvider.created_at.asc())
    )
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return {
        "items": [
            {
                "provider_id": str(provider.id),
                "user_id": str(provider.user_id),
                "name": user.name,
                "email": user.email,
                "phone": user.phone,
                "business_name": provider.business_name,
                "service_type": provider.service_type.value,
                "address": provider.address,
                "experience_years": provider.experience_years,
                "base_price": float(provider.base_price),
                "applied_at": provider.created_at.isoformat(),
            }
            for provider, user in result.all()
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),
    }


@router.post("/providers/{provider_id}/verify", response_model=MessageResponse)
async def verify_provider(
    provider_id: UUID,
    data: AdminVerifyRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Verified providers rank first in search and become eligible for emergency dispatch."""
    provider = await db.get(ServiceProvider, provider_id)
    if not provider:
        raise HTTPException(status_code=404, detail="Service provider not found")
    if provider.is_verified:
        raise HTTPException(status_code=409, detail="Service provider is already verified")

    provider.is_verified = True
    provider.kyc_completed = True
    provider.verified_at = datetime.now(timezone.utc)

    await _log(db, current_user, "VERIFY_PROVIDER", "ServiceProvider", str(provider_id),
               {"notes": data.notes}, request)
    await db.commit()

    logger.info(f"Provider {provider_id} verified by admin {current_user.id}")
    return MessageResponse(message="Service provider verified successfully")


@router.post("/volunteers/{volunteer_id}/verify", response_model=MessageResponse)
async def verify_volunteer(
    volunteer_id: UUID,
    data: AdminVerifyRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Only verified volunteers are matched to help requests."""
    volunteer = await db.get(CommunityVolunteer, volunteer_id)
    if not volunteer:
        raise HTTPException(status_code=404, detail="Volunteer not found")
    if volunteer.is_verified:
        raise HTTPException(status_code=409, detail="Volunteer is already verified")

    volunteer.is_verified = True
    volunteer.verified_at = datetime.now(timezone.utc)

    await _log(db, current_user, "VERIFY_VOLUNTEER", "CommunityVolunteer", str(volunteer_id),
               {"notes": data.notes}, request)
    await db.commit()

    logger.info(f"Volunteer {volunteer_id} verified by admin {current_user.id}")
    return MessageResponse(message="Volunteer verified successfully")


# ── User Moderation ───────────────────────────────────────────

@router.post("/users/{user_id}/suspend", response_model=MessageResponse)
async def suspend_user(
    user_id: UUID,
    data: AdminSuspendRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a user account. Admins cannot be suspended."""
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.role == UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Cannot suspend admin users")
    if not user.is_active:
        raise HTTPException(status_code=409, detail="User is already suspended")

    user.is_active = False
    await _log(db, current_user, "SUSPEND_USER", "User", str(user_id),
               {"reason": data.reason}, request)
    await db.commit()

    logger.warning(f"User {user_id} suspended by admin {current_user.id}: {data.reason}")
    return MessageResponse(message="User suspended")


@router.post("/users/{user_id}/reactivate", response_model=MessageResponse)
async def reactivate_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.is_active:
        raise HTTPException(status_code=400, detail="User is not suspended")

    user.is_active = True
    await _log(db, current_user, "REACTIVATE_USER", "User", str(user_id), {}, request)
    await db.commit()
    return MessageResponse(message="User reactivated")


# ── Platform Counts ───────────────────────────────────────────

@router.get("/analytics")
async def get_analytics(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    async def count(model, *where):
        return await db.scalar(select(func.count(model.id)).where(*where)) or 0

    return {
        "success": True,
        "data": {
            "total_users": await count(User, User.role == UserRole.USER),
            "total_providers": await count(ServiceProvider),
            "verified_providers": await count(ServiceProvider, ServiceProvider.is_verified == True),
            "total_volunteers": await count(CommunityVolunteer),
            "verified_volunteers": await count(
                CommunityVolunteer, CommunityVolunteer.is_verified == True
            ),
            "total_bookings": await count(Booking),
            "bookings_today": await count(Booking, Booking.created_at >= today_start),
            "open_emergencies": await count(
                EmergencyService,
                EmergencyService.status.in_([
                    EmergencyStatus.REQUESTED,
                    EmergencyStatus.SEARCHING,
                    EmergencyStatus.ASSIGNED,
                    EmergencyStatus.IN_PROGRESS,
                ]),
            ),
            "total_help_requests": await count(CommunityHelpRequest),
        },
    }


# ── Audit Log ─────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: str = Query(None, description="Filter by action e.g. VERIFY_PROVIDER"),
    entity_type: str = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(AdminAuditLog, User)
        .join(User, User.id == AdminAuditLog.admin_id)
        .order_by(AdminAuditLog.created_at.desc())
    )
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return {
        "items": [
            {
                "id": str(log.id),
                "admin_name": admin.name,
                "admin_email": admin.email,
                "action": log.action,
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "payload": log.payload,
                "ip_address": log.ip_address,
                "created_at": log.created_at.isoformat(),
            }
            for log, admin in result.all()
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),
    }
