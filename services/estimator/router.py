"""
services/estimator/router.py
Service cost estimates.
Lookup order: exact template → the service's "general" template →
average price of verified providers → fixed fallback table.
"""

import logging
import math
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from config.settings import settings
from services.provider.router import find_nearby_providers
from shared.middleware.auth import require_admin
from shared.models.models import CostEstimation, ServiceProvider, ServiceType, User
from shared.schemas.schemas import (
    EstimateRequest,
    EstimationTemplateCreateRequest,
    EstimationTemplateResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cost-estimator", tags=["Cost Estimator"])

FALLBACK_PRICES = {
    "plumber": 500,
    "electrician": 600,
    "carpenter": 700,
    "doctor": 1000,
    "emergency": 1200,
    "cleaning": 400,
    "painting": 800,
    "mechanic": 800,
    "tutor": 500,
    "gardener": 400,
    "other": 600,
}
DEFAULT_FALLBACK_PRICE = 600
GENERIC_PROBLEM_TYPE = "general"


# ── Helpers ───────────────────────────────────────────────────

async def _find_template(db: AsyncSession, service_type: str, problem_type: str) -> CostEstimation | None:
    result = await db.execute(
        select(CostEstimation).where(
            CostEstimation.service_type == service_type,
            CostEstimation.problem_type == problem_type,
            CostEstimation.is_active == True,
        )
    )
    return result.scalar_one_or_none()


def _valid_service_type(service_type: str) -> bool:
    return service_type in {s.value for s in ServiceType}


async def _average_provider_price(db: AsyncSession, service_type: str) -> float | None:
    if not _valid_service_type(service_type):
        return None
    avg = await db.scalar(
        select(func.avg(ServiceProvider.base_price)).where(
            ServiceProvider.service_type == ServiceType(service_type),
            ServiceProvider.is_verified == True,
        )
    )
    return float(avg) if avg is not None else None


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def generic_estimate(base_price: float) -> dict:
    return {
        "estimated_price": _round_half_up(base_price),
        "price_range": {
            "low": _round_half_up(base_price * 0.8),
            "high": _round_half_up(base_price * 1.2),
        },
        "time_estimate": "1-2 hours",
        "currency": "INR",
        "note": "This is a general estimate. Actual price may vary based on specific requirements.",
    }


# ── Estimate ──────────────────────────────────────────────────

@router.post("")
async def get_cost_estimate(
    data: EstimateRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    service_type = data.service_type.strip().lower()
    problem_type = data.problem_type.strip().lower()

    template = await _find_template(db, service_type, problem_type)
    if not template:
        template = await _find_template(db, service_type, GENERIC_PROBLEM_TYPE)

    if not template:
        base_price = await _average_provider_price(db, service_type)
        if base_price is None:
            base_price = FALLBACK_PRICES.get(service_type, DEFAULT_FALLBACK_PRICE)
        logger.info(f"Generic estimate for {service_type}/{problem_type}: {base_price}")
        return {"success": True, "data": generic_estimate(base_price), "is_generic_estimate": True}

    estimate = template.calculate_price(data.conditions)
    estimate["price_range"] = {
        "low": float(template.price_range_low),
        "high": float(template.price_range_high),
    }

    nearby_count = 0
    if data.latitude is not None and data.longitude is not None and _valid_service_type(service_type):
        matches = await find_nearby_providers(
            db, redis, service_type, data.latitude, data.longitude, settings.DISPATCH_RADIUS_KM
        )
        nearby_count = sum(1 for provider, _ in matches if provider.is_verified)
    estimate["nearby_providers_count"] = nearby_count

    return {"success": True, "data": estimate, "is_generic_estimate": False}


# ── Templates ─────────────────────────────────────────────────

@router.post("/template", response_model=EstimationTemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_estimation_template(
    data: EstimationTemplateCreateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    service_type = data.service_type.strip().lower()
    problem_type = data.problem_type.strip().lower()

    existing = await db.execute(
        select(CostEstimation).where(
            CostEstimation.service_type == service_type,
            CostEstimation.problem_type == problem_type,
        )
    )
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=400,
            detail="Cost estimation template for this service and problem type already exists",
        )

    template = CostEstimation(
        service_type=service_type,
        problem_type=problem_type,
        description=data.description,
        base_price=Decimal(str(data.base_price)),
        price_range_low=Decimal(str(data.price_range_low)),
        price_range_high=Decimal(str(data.price_range_high)),
        price_factors=[f.model_dump() for f in data.price_factors],
        estimated_hours=data.estimated_hours,
        estimated_minutes=data.estimated_minutes,
        parts_cost=Decimal(str(data.parts_cost)),
        transport_cost=Decimal(str(data.transport_cost)),
        emergency_surcharge=Decimal(str(data.emergency_surcharge)),
        currency=data.currency.upper(),
        is_active=True,
    )
    db.add(template)
    await db.commit()

    logger.info(f"Estimation template created: {service_type}/{problem_type} by {current_user.id}")
    return EstimationTemplateResponse.model_validate(template)


@router.get("/service/{service_type}", response_model=list[EstimationTemplateResponse])
async def get_templates_for_service(service_type: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(CostEstimation)
        .where(CostEstimation.service_type == service_type.lower(), CostEstimation.is_active == True)
        .order_by(CostEstimation.problem_type)
    )
    return [EstimationTemplateResponse.model_validate(t) for t in result.scalars().all()]


@router.get("/services")
async def get_service_types_with_estimations(db: AsyncSession = Depends(get_db)):
    """Every service type that has templates, with its problem types."""
    result = await db.execute(
        select(CostEstimation)
        .where(CostEstimation.is_active == True)
        .order_by(CostEstimation.service_type, CostEstimation.problem_type)
    )

    grouped: dict[str, list[dict]] = {}
    for template in result.scalars().all():
        grouped.setdefault(template.service_type, []).append(
            {"type": template.problem_type, "description": template.description}
        )

    data = [
        {"service_type": service_type, "problem_types": problem_types}
        for service_type, problem_types in grouped.items()
    ]
    return {"success": True, "count": len(data), "data": data}
