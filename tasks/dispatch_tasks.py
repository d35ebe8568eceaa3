"""
tasks/dispatch_tasks.py
Periodic clean-up of requests the background dispatch left behind:
- emergencies and help requests still unassigned after the stale window
  are matched again with the same rules as the first pass
- consultations that were never started are marked missed

All tasks are idempotent. Running twice has no side effect.
"""

import logging
from datetime import datetime, timedelta, timezone

import redis
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Helpers ───────────────────────────────────────────────────

def _get_sync_session():
    """Create a synchronous SQLAlchemy session (Celery runs sync by default)."""
    sync_url = settings.DATABASE_URL.replace("+asyncpg", "+psycopg2")
    engine = create_engine(sync_url, pool_pre_ping=True, pool_size=5)
    Session = sessionmaker(bind=engine, expire_on_commit=False)
    return Session()


def _get_sync_redis():
    """Blocking Redis client for the GEO lookups."""
    return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


def _stale_cutoff() -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=settings.DISPATCH_STALE_AFTER_MINUTES)


# ── Redispatch ────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def redispatch_stale_emergencies(self):
    """
    Beat task. Emergencies still requested/searching without a provider
    after the stale window are offered to the nearest provider again.
    Returns the number assigned on this run.
    """
    from services.emergency.dispatch import (
        DISPATCHABLE_STATUSES,
        assign_provider,
        candidate_query,
        candidates_geo_key,
        mark_searching,
        nearest_candidates,
    )
    from shared.models.models import EmergencyService, EmergencyStatus
    from shared.utils.geo import nearby_sync

    db = _get_sync_session()
    geo = _get_sync_redis()
    try:
        stale = db.execute(
            select(EmergencyService).where(
                EmergencyService.status.in_(DISPATCHABLE_STATUSES),
                EmergencyService.provider_id.is_(None),
                EmergencyService.requested_at <= _stale_cutoff(),
            )
        ).scalars().all()

        logger.info(f"redispatch_stale_emergencies: {len(stale)} unassigned emergencies")

        assigned = 0
        for emergency in stale:
            if emergency.status != EmergencyStatus.SEARCHING:
                mark_searching(emergency)
            nearby = nearby_sync(
                geo, candidates_geo_key(emergency),
                emergency.latitude, emergency.longitude, settings.DISPATCH_RADIUS_KM,
            )
            if not nearby:
                continue
            providers = db.execute(candidate_query(emergency, nearby)).scalars().all()
            candidates = nearest_candidates(nearby, providers)
            if not candidates:
                continue
            provider, distance = candidates[0]
            assign_provider(emergency, provider)
            assigned += 1
            logger.info(f"Emergency {emergency.id} reassigned to provider {provider.id} ({distance:.1f} km)")

        db.commit()
        return assigned

    except Exception as e:
        db.rollback()
        logger.exception(f"redispatch_stale_emergencies failed: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    finally:
        db.close()
        geo.close()


@celery_app.task(bind=True, max_retries=3, default_retry_delay=120)
def redispatch_stale_help_requests(self):
    """Same as redispatch_stale_emergencies, for community help requests."""
    from services.community.dispatch import (
        DISPATCHABLE_STATUSES,
        accept_by,
        candidate_query,
        mark_searching,
        nearest_candidates,
    )
    from shared.models.models import CommunityHelpRequest, HelpRequestStatus
    from shared.utils.geo import HELP_REQUESTS_GEO_KEY, VOLUNTEERS_GEO_KEY, nearby_sync

    db = _get_sync_session()
    geo = _get_sync_redis()
    try:
        stale = db.execute(
            select(CommunityHelpRequest).where(
                CommunityHelpRequest.status.in_(DISPATCHABLE_STATUSES),
                CommunityHelpRequest.volunteer_id.is_(None),
                CommunityHelpRequest.created_at <= _stale_cutoff(),
            )
        ).scalars().all()

        logger.info(f"redispatch_stale_help_requests: {len(stale)} unassigned help requests")

        assigned = 0
        for help_request in stale:
            if help_request.status != HelpRequestStatus.SEARCHING:
                mark_searching(help_request)
            nearby = nearby_sync(
                geo, VOLUNTEERS_GEO_KEY,
                help_request.latitude, help_request.longitude, settings.DISPATCH_RADIUS_KM,
            )
            if not nearby:
                continue
            volunteers = db.execute(candidate_query(nearby)).scalars().all()
            candidates = nearest_candidates(help_request, nearby, volunteers)
            if not candidates:
                continue
            volunteer, distance = candidates[0]
            accept_by(help_request, volunteer)
            geo.zrem(HELP_REQUESTS_GEO_KEY, str(help_request.id))
            assigned += 1
            logger.info(
                f"Help request {help_request.request_number} reassigned to volunteer "
                f"{volunteer.id} ({distance:.1f} km)"
            )

        db.commit()
        return assigned

    except Exception as e:
        db.rollback()
        logger.exception(f"redispatch_stale_help_requests failed: {e}")
        raise self.retry(exc=e, countdown=120 * (2 ** self.request.retries))
    finally:
        db.close()
        geo.close()


# ── Consultations ─────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def mark_missed_consultations(self):
    """Scheduled or ready consultations past their scheduled end become missed."""
    from shared.models.models import ConsultationStatus, VideoConsultation

    db = _get_sync_session()
    try:
        overdue = db.execute(
            select(VideoConsultation).where(
                VideoConsultation.status.in_([ConsultationStatus.SCHEDULED, ConsultationStatus.READY]),
                VideoConsultation.scheduled_end < datetime.now(timezone.utc),
            )
        ).scalars().all()

        for consultation in overdue:
            consultation.status = ConsultationStatus.MISSED

        db.commit()
        if overdue:
            logger.info(f"mark_missed_consultations: {len(overdue)} consultations marked missed")
        return len(overdue)

    except Exception as e:
        db.rollback()
        logger.exception(f"mark_missed_consultations failed: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    finally:
        db.close()
