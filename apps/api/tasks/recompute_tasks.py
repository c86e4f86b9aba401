"""
Background recompute tasks.

Each task opens its own session, recomputes one derived aggregate from the
ledger and overwrites the cache entry. Running a task twice writes the same
value, so broker redelivery and retries are harmless.

Task contract:
- Retry: database errors only, exponential backoff capped at
  RECOMPUTE_BACKOFF_MAX_S, up to RECOMPUTE_MAX_RETRIES attempts
- Hard and soft time limits from RECOMPUTE_TIME_LIMIT_S
- Cache failures degrade to a logged no-op inside CacheLayer
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from celery import Task
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tasks import celery_app
from core.cache import CacheLayer, build_cache_layer
from core.clock import utcnow
from core.config import settings
from core.database import get_db_sync
from models import ProgressEntry
from services import insight_engine
from services.aggregate_stats import (
    compute_body_area_stats,
    compute_milestones,
    compute_user_stats,
)
from services.recompute_scheduler import JobType, RecomputeScheduler
from services.streak_tracker import get_streaks

logger = logging.getLogger(__name__)

ACTIVE_USER_WINDOW = timedelta(hours=24)

_RETRY_OPTIONS = dict(
    bind=True,
    autoretry_for=(SQLAlchemyError,),
    retry_backoff=True,
    retry_backoff_max=settings.RECOMPUTE_BACKOFF_MAX_S,
    max_retries=settings.RECOMPUTE_MAX_RETRIES,
    time_limit=settings.RECOMPUTE_TIME_LIMIT_S,
    soft_time_limit=max(settings.RECOMPUTE_TIME_LIMIT_S - 5, 1),
)

_worker_cache: Optional[CacheLayer] = None


def get_worker_cache() -> CacheLayer:
    """One cache layer per worker process, created on first use."""
    global _worker_cache
    if _worker_cache is None:
        _worker_cache = build_cache_layer(settings)
    return _worker_cache


def _refresh_user_stats(db: Session, cache: CacheLayer, user_id: str) -> bool:
    return cache.cache_user_stats(user_id, compute_user_stats(db, user_id))


def _refresh_body_area_stats(db: Session, cache: CacheLayer, user_id: str, body_area: Optional[str]) -> bool:
    ok = cache.cache_body_area_stats(user_id, None, compute_body_area_stats(db, user_id))
    if body_area:
        ok = cache.cache_body_area_stats(user_id, body_area, compute_body_area_stats(db, user_id, body_area)) and ok
    return ok


def _refresh_streaks(db: Session, cache: CacheLayer, user_id: str) -> bool:
    return cache.cache_streaks(user_id, get_streaks(db, user_id))


def _refresh_milestones(db: Session, cache: CacheLayer, user_id: str) -> bool:
    return cache.cache_milestones(user_id, compute_milestones(db, user_id))


@celery_app.task(name="tasks.recompute_user_stats", **_RETRY_OPTIONS)
def recompute_user_stats_task(self: Task, user_id: str) -> Dict:
    """Recompute lifetime stats for a user and overwrite the cached copy."""
    db: Session = get_db_sync()
    try:
        cached = _refresh_user_stats(db, get_worker_cache(), user_id)
        return {"status": "success", "user_id": user_id, "cached": cached}
    finally:
        db.close()


@celery_app.task(name="tasks.recompute_body_area_stats", **_RETRY_OPTIONS)
def recompute_body_area_stats_task(self: Task, user_id: str, body_area: Optional[str] = None) -> Dict:
    """Recompute the all-areas rollup and, when given, one area's stats."""
    db: Session = get_db_sync()
    try:
        cached = _refresh_body_area_stats(db, get_worker_cache(), user_id, body_area)
        return {"status": "success", "user_id": user_id, "body_area": body_area, "cached": cached}
    finally:
        db.close()


@celery_app.task(name="tasks.recompute_streaks", **_RETRY_OPTIONS)
def recompute_streaks_task(self: Task, user_id: str) -> Dict:
    db: Session = get_db_sync()
    try:
        cached = _refresh_streaks(db, get_worker_cache(), user_id)
        return {"status": "success", "user_id": user_id, "cached": cached}
    finally:
        db.close()


@celery_app.task(name="tasks.recompute_milestones", **_RETRY_OPTIONS)
def recompute_milestones_task(self: Task, user_id: str) -> Dict:
    db: Session = get_db_sync()
    try:
        cached = _refresh_milestones(db, get_worker_cache(), user_id)
        return {"status": "success", "user_id": user_id, "cached": cached}
    finally:
        db.close()


@celery_app.task(name="tasks.generate_insights", **_RETRY_OPTIONS)
def generate_insights_task(self: Task, user_id: str) -> Dict:
    """
    Generate and persist insights for a user.

    Not idempotent like the recomputes: a retry after a committed run adds
    a second batch. Retries only fire on database errors, where the batch
    was rolled back.
    """
    db: Session = get_db_sync()
    try:
        insights = insight_engine.generate_insights(db, user_id)
        get_worker_cache().invalidate_insights(user_id)
        return {"status": "success", "user_id": user_id, "generated": len(insights)}
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        db.close()


@celery_app.task(name="tasks.warm_user_caches", **_RETRY_OPTIONS)
def warm_user_caches_task(self: Task, user_id: str) -> Dict:
    """Recompute every cached aggregate for one user."""
    db: Session = get_db_sync()
    cache = get_worker_cache()
    try:
        results = {
            "user_stats": _refresh_user_stats(db, cache, user_id),
            "body_area_stats": _refresh_body_area_stats(db, cache, user_id, None),
            "streaks": _refresh_streaks(db, cache, user_id),
            "milestones": _refresh_milestones(db, cache, user_id),
        }
        return {"status": "success", "user_id": user_id, "cached": results}
    finally:
        db.close()


def active_user_ids(db: Session, since: datetime) -> List[str]:
    rows = (
        db.query(ProgressEntry.user_id)
        .filter(ProgressEntry.completed_at >= since)
        .distinct()
        .all()
    )
    return sorted(row[0] for row in rows)


@celery_app.task(name="tasks.warm_active_user_caches", bind=True)
def warm_active_user_caches_task(self: Task) -> Dict:
    """
    Beat task: fan out a cache warm for every user with a completion in
    the last 24 hours.
    """
    db: Session = get_db_sync()
    try:
        user_ids = active_user_ids(db, utcnow() - ACTIVE_USER_WINDOW)
    finally:
        db.close()

    for user_id in user_ids:
        warm_user_caches_task.delay(user_id=user_id)

    logger.info(f"Queued cache warm for {len(user_ids)} active users")
    return {"status": "success", "users": len(user_ids)}


@celery_app.task(name="tasks.generate_active_user_insights", bind=True)
def generate_active_user_insights_task(self: Task) -> Dict:
    """
    Beat task: enqueue insight generation for every user who practiced in
    the last 24 hours, through the same named-task dispatch the API uses.
    """
    db: Session = get_db_sync()
    try:
        user_ids = active_user_ids(db, utcnow() - ACTIVE_USER_WINDOW)
    finally:
        db.close()

    scheduler = RecomputeScheduler(celery_app)
    enqueued = sum(
        1 for user_id in user_ids
        if scheduler.enqueue(JobType.GENERATE_INSIGHTS, {"user_id": user_id})
    )

    logger.info(f"Queued insight generation for {enqueued}/{len(user_ids)} active users")
    return {"status": "success", "users": len(user_ids), "enqueued": enqueued}
