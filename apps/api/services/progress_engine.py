"""
Progress Engine

Single entry point for everything derived from exercise completions.
Built once at startup by build_progress_engine() and handed to the HTTP
layer; it owns the cache layer, the recompute scheduler and the per-user
write locks.

Write path for one completion, in order:

    1. take the per-user write lock
    2. append the ledger entry
    3. update the streaks and award achievements (same transaction)
    4. commit, release the lock
    5. invalidate the user's cached aggregates
    6. enqueue background recomputes

Steps 5 and 6 are best-effort and run only after a successful commit; a
failure in 1-4 rolls back and propagates with no cache or broker side
effects.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from celery import Celery
from sqlalchemy.orm import Session

from core.cache import CacheLayer, build_cache_layer
from core.config import Settings, settings
from core.user_locks import UserWriteLocks
from models import BodyArea
from schemas import ExerciseCompletion
from services import achievement_engine, insight_engine, recommendation_engine
from services.aggregate_stats import AggregateComputer
from services.analytics_thresholds import AnalyticsThresholds, DEFAULT_THRESHOLDS
from services.progress_ledger import DateRange, append_entry, entry_to_dict, validate_user_id
from services.recompute_scheduler import JobType, POST_COMPLETION_JOBS, RecomputeScheduler
from services.streak_tracker import apply_completion, get_streaks

logger = logging.getLogger(__name__)


class ProgressEngine:
    def __init__(
        self,
        cache: CacheLayer,
        scheduler: RecomputeScheduler,
        locks: Optional[UserWriteLocks] = None,
        thresholds: AnalyticsThresholds = DEFAULT_THRESHOLDS,
        backfill_policy: Optional[str] = None,
    ):
        self.cache = cache
        self.scheduler = scheduler
        self.locks = locks or UserWriteLocks()
        self.thresholds = thresholds
        self.backfill_policy = backfill_policy
        self.aggregates = AggregateComputer(cache, thresholds)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_completion(
        self,
        db: Session,
        user_id: str,
        completion: Union[ExerciseCompletion, Mapping[str, Any]],
        now: Optional[datetime] = None,
        today: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Record one completed exercise session.

        Returns {"entry", "streaks", "new_achievements", "jobs_enqueued"}.

        Raises:
            ValidationError: invalid input, or a backfill under the reject policy.
            SQLAlchemyError: the write failed and was rolled back.
        """
        user_id = validate_user_id(user_id)

        with self.locks.hold(user_id, db):
            try:
                entry = append_entry(db, user_id, completion, now=now)
                apply_completion(db, user_id, entry.completed_at, self.backfill_policy)
                new_achievements = achievement_engine.check_achievements(db, user_id, now=now)
                db.commit()
            except Exception:
                db.rollback()
                raise

        entry_data = entry_to_dict(entry)
        body_area = entry_data["body_area"]

        self.cache.invalidate_user_caches(user_id, body_area)

        jobs_enqueued = []
        for job_type in POST_COMPLETION_JOBS:
            payload: Dict[str, Any] = {"user_id": user_id}
            if job_type == JobType.RECOMPUTE_BODY_AREA_STATS:
                payload["body_area"] = body_area
            if self.scheduler.enqueue(job_type, payload):
                jobs_enqueued.append(job_type.value)

        logger.info(
            f"Recorded completion {entry_data['id']} for user {user_id} "
            f"({body_area}, {len(jobs_enqueued)}/{len(POST_COMPLETION_JOBS)} jobs enqueued)"
        )
        return {
            "entry": entry_data,
            "streaks": get_streaks(db, user_id, today=today),
            "new_achievements": new_achievements,
            "jobs_enqueued": jobs_enqueued,
        }

    # ------------------------------------------------------------------
    # Cached aggregates
    # ------------------------------------------------------------------

    def get_user_stats(self, db: Session, user_id: str, date_range: Optional[DateRange] = None) -> Dict[str, Any]:
        return self.aggregates.get_user_stats(db, user_id, date_range)

    def get_streak_data(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        return self.aggregates.get_streak_data(db, user_id)

    def get_body_area_stats(
        self,
        db: Session,
        user_id: str,
        body_area: Optional[Union[str, BodyArea]] = None,
    ) -> List[Dict[str, Any]]:
        return self.aggregates.get_body_area_stats(db, user_id, body_area)

    def get_milestones(self, db: Session, user_id: str) -> Dict[str, Any]:
        return self.aggregates.get_milestones(db, user_id)

    def get_progress_history(
        self,
        db: Session,
        user_id: str,
        cursor: Optional[str] = None,
        limit: int = 20,
        body_area: Optional[Union[str, BodyArea]] = None,
    ) -> Dict[str, Any]:
        return self.aggregates.get_progress_history(db, user_id, cursor, limit, body_area)

    def get_progress_trends(
        self,
        db: Session,
        user_id: str,
        date_range: Optional[DateRange] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        return self.aggregates.get_progress_trends(db, user_id, date_range, now)

    # ------------------------------------------------------------------
    # Insights and recommendations
    # ------------------------------------------------------------------

    def generate_insights(self, db: Session, user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        insights = insight_engine.generate_insights(db, user_id, now=now, thresholds=self.thresholds)
        self.cache.invalidate_insights(user_id)
        return insights

    def get_unviewed_insights(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        user_id = validate_user_id(user_id)
        cached = self.cache.get_cached_insights(user_id)
        if cached is not None:
            return cached
        insights = insight_engine.get_unviewed_insights(db, user_id)
        self.cache.cache_insights(user_id, insights)
        return insights

    def mark_insights_as_viewed(self, db: Session, user_id: str, insight_ids: Sequence[str]) -> int:
        updated = insight_engine.mark_insights_as_viewed(db, user_id, insight_ids)
        self.cache.invalidate_insights(user_id)
        return updated

    def get_recommendations(self, db: Session, user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return recommendation_engine.get_recommendations(db, user_id, now=now, thresholds=self.thresholds)

    # ------------------------------------------------------------------
    # Achievements
    # ------------------------------------------------------------------

    def get_achievements(self, db: Session, user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return achievement_engine.get_all_achievements_with_progress(db, user_id, now=now)

    def get_user_achievements(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        return achievement_engine.get_user_achievements(db, user_id)

    def get_achievement_progress(
        self,
        db: Session,
        user_id: str,
        achievement_id: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        return achievement_engine.calculate_progress(db, user_id, achievement_id, now=now)


def build_progress_engine(config: Settings = settings, celery_app: Optional[Celery] = None) -> ProgressEngine:
    """Wire the engine from configuration. Call once per process."""
    if celery_app is None:
        from tasks import celery_app
    return ProgressEngine(
        cache=build_cache_layer(config),
        scheduler=RecomputeScheduler(celery_app),
        backfill_policy=config.STREAK_BACKFILL_POLICY,
    )
