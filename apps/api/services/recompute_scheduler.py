"""
Recompute Scheduler

Fire-and-forget dispatch of background recompute jobs to the Celery broker.

Enqueueing happens after the ledger write has committed, so a broker
outage must never fail the request: publish errors are logged and reported
as False. Tasks are addressed by name (send_task) so the API process does
not import the worker's task bodies.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

from celery import Celery
from celery.exceptions import CeleryError
from kombu.exceptions import OperationalError

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    RECOMPUTE_USER_STATS = "recompute_user_stats"
    RECOMPUTE_BODY_AREA_STATS = "recompute_body_area_stats"
    RECOMPUTE_STREAKS = "recompute_streaks"
    RECOMPUTE_MILESTONES = "recompute_milestones"
    GENERATE_INSIGHTS = "generate_insights"
    WARM_USER_CACHES = "warm_user_caches"

    @property
    def task_name(self) -> str:
        return f"tasks.{self.value}"


# Jobs enqueued after every recorded completion
POST_COMPLETION_JOBS = (
    JobType.RECOMPUTE_USER_STATS,
    JobType.RECOMPUTE_BODY_AREA_STATS,
    JobType.RECOMPUTE_STREAKS,
    JobType.RECOMPUTE_MILESTONES,
)


class RecomputeScheduler:
    def __init__(self, celery_app: Optional[Celery]):
        self._celery = celery_app

    def enqueue(self, job_type: JobType, payload: Dict[str, Any]) -> bool:
        """
        Publish one job. Returns True when the broker accepted it.

        No publish retries: a slow broker would otherwise hold the request.
        """
        job_type = JobType(job_type)
        if self._celery is None:
            logger.debug(f"No broker configured, skipping {job_type.value}")
            return False

        try:
            self._celery.send_task(job_type.task_name, kwargs=dict(payload), retry=False)
        except (OperationalError, CeleryError, OSError) as e:
            logger.warning(f"Failed to enqueue {job_type.value} for {payload.get('user_id')}: {e}")
            return False

        logger.debug(f"Enqueued {job_type.value} for {payload.get('user_id')}")
        return True

