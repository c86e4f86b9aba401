"""
Celery tasks for background recompute.

The API enqueues jobs by task name (services.recompute_scheduler); the
worker imports this package to execute them.
"""
from celery import Celery
from core.config import settings
from celerybeat_schedule import beat_schedule

# Create Celery app instance
celery_app = Celery(
    "practice_progress",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.RECOMPUTE_TIME_LIMIT_S,
    task_soft_time_limit=max(settings.RECOMPUTE_TIME_LIMIT_S - 5, 1),
    # Recomputes are idempotent; redeliver if a worker dies mid-task
    task_acks_late=True,
    task_ignore_result=True,
    broker_connection_timeout=settings.CELERY_BROKER_CONNECT_TIMEOUT_S,
    broker_transport_options={"socket_connect_timeout": settings.CELERY_BROKER_CONNECT_TIMEOUT_S},
    beat_schedule=beat_schedule,
)

# Import tasks to register them
from . import recompute_tasks  # noqa: E402

__all__ = ["celery_app"]
