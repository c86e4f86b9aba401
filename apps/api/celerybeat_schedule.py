"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Re-warm derived caches for everyone who practiced in the last 24 hours,
    # so the first read after a TTL expiry is still a hit.
    'warm-active-user-caches': {
        'task': 'tasks.warm_active_user_caches',
        'schedule': crontab(minute=0),  # Every hour
    },
    # Fresh insights each morning for everyone who practiced yesterday.
    'generate-active-user-insights': {
        'task': 'tasks.generate_active_user_insights',
        'schedule': crontab(hour=5, minute=30),  # Daily at 5:30 AM UTC
    },
}
