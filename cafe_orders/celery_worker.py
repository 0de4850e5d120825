"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend, plus the
beat schedule for periodic expiry cleanup.
"""

from celery import Celery

from cafe_orders.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'cafe_orders_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['cafe_orders.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=2,

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies

    broker_connection_retry_on_startup=True,

    # Periodic cleanup (run with `celery -A cafe_orders.celery_worker beat`)
    beat_schedule={
        'cleanup-guest-sessions': {
            'task': 'cafe_orders.tasks.cleanup_guest_sessions',
            'schedule': settings.cleanup_interval_minutes * 60.0,
        },
        'cleanup-expired-invitations': {
            'task': 'cafe_orders.tasks.cleanup_expired_invitations',
            'schedule': 3600.0,
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
