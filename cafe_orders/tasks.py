"""
Celery Tasks
Periodic maintenance of guest sessions and invitations.

Each task runs its coroutine on a fresh event loop with its own engine, so
no pooled connection outlives the loop it was opened on.
"""

import asyncio
import logging
import time
from datetime import datetime

from sqlalchemy.pool import NullPool

from cafe_orders.celery_worker import celery_app
from cafe_orders.core.config import get_settings
from cafe_orders.database import build_engine, build_session_maker
from cafe_orders.models import utcnow
from cafe_orders.services import guest_sessions, invitations

logger = logging.getLogger(__name__)


async def _run_cleanup(job) -> dict:
    engine = build_engine(get_settings().database_url, poolclass=NullPool)
    try:
        async with build_session_maker(engine)() as session:
            return await job(session, utcnow())
    finally:
        await engine.dispose()


async def _cleanup_sessions(session, now) -> dict:
    report = await guest_sessions.cleanup_expired_sessions(session, now)
    return {
        'tokens_deleted': report.tokens,
        'sessions_deleted': report.sessions,
        'orders_deleted': report.orders,
        'accounts_retired': report.accounts,
    }


async def _cleanup_invitations(session, now) -> dict:
    return {'invitations_deleted': await invitations.delete_expired(session, now)}


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def cleanup_guest_sessions(self) -> dict:
    """
    Delete expired guest credentials, sessions and stale guest orders.

    Returns:
        dict: Counts of removed rows
    """
    task_id = self.request.id
    start_time = time.time()

    result = asyncio.run(_run_cleanup(_cleanup_sessions))

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed
    logger.info(f"Task {task_id}: guest session cleanup finished in {elapsed}s")
    return result


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def cleanup_expired_invitations(self) -> dict:
    """Delete invitations whose expiry has passed."""
    task_id = self.request.id
    result = asyncio.run(_run_cleanup(_cleanup_invitations))
    result['task_id'] = task_id
    logger.info(f"Task {task_id}: removed {result['invitations_deleted']} expired invitation(s)")
    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
