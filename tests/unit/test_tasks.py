"""
Unit tests for the periodic maintenance jobs.
"""

from datetime import timedelta

from cafe_orders import tasks
from cafe_orders.models import utcnow


class TestMaintenanceJobs:
    """Tests for the coroutines run by the Celery tasks."""

    async def test_session_cleanup_reports_counts(self, session, guest):
        result = await tasks._cleanup_sessions(session, utcnow() + timedelta(hours=13))

        assert result == {
            'tokens_deleted': 1,
            'sessions_deleted': 1,
            'orders_deleted': 0,
            'accounts_retired': 1,
        }

    async def test_invitation_cleanup(self, session, table_invitation):
        assert await tasks._cleanup_invitations(session, utcnow()) == {'invitations_deleted': 0}

        result = await tasks._cleanup_invitations(session, utcnow() + timedelta(days=2))
        assert result == {'invitations_deleted': 1}

    def test_health_check(self):
        assert tasks.health_check()['status'] == 'healthy'
