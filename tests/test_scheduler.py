"""
Tests for the maintenance jobs, run directly rather than through APScheduler.
"""

import scheduler
from audit_ledger import AuditLedger
from conversation_state import ConversationStateManager
from models import AuditAction, NewAuditEntry

from conftest import PRINCIPAL


class TestMaintenanceJobs:
    def test_cleanup_closes_expired_conversations(self, clock):
        conversations = ConversationStateManager(ttl_days=1, clock=clock)
        conversations.get_or_create("thread-1", PRINCIPAL)
        clock.advance(days=2)

        assert scheduler.run_cleanup(conversations) == 1
        assert conversations.find_open("thread-1") is None
        assert scheduler.get_status()["jobs"]["conversation_cleanup"]["last_run"]["closed"] == 1

    def test_retention_purges_old_entries(self, clock):
        ledger = AuditLedger(clock=clock)
        ledger.log(NewAuditEntry(
            principal_id=PRINCIPAL, action=AuditAction.ESCALATED, confidence_score=0.5, decision_rationale="old",
        ))
        clock.advance(days=40)

        assert scheduler.run_retention(ledger, 30) == 1
        assert ledger.get_by_principal(PRINCIPAL) == []

    def test_status_when_not_running(self):
        scheduler.shutdown_scheduler()

        status = scheduler.get_status()

        assert status["running"] is False
        assert status["jobs"]["audit_retention"]["scheduled"] is False
