"""
Scheduler: background maintenance jobs.
  - conversation_cleanup  closes conversations past their expiry
  - audit_retention       purges audit entries older than the retention window
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from audit_ledger import AuditLedger
from config import load_config
from conversation_state import ConversationStateManager

logger = logging.getLogger(__name__)

_scheduler: BackgroundScheduler = None

CLEANUP_JOB_ID = "conversation_cleanup"
RETENTION_JOB_ID = "audit_retention"

# job id -> last run summary
_last_run: dict[str, dict] = {}


def init_scheduler():
    global _scheduler
    if _scheduler is None or not _scheduler.running:
        _scheduler = BackgroundScheduler()
        _scheduler.start()
        logger.info("Scheduler started.")


def shutdown_scheduler():
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down.")


def add_maintenance_jobs(
    conversations: Optional[ConversationStateManager] = None,
    ledger: Optional[AuditLedger] = None,
) -> None:
    """Add or replace both maintenance jobs."""
    if _scheduler is None or not _scheduler.running:
        init_scheduler()

    config = load_config()
    conversations = conversations or ConversationStateManager(ttl_days=config["conversation_ttl_days"])
    ledger = ledger or AuditLedger()

    interval = config["cleanup_interval_minutes"]
    _scheduler.add_job(
        func=run_cleanup,
        trigger=IntervalTrigger(minutes=interval),
        id=CLEANUP_JOB_ID,
        args=[conversations],
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    _scheduler.add_job(
        func=run_retention,
        trigger=IntervalTrigger(hours=24),
        id=RETENTION_JOB_ID,
        args=[ledger, config["audit_retention_days"]],
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    logger.info(f"Maintenance jobs added: cleanup every {interval}min, retention daily")


def run_cleanup(conversations: ConversationStateManager) -> int:
    closed = conversations.cleanup_expired()
    _last_run[CLEANUP_JOB_ID] = {"at": datetime.now(timezone.utc).isoformat(), "closed": closed}
    return closed


def run_retention(ledger: AuditLedger, retention_days: int) -> int:
    purged = ledger.purge_older_than(retention_days)
    _last_run[RETENTION_JOB_ID] = {"at": datetime.now(timezone.utc).isoformat(), "purged": purged}
    return purged


def get_status() -> dict:
    running = _scheduler is not None and _scheduler.running
    return {
        "running": running,
        "jobs": {
            job_id: {
                "scheduled": running and _scheduler.get_job(job_id) is not None,
                "last_run": _last_run.get(job_id),
            }
            for job_id in (CLEANUP_JOB_ID, RETENTION_JOB_ID)
        },
    }
