"""
Automation audit ledger: an append-only record of every autonomous
decision, including the ones where we chose not to act.

Decision fields are written once by log() and never updated. The only
later write is a human override (approved / retracted / marked_incorrect),
which replaces any previous override on the same entry.

Also persists the decision request and its confidence assessment, and
derives per-sender history from past entries for trust scoring.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import database as db
from errors import AuditEntryNotFound, AuditWriteFailure
from models import (
    AuditAction,
    AuditEntry,
    Classification,
    ConfidenceAssessment,
    NewAuditEntry,
    OverrideKind,
    SenderHistory,
    TrustTier,
)

logger = logging.getLogger(__name__)


@dataclass
class AuditFilters:
    action: Optional[AuditAction] = None
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


class AuditLedger:
    def __init__(self, clock: Callable[[], datetime] = db.utcnow):
        self.clock = clock

    # ── Writes ─────────────────────────────────────────────────────────────

    def log(self, entry: NewAuditEntry) -> int:
        """Append one entry. Durable on return; any storage error raises AuditWriteFailure."""
        now = db.to_iso(self.clock())
        try:
            with db.get_conn() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO automation_audit_log
                    (principal_id, request_id, conversation_id, sender, action, confidence_score,
                     decision_rationale, sent_message_id, calendar_facts, conversation_context,
                     user_notified, notification_sent_at, created_at)
                    VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        entry.principal_id,
                        entry.request_id,
                        entry.conversation_id,
                        entry.sender.lower() if entry.sender else None,
                        AuditAction(entry.action).value,
                        float(entry.confidence_score),
                        entry.decision_rationale,
                        entry.sent_message_id,
                        json.dumps(list(entry.calendar_facts), default=str),
                        json.dumps(entry.conversation_context or {}, default=str),
                        int(entry.user_notified),
                        now if entry.user_notified else None,
                        now,
                    ),
                )
                conn.commit()
                audit_id = cur.lastrowid
        except sqlite3.Error as e:
            logger.error(f"[{entry.principal_id}] Audit write failed for {entry.action}: {e}")
            raise AuditWriteFailure(f"Could not append audit entry: {e}") from e

        logger.info(
            f"[{entry.principal_id}] Audit entry {audit_id}: {AuditAction(entry.action).value} "
            f"(confidence {entry.confidence_score:.2f})"
        )
        return audit_id

    def record_override(self, entry_id: int, override: OverrideKind, reason: Optional[str] = None) -> AuditEntry:
        """Attach (or replace) the human override on an entry. Decision fields are untouched."""
        override = OverrideKind(override)
        with db.get_conn() as conn:
            cur = conn.execute(
                """
                UPDATE automation_audit_log
                SET user_override=?, user_override_at=?, user_override_reason=?
                WHERE id=?
                """,
                (override.value, db.to_iso(self.clock()), reason, entry_id),
            )
            conn.commit()
        if cur.rowcount == 0:
            raise AuditEntryNotFound(f"No audit entry {entry_id}")
        logger.info(f"Override recorded on audit entry {entry_id}: {override.value}")
        return self.get(entry_id)

    def mark_notified(self, entry_id: int) -> None:
        """Stamp an entry once the principal has been told about it."""
        with db.get_conn() as conn:
            conn.execute(
                "UPDATE automation_audit_log SET user_notified=1, notification_sent_at=? WHERE id=?",
                (db.to_iso(self.clock()), entry_id),
            )
            conn.commit()

    def record_decision_request(self, principal_id: str, classification: Classification) -> int:
        with db.get_conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO decision_requests
                (principal_id, sender, subject, thread_id, message_id, request_kind, urgency,
                 raw_text, proposed_times, status, created_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    principal_id,
                    classification.sender.lower(),
                    classification.subject,
                    classification.thread_id,
                    classification.message_id,
                    classification.request_kind.value,
                    classification.urgency.value,
                    classification.raw_text,
                    json.dumps([t.to_dict() for t in classification.proposed_times]),
                    "pending",
                    db.to_iso(self.clock()),
                ),
            )
            conn.commit()
            return cur.lastrowid

    def set_request_status(self, request_id: int, status: str) -> None:
        with db.get_conn() as conn:
            conn.execute("UPDATE decision_requests SET status=? WHERE id=?", (status, request_id))
            conn.commit()

    def record_assessment(self, request_id: int, assessment: ConfidenceAssessment) -> int:
        with db.get_conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO confidence_assessments
                (request_id, overall_confidence, intent_confidence, time_parsing_confidence,
                 sender_trust_score, conversation_clarity, factors, recommendation, created_at)
                VALUES (?,?,?,?,?,?,?,?,?)
                """,
                (
                    request_id,
                    assessment.overall_confidence,
                    assessment.intent_confidence,
                    assessment.time_parsing_confidence,
                    assessment.sender_trust_score,
                    assessment.conversation_clarity,
                    json.dumps(assessment.factors),
                    assessment.recommendation.value,
                    db.to_iso(assessment.created_at),
                ),
            )
            conn.commit()
            return cur.lastrowid

    def purge_older_than(self, days: int) -> int:
        """Retention: drop entries (and their requests/assessments) older than `days`."""
        cutoff = db.to_iso(self.clock() - timedelta(days=days))
        with db.get_conn() as conn:
            cur = conn.execute("DELETE FROM automation_audit_log WHERE created_at < ?", (cutoff,))
            removed = cur.rowcount
            conn.execute("""
                DELETE FROM confidence_assessments WHERE request_id IN (
                    SELECT id FROM decision_requests WHERE created_at < ?
                    AND id NOT IN (SELECT request_id FROM automation_audit_log WHERE request_id IS NOT NULL)
                )
            """, (cutoff,))
            conn.execute("""
                DELETE FROM decision_requests WHERE created_at < ?
                AND id NOT IN (SELECT request_id FROM automation_audit_log WHERE request_id IS NOT NULL)
            """, (cutoff,))
            conn.commit()
        if removed:
            logger.info(f"Purged {removed} audit entries older than {days}d")
        return removed

    # ── Reads ──────────────────────────────────────────────────────────────

    def get(self, entry_id: int) -> AuditEntry:
        with db.get_conn() as conn:
            row = conn.execute("SELECT * FROM automation_audit_log WHERE id=?", (entry_id,)).fetchone()
        if row is None:
            raise AuditEntryNotFound(f"No audit entry {entry_id}")
        return _row_to_entry(row)

    def get_by_principal(self, principal_id: str, filters: Optional[AuditFilters] = None) -> list[AuditEntry]:
        """Entries for a principal, newest first."""
        filters = filters or AuditFilters()
        conditions = ["principal_id = ?"]
        params: list = [principal_id]

        if filters.action is not None:
            conditions.append("action = ?")
            params.append(AuditAction(filters.action).value)
        if filters.min_confidence is not None:
            conditions.append("confidence_score >= ?")
            params.append(filters.min_confidence)
        if filters.max_confidence is not None:
            conditions.append("confidence_score <= ?")
            params.append(filters.max_confidence)
        if filters.start is not None:
            conditions.append("created_at >= ?")
            params.append(db.to_iso(filters.start))
        if filters.end is not None:
            conditions.append("created_at <= ?")
            params.append(db.to_iso(filters.end))

        params.extend([filters.limit, filters.offset])
        with db.get_conn() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM automation_audit_log
                WHERE {' AND '.join(conditions)}
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                params,
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def get_assessment(self, request_id: int) -> Optional[dict]:
        with db.get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM confidence_assessments WHERE request_id=? ORDER BY id DESC LIMIT 1",
                (request_id,),
            ).fetchone()
        if row is None:
            return None
        d = dict(row)
        d["factors"] = json.loads(d["factors"])
        return d

    def statistics(self, principal_id: str, window_days: int = 7) -> dict:
        since = db.to_iso(self.clock() - timedelta(days=window_days))
        with db.get_conn() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_actions,
                    SUM(CASE WHEN action='sent_email' THEN 1 ELSE 0 END) AS auto_sent,
                    SUM(CASE WHEN action='escalated' THEN 1 ELSE 0 END) AS escalated,
                    SUM(CASE WHEN action='declined_request' THEN 1 ELSE 0 END) AS declined,
                    SUM(CASE WHEN action='requested_clarification' THEN 1 ELSE 0 END) AS clarifications,
                    AVG(confidence_score) AS avg_confidence,
                    SUM(CASE WHEN user_override IS NOT NULL THEN 1 ELSE 0 END) AS overrides
                FROM automation_audit_log
                WHERE principal_id=? AND created_at >= ?
                """,
                (principal_id, since),
            ).fetchone()

        total = row["total_actions"] or 0
        overrides = row["overrides"] or 0
        return {
            "window_days": window_days,
            "total_actions": total,
            "auto_sent": row["auto_sent"] or 0,
            "escalated": row["escalated"] or 0,
            "declined": row["declined"] or 0,
            "clarifications": row["clarifications"] or 0,
            "avg_confidence": row["avg_confidence"] or 0.0,
            "overrides": overrides,
            "override_rate": overrides / total if total > 0 else 0.0,
        }

    def weekly_digest(self, principal_id: str, top_n: int = 5) -> dict:
        stats = self.statistics(principal_id, 7)
        since = db.to_iso(self.clock() - timedelta(days=7))
        with db.get_conn() as conn:
            rows = conn.execute(
                """
                SELECT sender, COUNT(*) AS n FROM automation_audit_log
                WHERE principal_id=? AND created_at >= ? AND sender IS NOT NULL
                GROUP BY sender ORDER BY n DESC, sender LIMIT ?
                """,
                (principal_id, since, top_n),
            ).fetchall()
        return {
            "auto_sent": stats["auto_sent"],
            "escalated": stats["escalated"],
            "overrides": stats["overrides"],
            "top_senders": [{"email": r["sender"], "count": r["n"]} for r in rows],
        }

    def sender_history(self, principal_id: str, sender: str, allow_list: Iterable[str] = ()) -> SenderHistory:
        """Derive a sender's track record from past audit entries."""
        email = sender.strip().lower()
        with db.get_conn() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN action='sent_email' THEN 1 ELSE 0 END) AS requests,
                    SUM(CASE WHEN action='sent_email'
                             AND (user_override IS NULL OR user_override='approved')
                        THEN 1 ELSE 0 END) AS successes,
                    MAX(created_at) AS last_interaction
                FROM automation_audit_log
                WHERE principal_id=? AND sender=?
                """,
                (principal_id, email),
            ).fetchone()

        total = row["total"] or 0
        requests = row["requests"] or 0
        successes = row["successes"] or 0

        if email in {a.strip().lower() for a in allow_list}:
            tier = TrustTier.VIP
        elif requests >= 3 and successes >= 2:
            tier = TrustTier.TRUSTED
        elif total > 0:
            tier = TrustTier.KNOWN
        else:
            tier = TrustTier.UNKNOWN

        return SenderHistory(
            email=email,
            total_messages=total,
            scheduling_requests=requests,
            successful_schedules=successes,
            last_interaction=db.from_iso(row["last_interaction"]),
            trust_tier=tier,
        )


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row["id"],
        principal_id=row["principal_id"],
        action=AuditAction(row["action"]),
        confidence_score=row["confidence_score"],
        decision_rationale=row["decision_rationale"],
        created_at=db.from_iso(row["created_at"]),
        request_id=row["request_id"],
        conversation_id=row["conversation_id"],
        sender=row["sender"],
        sent_message_id=row["sent_message_id"],
        calendar_facts=json.loads(row["calendar_facts"] or "[]"),
        conversation_context=json.loads(row["conversation_context"] or "{}"),
        user_notified=bool(row["user_notified"]),
        notification_sent_at=db.from_iso(row["notification_sent_at"]),
        override=OverrideKind(row["user_override"]) if row["user_override"] else None,
        override_at=db.from_iso(row["user_override_at"]),
        override_reason=row["user_override_reason"],
    )
