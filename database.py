"""
SQLite persistence: schema, connections, per-principal config and tokens,
processed-message dedup and the activity feed.

Decision-engine tables (conversations, circuit breakers, audit log,
assessments) are created here; their queries live beside the components
that own them.
"""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from config import load_config

DB_FILE = Path(load_config()["db_file"])

# Per-principal policy defaults (authoritative copy; preferences.py reads these)
CONFIG_DEFAULTS = {
    "automation_enabled": True,
    "confidence_threshold": 0.85,
    "allow_list": [],
    "deny_list": [],
    "cooldown_minutes": 60,
    "max_consecutive_low_confidence": 5,
    "response_tone": "professional",
    "user_timezone": "America/Chicago",
    "working_hours_start": 9,
    "working_hours_end": 17,
    "default_meeting_minutes": 30,
}


def get_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(str(DB_FILE), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def init_db():
    with get_conn() as conn:
        # WAL mode so readers don't block the single writer
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        # ── Principal settings ─────────────────────────────────────────────
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_configs (
                principal_id TEXT PRIMARY KEY,
                config_json  TEXT NOT NULL,
                updated_at   TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_tokens (
                principal_id TEXT PRIMARY KEY,
                token_json   TEXT NOT NULL,
                updated_at   TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS processed_emails (
                id           INTEGER PRIMARY KEY AUTOINCREMENT,
                principal_id TEXT NOT NULL,
                message_id   TEXT NOT NULL,
                processed_at TEXT,
                UNIQUE(principal_id, message_id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS activity_log (
                id           INTEGER PRIMARY KEY AUTOINCREMENT,
                principal_id TEXT NOT NULL,
                event_type   TEXT,
                message      TEXT,
                created_at   TEXT
            )
        """)

        # ── Decision engine ────────────────────────────────────────────────
        conn.execute("""
            CREATE TABLE IF NOT EXISTS decision_requests (
                id             INTEGER PRIMARY KEY AUTOINCREMENT,
                principal_id   TEXT NOT NULL,
                sender         TEXT NOT NULL,
                subject        TEXT,
                thread_id      TEXT,
                message_id     TEXT,
                request_kind   TEXT NOT NULL,
                urgency        TEXT NOT NULL,
                raw_text       TEXT,
                proposed_times TEXT NOT NULL DEFAULT '[]',
                status         TEXT NOT NULL DEFAULT 'pending',
                created_at     TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS confidence_assessments (
                id                      INTEGER PRIMARY KEY AUTOINCREMENT,
                request_id              INTEGER NOT NULL REFERENCES decision_requests(id),
                overall_confidence      REAL NOT NULL CHECK (overall_confidence BETWEEN 0 AND 1),
                intent_confidence       REAL NOT NULL CHECK (intent_confidence BETWEEN 0 AND 1),
                time_parsing_confidence REAL NOT NULL CHECK (time_parsing_confidence BETWEEN 0 AND 1),
                sender_trust_score      REAL NOT NULL CHECK (sender_trust_score BETWEEN 0 AND 1),
                conversation_clarity    REAL NOT NULL CHECK (conversation_clarity BETWEEN 0 AND 1),
                factors                 TEXT NOT NULL,
                recommendation          TEXT NOT NULL,
                created_at              TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS conversation_states (
                id                   INTEGER PRIMARY KEY AUTOINCREMENT,
                thread_id            TEXT NOT NULL,
                principal_id         TEXT NOT NULL,
                state                TEXT NOT NULL DEFAULT 'initial',
                turn_count           INTEGER NOT NULL DEFAULT 1,
                current_request_id   INTEGER,
                previous_request_ids TEXT NOT NULL DEFAULT '[]',
                context              TEXT NOT NULL DEFAULT '{}',
                last_activity        TEXT NOT NULL,
                expires_at           TEXT NOT NULL,
                created_at           TEXT NOT NULL,
                updated_at           TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS circuit_breaker_state (
                principal_id               TEXT PRIMARY KEY,
                state                      TEXT NOT NULL DEFAULT 'closed',
                consecutive_low_confidence INTEGER NOT NULL DEFAULT 0,
                last_low_confidence_at     TEXT,
                opened_at                  TEXT,
                closes_at                  TEXT,
                manual_override            INTEGER NOT NULL DEFAULT 0,
                updated_at                 TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS automation_audit_log (
                id                   INTEGER PRIMARY KEY AUTOINCREMENT,
                principal_id         TEXT NOT NULL,
                request_id           INTEGER REFERENCES decision_requests(id),
                conversation_id      INTEGER REFERENCES conversation_states(id),
                sender               TEXT,
                action               TEXT NOT NULL,
                confidence_score     REAL NOT NULL,
                decision_rationale   TEXT NOT NULL,
                sent_message_id      TEXT,
                calendar_facts       TEXT NOT NULL DEFAULT '[]',
                conversation_context TEXT NOT NULL DEFAULT '{}',
                user_notified        INTEGER NOT NULL DEFAULT 0,
                notification_sent_at TEXT,
                user_override        TEXT,
                user_override_at     TEXT,
                user_override_reason TEXT,
                created_at           TEXT NOT NULL
            )
        """)

        # ── Indexes ────────────────────────────────────────────────────────
        # At most one open conversation per thread
        conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_conversation_open_thread
            ON conversation_states(thread_id) WHERE state != 'closed'
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_conversation_principal ON conversation_states(principal_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_conversation_expiry ON conversation_states(expires_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_principal ON automation_audit_log(principal_id, created_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_sender ON automation_audit_log(principal_id, sender)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_principal ON decision_requests(principal_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_assessment_request ON confidence_assessments(request_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_principal ON activity_log(principal_id)")
        conn.commit()


# ── Per-principal config ───────────────────────────────────────────────────────

def load_user_config(principal_id: str) -> dict:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT config_json FROM user_configs WHERE principal_id=?", (principal_id,)
        ).fetchone()
    stored = json.loads(row["config_json"]) if row else {}
    return {**CONFIG_DEFAULTS, **stored}


def save_user_config(principal_id: str, config: dict) -> None:
    with get_conn() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO user_configs (principal_id, config_json, updated_at) VALUES (?,?,?)",
            (principal_id, json.dumps(config), to_iso(utcnow())),
        )
        conn.commit()


# ── Token storage ──────────────────────────────────────────────────────────────

def save_token(principal_id: str, token_dict: dict) -> None:
    with get_conn() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO user_tokens (principal_id, token_json, updated_at) VALUES (?,?,?)",
            (principal_id, json.dumps(token_dict), to_iso(utcnow())),
        )
        conn.commit()


def load_token(principal_id: str) -> Optional[dict]:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT token_json FROM user_tokens WHERE principal_id=?", (principal_id,)
        ).fetchone()
    if row is None:
        return None
    return json.loads(row["token_json"])


# ── Message dedup ──────────────────────────────────────────────────────────────

def claim_message(principal_id: str, message_id: str) -> bool:
    """Record a message as seen. Returns False if it was already claimed."""
    with get_conn() as conn:
        cur = conn.execute(
            "INSERT OR IGNORE INTO processed_emails (principal_id, message_id, processed_at) VALUES (?,?,?)",
            (principal_id, message_id, to_iso(utcnow())),
        )
        conn.commit()
        return cur.rowcount == 1


def release_message(principal_id: str, message_id: str) -> None:
    """Forget a claim so a redelivery of the message is processed again."""
    with get_conn() as conn:
        conn.execute(
            "DELETE FROM processed_emails WHERE principal_id=? AND message_id=?",
            (principal_id, message_id),
        )
        conn.commit()


def is_processed(principal_id: str, message_id: str) -> bool:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT 1 FROM processed_emails WHERE principal_id=? AND message_id=?",
            (principal_id, message_id),
        ).fetchone()
    return row is not None


# ── Activity log ───────────────────────────────────────────────────────────────

def log_event(principal_id: str, event_type: str, message: str):
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO activity_log (principal_id, event_type, message, created_at) VALUES (?,?,?,?)",
            (principal_id, event_type, message, to_iso(utcnow())),
        )
        # Keep only the 200 most recent events per principal
        conn.execute("""
            DELETE FROM activity_log
            WHERE principal_id=? AND id NOT IN (
                SELECT id FROM activity_log WHERE principal_id=? ORDER BY id DESC LIMIT 200
            )
        """, (principal_id, principal_id))
        conn.commit()


def get_recent_events(principal_id: str, limit: int = 50) -> list[dict]:
    with get_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM activity_log WHERE principal_id=? ORDER BY id DESC LIMIT ?",
            (principal_id, limit),
        ).fetchall()
    return [dict(r) for r in rows]
