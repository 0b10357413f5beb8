"""
Circuit breaker: pauses autonomous replies for a principal after a run of
low-confidence decisions, independent of any single message's score.

  closed     normal operation; low-confidence outcomes are counted
  open       autonomous action blocked until the cooldown deadline
  half_open  cooldown elapsed; the next decision is a trial

Probe outcome: a high-confidence decision closes the breaker, a
low-confidence one re-opens it for another full cooldown.

Counter changes are done in SQL (count = count + 1) inside one write
transaction, so concurrent messages for the same principal never lose an
increment.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

import database as db
from models import BreakerStatus, CircuitBreakerState

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MINUTES = 60
DEFAULT_MAX_CONSECUTIVE = 5


class CircuitBreaker:
    def __init__(
        self,
        cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
        clock: Callable[[], datetime] = db.utcnow,
    ):
        self.cooldown_minutes = cooldown_minutes
        self.clock = clock

    def get_state(self, principal_id: str) -> CircuitBreakerState:
        """Current breaker row for a principal, created closed on first use."""
        with db.get_conn() as conn:
            if self._ensure(conn, principal_id):
                logger.info(f"[{principal_id}] Initialized circuit breaker")
            conn.commit()
            row = conn.execute(
                "SELECT * FROM circuit_breaker_state WHERE principal_id=?", (principal_id,)
            ).fetchone()
        return _row_to_state(row)

    def is_open(self, principal_id: str) -> bool:
        """True while autonomous action is blocked. Moves open -> half_open once the deadline passes."""
        state = self.get_state(principal_id)
        if state.state != BreakerStatus.OPEN:
            return False

        now = self.clock()
        if state.closes_at is not None and now >= state.closes_at:
            self._to_half_open(principal_id, now)
            return False
        return True

    def record_low_confidence(
        self,
        principal_id: str,
        max_consecutive: int = DEFAULT_MAX_CONSECUTIVE,
        cooldown_minutes: Optional[int] = None,
    ) -> CircuitBreakerState:
        now = self.clock()
        with db.get_conn() as conn:
            self._ensure(conn, principal_id)
            # The UPDATE takes the write lock; the read below sees our own increment
            conn.execute(
                """
                UPDATE circuit_breaker_state
                SET consecutive_low_confidence = consecutive_low_confidence + 1,
                    last_low_confidence_at=?, updated_at=?
                WHERE principal_id=?
                """,
                (db.to_iso(now), db.to_iso(now), principal_id),
            )
            row = conn.execute(
                "SELECT state, consecutive_low_confidence FROM circuit_breaker_state WHERE principal_id=?",
                (principal_id,),
            ).fetchone()
            status = BreakerStatus(row["state"])
            count = row["consecutive_low_confidence"]

            failed_trial = status == BreakerStatus.HALF_OPEN
            if failed_trial or (status == BreakerStatus.CLOSED and count >= max_consecutive):
                self._trip(conn, principal_id, now, cooldown_minutes)
                logger.warning(
                    f"[{principal_id}] Circuit breaker OPENED "
                    f"({'failed half-open trial' if failed_trial else f'{count} consecutive low-confidence decisions'})"
                )
            else:
                logger.debug(f"[{principal_id}] Low-confidence decision recorded ({count}/{max_consecutive})")
            conn.commit()

        return self.get_state(principal_id)

    def record_high_confidence(self, principal_id: str) -> CircuitBreakerState:
        """Reset the counter. A half-open breaker closes; an open one stays open until cooldown."""
        now = self.clock()
        with db.get_conn() as conn:
            self._ensure(conn, principal_id)
            cur = conn.execute(
                """
                UPDATE circuit_breaker_state
                SET state='closed', consecutive_low_confidence=0, opened_at=NULL, closes_at=NULL, updated_at=?
                WHERE principal_id=? AND state='half_open'
                """,
                (db.to_iso(now), principal_id),
            )
            if cur.rowcount:
                logger.info(f"[{principal_id}] Circuit breaker CLOSED after successful trial")
            else:
                conn.execute(
                    "UPDATE circuit_breaker_state SET consecutive_low_confidence=0, updated_at=? WHERE principal_id=?",
                    (db.to_iso(now), principal_id),
                )
            conn.commit()
        return self.get_state(principal_id)

    def trip(self, principal_id: str, cooldown_minutes: Optional[int] = None) -> CircuitBreakerState:
        """Open the breaker immediately."""
        now = self.clock()
        with db.get_conn() as conn:
            self._ensure(conn, principal_id)
            self._trip(conn, principal_id, now, cooldown_minutes)
            conn.commit()
        logger.warning(f"[{principal_id}] Circuit breaker OPENED manually")
        return self.get_state(principal_id)

    def manual_override(self, principal_id: str, force_close: bool) -> CircuitBreakerState:
        """Principal escape hatch: force_close bypasses the cooldown; False just clears the override flag."""
        now = self.clock()
        with db.get_conn() as conn:
            self._ensure(conn, principal_id)
            if force_close:
                conn.execute(
                    """
                    UPDATE circuit_breaker_state
                    SET state='closed', consecutive_low_confidence=0, opened_at=NULL, closes_at=NULL,
                        manual_override=1, updated_at=?
                    WHERE principal_id=?
                    """,
                    (db.to_iso(now), principal_id),
                )
                logger.info(f"[{principal_id}] Circuit breaker manually CLOSED")
            else:
                conn.execute(
                    "UPDATE circuit_breaker_state SET manual_override=0, updated_at=? WHERE principal_id=?",
                    (db.to_iso(now), principal_id),
                )
            conn.commit()
        return self.get_state(principal_id)

    # ── Internals ──────────────────────────────────────────────────────────

    def _ensure(self, conn, principal_id: str) -> bool:
        cur = conn.execute(
            "INSERT OR IGNORE INTO circuit_breaker_state (principal_id, state, consecutive_low_confidence, updated_at) "
            "VALUES (?, 'closed', 0, ?)",
            (principal_id, db.to_iso(self.clock())),
        )
        return cur.rowcount == 1

    def _trip(self, conn, principal_id: str, now: datetime, cooldown_minutes: Optional[int]) -> None:
        minutes = cooldown_minutes if cooldown_minutes is not None else self.cooldown_minutes
        conn.execute(
            """
            UPDATE circuit_breaker_state
            SET state='open', opened_at=?, closes_at=?, manual_override=0, updated_at=?
            WHERE principal_id=?
            """,
            (db.to_iso(now), db.to_iso(now + timedelta(minutes=minutes)), db.to_iso(now), principal_id),
        )

    def _to_half_open(self, principal_id: str, now: datetime) -> None:
        with db.get_conn() as conn:
            # Conditional on still being open: only one caller performs the move
            cur = conn.execute(
                """
                UPDATE circuit_breaker_state
                SET state='half_open', consecutive_low_confidence=0, updated_at=?
                WHERE principal_id=? AND state='open'
                """,
                (db.to_iso(now), principal_id),
            )
            conn.commit()
        if cur.rowcount:
            logger.info(f"[{principal_id}] Circuit breaker -> HALF-OPEN (cooldown elapsed)")


def _row_to_state(row) -> CircuitBreakerState:
    return CircuitBreakerState(
        principal_id=row["principal_id"],
        state=BreakerStatus(row["state"]),
        consecutive_low_confidence=row["consecutive_low_confidence"],
        updated_at=db.from_iso(row["updated_at"]),
        last_low_confidence_at=db.from_iso(row["last_low_confidence_at"]),
        opened_at=db.from_iso(row["opened_at"]),
        closes_at=db.from_iso(row["closes_at"]),
        manual_override=bool(row["manual_override"]),
    )
