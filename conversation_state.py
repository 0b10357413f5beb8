"""
Conversation state machine: one row per email thread, tracking where a
multi-turn scheduling negotiation stands.

    initial -> availability_sent -> confirmed -> scheduled -> closed

availability_sent may fall back to initial (a clarification restarts the
negotiation without abandoning the thread). Every non-terminal state may
close. closed is terminal.

Transitions are a single conditional UPDATE keyed on a (state, turn count)
snapshot, so two writers racing on the same thread cannot both apply: the
loser gets ConcurrentUpdateError. A caller that decided its move from an
earlier read passes that read's state and turn as expected_state and
expected_turn; a thread that has moved on since is rejected even when the
requested edge would be legal from its new state.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

import database as db
from errors import ConcurrentUpdateError, ConversationNotFound, InvalidTransition
from models import ConversationState, ConversationStatus

logger = logging.getLogger(__name__)

S = ConversationStatus

TRANSITIONS: frozenset[tuple[ConversationStatus, ConversationStatus]] = frozenset({
    (S.INITIAL, S.AVAILABILITY_SENT),
    (S.INITIAL, S.CLOSED),
    (S.AVAILABILITY_SENT, S.CONFIRMED),
    (S.AVAILABILITY_SENT, S.INITIAL),
    (S.AVAILABILITY_SENT, S.CLOSED),
    (S.CONFIRMED, S.SCHEDULED),
    (S.CONFIRMED, S.CLOSED),
    (S.SCHEDULED, S.CLOSED),
})

DEFAULT_TTL_DAYS = 14


def allowed_from(state: ConversationStatus) -> list[ConversationStatus]:
    return sorted((dst for src, dst in TRANSITIONS if src == state), key=lambda s: s.value)


def validate_transition(current: ConversationStatus, new_state: ConversationStatus) -> None:
    if (current, new_state) not in TRANSITIONS:
        raise InvalidTransition(
            current.value, new_state.value, [s.value for s in allowed_from(current)]
        )


class ConversationStateManager:
    def __init__(self, ttl_days: int = DEFAULT_TTL_DAYS, clock: Callable[[], datetime] = db.utcnow):
        self.ttl_days = ttl_days
        self.clock = clock

    def get_or_create(self, thread_id: str, principal_id: str) -> ConversationState:
        """Return the open conversation for a thread, creating it in 'initial' if needed."""
        existing = self.find_open(thread_id)
        if existing:
            logger.debug(
                f"[{principal_id}] Found conversation {thread_id} "
                f"({existing.state.value}, turn {existing.turn_count})"
            )
            return existing

        now = self.clock()
        with db.get_conn() as conn:
            # The partial unique index makes concurrent creators converge on one row
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO conversation_states
                (thread_id, principal_id, state, turn_count, context, last_activity,
                 expires_at, created_at, updated_at)
                VALUES (?,?,?,?,?,?,?,?,?)
                """,
                (
                    thread_id, principal_id, S.INITIAL.value, 1, "{}",
                    db.to_iso(now), db.to_iso(now + timedelta(days=self.ttl_days)),
                    db.to_iso(now), db.to_iso(now),
                ),
            )
            conn.commit()
            created = cur.rowcount == 1

        conversation = self.find_open(thread_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation for thread {thread_id} vanished after create")
        if created:
            logger.info(f"[{principal_id}] Created conversation {thread_id} (id={conversation.id})")
        return conversation

    def find_open(self, thread_id: str) -> Optional[ConversationState]:
        with db.get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM conversation_states WHERE thread_id=? AND state != 'closed'",
                (thread_id,),
            ).fetchone()
        return _row_to_state(row) if row else None

    def get(self, conversation_id: int) -> Optional[ConversationState]:
        with db.get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM conversation_states WHERE id=?", (conversation_id,)
            ).fetchone()
        return _row_to_state(row) if row else None

    def list_for_principal(self, principal_id: str, include_closed: bool = False, limit: int = 100) -> list[ConversationState]:
        sql = "SELECT * FROM conversation_states WHERE principal_id=?"
        if not include_closed:
            sql += " AND state != 'closed'"
        sql += " ORDER BY last_activity DESC LIMIT ?"
        with db.get_conn() as conn:
            rows = conn.execute(sql, (principal_id, limit)).fetchall()
        return [_row_to_state(r) for r in rows]

    def transition(
        self,
        thread_id: str,
        new_state: ConversationStatus,
        context: Optional[dict] = None,
        request_id: Optional[int] = None,
        expected_state: Optional[ConversationStatus] = None,
        expected_turn: Optional[int] = None,
    ) -> ConversationState:
        """
        Move a thread along one edge of the transition graph.

        Context updates are merged into the existing context. Raises
        InvalidTransition for an edge not in TRANSITIONS and
        ConcurrentUpdateError if another writer moved the thread first or
        the thread no longer matches expected_state/expected_turn.
        """
        new_state = ConversationStatus(new_state)
        conversation = self.find_open(thread_id)
        if conversation is None:
            if self._has_closed(thread_id):
                # closed is terminal
                raise InvalidTransition(S.CLOSED.value, new_state.value)
            raise ConversationNotFound(f"No conversation for thread {thread_id}")

        _check_snapshot(conversation, new_state, expected_state, expected_turn)
        validate_transition(conversation.state, new_state)

        merged = {**conversation.context, **(context or {})}
        previous = list(conversation.previous_request_ids)
        current_request = conversation.current_request_id
        if request_id is not None and request_id != current_request:
            if current_request is not None:
                previous.append(current_request)
            current_request = request_id

        now = self.clock()
        with db.get_conn() as conn:
            cur = conn.execute(
                """
                UPDATE conversation_states
                SET state=?, turn_count=turn_count + 1, context=?, current_request_id=?,
                    previous_request_ids=?, last_activity=?, updated_at=?
                WHERE id=? AND state=? AND turn_count=?
                """,
                (
                    new_state.value, json.dumps(merged), current_request,
                    json.dumps(previous), db.to_iso(now), db.to_iso(now),
                    conversation.id, conversation.state.value, conversation.turn_count,
                ),
            )
            conn.commit()
            if cur.rowcount != 1:
                raise ConcurrentUpdateError(thread_id, conversation.state.value, new_state.value)

        logger.info(
            f"[{conversation.principal_id}] Conversation {thread_id}: "
            f"{conversation.state.value} -> {new_state.value} (turn {conversation.turn_count + 1})"
        )
        return self.get(conversation.id)

    def _has_closed(self, thread_id: str) -> bool:
        with db.get_conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM conversation_states WHERE thread_id=? AND state='closed' LIMIT 1",
                (thread_id,),
            ).fetchone()
        return row is not None

    def update_context(
        self,
        thread_id: str,
        updates: dict,
        expected_state: Optional[ConversationStatus] = None,
        expected_turn: Optional[int] = None,
    ) -> ConversationState:
        """Merge facts into a thread's context without changing its state."""
        conversation = self.find_open(thread_id)
        if conversation is None:
            raise ConversationNotFound(f"No open conversation for thread {thread_id}")
        _check_snapshot(conversation, conversation.state, expected_state, expected_turn)

        merged = {**conversation.context, **updates}
        now = self.clock()
        with db.get_conn() as conn:
            cur = conn.execute(
                """
                UPDATE conversation_states SET context=?, last_activity=?, updated_at=?
                WHERE id=? AND state=? AND turn_count=?
                """,
                (
                    json.dumps(merged), db.to_iso(now), db.to_iso(now),
                    conversation.id, conversation.state.value, conversation.turn_count,
                ),
            )
            conn.commit()
            if cur.rowcount != 1:
                raise ConcurrentUpdateError(thread_id, conversation.state.value, conversation.state.value)
        return self.get(conversation.id)

    def close(self, thread_id: str) -> bool:
        """Force the thread's open conversation to closed. Returns False if none was open."""
        now = self.clock()
        with db.get_conn() as conn:
            cur = conn.execute(
                """
                UPDATE conversation_states
                SET state='closed', turn_count=turn_count + 1, last_activity=?, updated_at=?
                WHERE thread_id=? AND state != 'closed'
                """,
                (db.to_iso(now), db.to_iso(now), thread_id),
            )
            conn.commit()
        closed = cur.rowcount > 0
        if closed:
            logger.info(f"Closed conversation {thread_id}")
        return closed

    def cleanup_expired(self) -> int:
        """Close every open conversation past its expiry. Returns how many were closed."""
        now = db.to_iso(self.clock())
        with db.get_conn() as conn:
            cur = conn.execute(
                """
                UPDATE conversation_states
                SET state='closed', turn_count=turn_count + 1, updated_at=?
                WHERE expires_at < ? AND state != 'closed'
                """,
                (now, now),
            )
            conn.commit()
        count = cur.rowcount
        if count > 0:
            logger.info(f"Closed {count} expired conversation(s)")
        return count


def _check_snapshot(
    conversation: ConversationState,
    new_state: ConversationStatus,
    expected_state: Optional[ConversationStatus],
    expected_turn: Optional[int],
) -> None:
    if expected_state is not None and conversation.state != ConversationStatus(expected_state):
        raise ConcurrentUpdateError(conversation.thread_id, ConversationStatus(expected_state).value, new_state.value)
    if expected_turn is not None and conversation.turn_count != expected_turn:
        raise ConcurrentUpdateError(conversation.thread_id, conversation.state.value, new_state.value)


def _row_to_state(row) -> ConversationState:
    return ConversationState(
        id=row["id"],
        thread_id=row["thread_id"],
        principal_id=row["principal_id"],
        state=ConversationStatus(row["state"]),
        turn_count=row["turn_count"],
        context=json.loads(row["context"] or "{}"),
        last_activity=db.from_iso(row["last_activity"]),
        expires_at=db.from_iso(row["expires_at"]),
        created_at=db.from_iso(row["created_at"]),
        updated_at=db.from_iso(row["updated_at"]),
        current_request_id=row["current_request_id"],
        previous_request_ids=json.loads(row["previous_request_ids"] or "[]"),
    )
