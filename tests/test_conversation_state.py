"""
Tests for the conversation state machine.
"""

import pytest

import database as db
from conversation_state import TRANSITIONS, ConversationStateManager, allowed_from
from errors import ConcurrentUpdateError, ConversationNotFound, InvalidTransition
from models import ConversationStatus as S

from conftest import PRINCIPAL

# Shortest path from a fresh conversation to each state
PATHS = {
    S.INITIAL: [],
    S.AVAILABILITY_SENT: [S.AVAILABILITY_SENT],
    S.CONFIRMED: [S.AVAILABILITY_SENT, S.CONFIRMED],
    S.SCHEDULED: [S.AVAILABILITY_SENT, S.CONFIRMED, S.SCHEDULED],
}


@pytest.fixture
def manager(clock):
    return ConversationStateManager(clock=clock)


def _walk_to(manager, thread_id, state):
    manager.get_or_create(thread_id, PRINCIPAL)
    for step in PATHS[state]:
        manager.transition(thread_id, step)
    return manager.find_open(thread_id)


class TestGetOrCreate:
    def test_creates_in_initial(self, manager, clock):
        conversation = manager.get_or_create("t1", PRINCIPAL)

        assert conversation.state == S.INITIAL
        assert conversation.turn_count == 1
        assert conversation.context == {}
        assert conversation.created_at == clock.now
        assert (conversation.expires_at - conversation.created_at).days == 14

    def test_is_idempotent(self, manager):
        first = manager.get_or_create("t1", PRINCIPAL)
        second = manager.get_or_create("t1", PRINCIPAL)

        assert first.id == second.id
        with db.get_conn() as conn:
            assert conn.execute("SELECT COUNT(*) FROM conversation_states").fetchone()[0] == 1

    def test_closed_thread_gets_a_fresh_conversation(self, manager):
        first = manager.get_or_create("t1", PRINCIPAL)
        manager.close("t1")

        second = manager.get_or_create("t1", PRINCIPAL)

        assert second.id != first.id
        assert second.state == S.INITIAL


class TestTransitions:
    @pytest.mark.parametrize("src,dst", sorted(TRANSITIONS, key=lambda e: (e[0].value, e[1].value)))
    def test_every_edge_succeeds_and_increments_turn(self, manager, src, dst):
        before = _walk_to(manager, "t1", src)

        after = manager.transition("t1", dst)

        assert after.state == dst
        assert after.turn_count == before.turn_count + 1

    @pytest.mark.parametrize("src", list(PATHS))
    def test_every_other_edge_is_rejected(self, manager, src):
        _walk_to(manager, f"t-{src.value}", src)
        illegal = [dst for dst in S if (src, dst) not in TRANSITIONS]
        assert illegal

        for dst in illegal:
            with pytest.raises(InvalidTransition):
                manager.transition(f"t-{src.value}", dst)

        assert manager.find_open(f"t-{src.value}").state == src

    def test_closed_is_terminal(self, manager):
        manager.get_or_create("t1", PRINCIPAL)
        manager.transition("t1", S.CLOSED)

        with pytest.raises(InvalidTransition):
            manager.transition("t1", S.AVAILABILITY_SENT)

    def test_unknown_thread(self, manager):
        with pytest.raises(ConversationNotFound):
            manager.transition("nope", S.AVAILABILITY_SENT)

    def test_error_lists_allowed_states(self, manager):
        manager.get_or_create("t1", PRINCIPAL)

        with pytest.raises(InvalidTransition) as exc:
            manager.transition("t1", S.SCHEDULED)

        assert exc.value.allowed == tuple(s.value for s in allowed_from(S.INITIAL))
        assert "availability_sent" in str(exc.value)

    def test_context_is_merged(self, manager):
        manager.get_or_create("t1", PRINCIPAL)
        manager.transition("t1", S.AVAILABILITY_SENT, {"a": 1, "b": 2})

        conversation = manager.transition("t1", S.CONFIRMED, {"b": 3})

        assert conversation.context == {"a": 1, "b": 3}

    def test_request_ids_are_tracked(self, manager):
        manager.get_or_create("t1", PRINCIPAL)
        manager.transition("t1", S.AVAILABILITY_SENT, request_id=10)
        manager.transition("t1", S.INITIAL, request_id=11)

        conversation = manager.transition("t1", S.AVAILABILITY_SENT, request_id=11)

        assert conversation.current_request_id == 11
        assert conversation.previous_request_ids == [10]

    def test_stale_writer_loses(self, manager, monkeypatch):
        manager.get_or_create("t1", PRINCIPAL)
        stale = manager.find_open("t1")
        manager.transition("t1", S.AVAILABILITY_SENT)

        with monkeypatch.context() as m:
            m.setattr(manager, "find_open", lambda thread_id: stale)
            with pytest.raises(ConcurrentUpdateError):
                manager.transition("t1", S.AVAILABILITY_SENT)

        conversation = manager.find_open("t1")
        assert conversation.state == S.AVAILABILITY_SENT
        assert conversation.turn_count == 2

    def test_expected_turn_rejects_a_legal_move_from_a_newer_read(self, manager):
        # Decided at availability_sent turn 2; another writer restarted and re-sent since
        _walk_to(manager, "t1", S.AVAILABILITY_SENT)
        manager.transition("t1", S.INITIAL)
        manager.transition("t1", S.AVAILABILITY_SENT)

        with pytest.raises(ConcurrentUpdateError):
            manager.transition("t1", S.CONFIRMED, expected_state=S.AVAILABILITY_SENT, expected_turn=2)

        conversation = manager.find_open("t1")
        assert conversation.state == S.AVAILABILITY_SENT
        assert conversation.turn_count == 4

    def test_expected_state_mismatch(self, manager):
        _walk_to(manager, "t1", S.CONFIRMED)

        with pytest.raises(ConcurrentUpdateError):
            manager.transition("t1", S.CLOSED, expected_state=S.AVAILABILITY_SENT)

    def test_matching_snapshot_applies(self, manager):
        _walk_to(manager, "t1", S.AVAILABILITY_SENT)

        conversation = manager.transition("t1", S.CONFIRMED, expected_state=S.AVAILABILITY_SENT, expected_turn=2)

        assert conversation.state == S.CONFIRMED
        assert conversation.turn_count == 3

    def test_update_context_checks_the_snapshot(self, manager):
        _walk_to(manager, "t1", S.AVAILABILITY_SENT)

        with pytest.raises(ConcurrentUpdateError):
            manager.update_context("t1", {"x": 1}, expected_turn=1)

        assert "x" not in manager.find_open("t1").context


class TestMaintenance:
    def test_update_context_keeps_state(self, manager):
        manager.get_or_create("t1", PRINCIPAL)

        conversation = manager.update_context("t1", {"note": "prefers mornings"})

        assert conversation.state == S.INITIAL
        assert conversation.context["note"] == "prefers mornings"

    def test_close_reports_whether_anything_was_open(self, manager):
        manager.get_or_create("t1", PRINCIPAL)

        assert manager.close("t1") is True
        assert manager.close("t1") is False
        assert manager.find_open("t1") is None

    def test_cleanup_closes_only_expired(self, manager, clock):
        manager.get_or_create("old", PRINCIPAL)
        clock.advance(days=10)
        manager.get_or_create("new", PRINCIPAL)
        clock.advance(days=5)

        assert manager.cleanup_expired() == 1
        assert manager.find_open("old") is None
        assert manager.find_open("new") is not None
        assert manager.cleanup_expired() == 0

    def test_list_for_principal(self, manager):
        manager.get_or_create("t1", PRINCIPAL)
        manager.get_or_create("t2", PRINCIPAL)
        manager.get_or_create("t3", "someone-else")
        manager.close("t2")

        assert {c.thread_id for c in manager.list_for_principal(PRINCIPAL)} == {"t1"}
        assert {c.thread_id for c in manager.list_for_principal(PRINCIPAL, include_closed=True)} == {"t1", "t2"}
