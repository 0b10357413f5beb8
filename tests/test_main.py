"""
API tests: the webhook entry point and the audit, breaker, preference and
conversation endpoints, with the orchestrator built from in-memory fakes.
"""

import sqlite3
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import database as db
import main
from models import AuditAction, NewAuditEntry, OrchestratorResult, ResultAction
from processor import ERR_INVALID_TRANSITION, ERR_TIMEOUT

from conftest import PRINCIPAL, make_classification


@pytest.fixture
def client(orchestrator):
    main.app.dependency_overrides[main.get_orchestrator] = lambda: orchestrator
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return {"Authorization": f"Bearer {main.create_session_token(PRINCIPAL)}"}


def _other_entry() -> int:
    return main.ledger.log(NewAuditEntry(
        principal_id="someone-else",
        action=AuditAction.ESCALATED,
        confidence_score=0.5,
        decision_rationale="Not yours",
    ))


class TestAuth:
    def test_requires_a_token(self, client):
        assert client.get("/api/preferences").status_code == 401

    def test_rejects_a_bad_token(self, client):
        r = client.get("/api/preferences", headers={"Authorization": "Bearer nope"})
        assert r.status_code == 401

    def test_accepts_the_session_cookie(self, client):
        client.cookies.set(main.COOKIE_NAME, main.create_session_token(PRINCIPAL))
        r = client.get("/api/preferences")
        assert r.status_code == 200
        assert r.json()["principal_id"] == PRINCIPAL

    def test_status(self, client, headers):
        assert client.get("/auth/status").json() == {"authorized": False, "google_connected": False}
        assert client.get("/auth/status", headers=headers).json() == {"authorized": True, "google_connected": False}


class _FakeFlow:
    credentials = None

    def authorization_url(self, **kwargs):
        return f"https://accounts.example.com/o/oauth2?state={kwargs['state']}", kwargs["state"]

    def fetch_token(self, code):
        self.credentials = SimpleNamespace(
            token="tok", refresh_token="ref", token_uri="https://oauth2.example.com/token",
            client_id="cid", client_secret="secret", scopes=None,
        )


class TestOAuthConnect:
    def test_login_redirects_and_callback_stores_the_token(self, client, monkeypatch):
        monkeypatch.setattr(main.auth, "create_oauth_flow", lambda: _FakeFlow())
        monkeypatch.setattr(main.auth, "principal_from_flow", lambda flow: PRINCIPAL)

        r = client.get("/auth/login", follow_redirects=False)
        assert r.status_code == 307
        state = r.headers["location"].split("state=")[1]

        r = client.get(f"/auth/callback?code=abc&state={state}", follow_redirects=False)

        assert r.status_code == 302
        assert main.COOKIE_NAME in r.cookies
        assert db.load_token(PRINCIPAL)["refresh_token"] == "ref"

    def test_callback_rejects_unknown_state(self, client):
        r = client.get("/auth/callback?code=abc&state=forged")
        assert r.status_code == 400

    def test_callback_reports_provider_error(self, client):
        r = client.get("/auth/callback?error=access_denied")
        assert r.status_code == 400
        assert "access_denied" in r.text


class TestProcessMessage:
    def test_non_scheduling_mail_is_ignored(self, client, headers, message_source, classifier):
        message_source.add("m1")
        classifier.default = make_classification(is_scheduling_request=False, proposed_times=())

        r = client.post("/api/messages/m1/process", headers=headers)

        assert r.status_code == 200
        assert r.json()["action"] == "ignored"
        assert r.json()["duplicate"] is False

    def test_deny_listed_sender_is_declined_and_logged(self, client, headers, message_source, sender):
        message_source.add("m1")
        client.post("/api/preferences/deny-list/alice@example.com", headers=headers)

        r = client.post("/api/messages/m1/process", headers=headers)

        body = r.json()
        assert body["action"] == "declined"
        assert body["audit_id"] is not None
        assert sender.sent == []
        events = client.get("/api/events", headers=headers).json()
        assert events[0]["event_type"] == "declined"

    def test_redelivery_is_dropped(self, client, headers, message_source, classifier):
        message_source.add("m1")

        client.post("/api/messages/m1/process", headers=headers)
        r = client.post("/api/messages/m1/process", headers=headers)

        assert r.json() == {"message_id": "m1", "duplicate": True}
        assert len(classifier.calls) == 1

    def test_error_releases_the_message_for_retry(self, client, headers, message_source, classifier):
        message_source.add("m1")
        classifier.fail = True

        r = client.post("/api/messages/m1/process", headers=headers)

        assert r.status_code == 503
        assert r.json()["error_code"] == "collaborator_failure"
        assert not db.is_processed(PRINCIPAL, "m1")

    def test_store_failure_releases_the_message_for_retry(self, client, headers, message_source, orchestrator, monkeypatch):
        message_source.add("m1")

        def locked(*args):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(orchestrator.ledger, "record_decision_request", locked)

        r = client.post("/api/messages/m1/process", headers=headers)

        assert r.status_code == 503
        assert r.json()["error_code"] == "collaborator_failure"
        assert not db.is_processed(PRINCIPAL, "m1")

    @pytest.mark.parametrize("result", [
        OrchestratorResult(action=ResultAction.ERROR, reason="slow", error="slow", error_code=ERR_TIMEOUT),
        OrchestratorResult(
            action=ResultAction.ERROR, reason="sent", error="stale", error_code=ERR_INVALID_TRANSITION, email_sent=True,
        ),
    ])
    def test_claim_is_kept_when_a_reply_may_have_gone_out(self, client, headers, monkeypatch, result):
        async def fixed(orchestrator, message_id, principal_id):
            return result

        monkeypatch.setattr(main, "process_message_async", fixed)

        r = client.post("/api/messages/m1/process", headers=headers)

        assert r.status_code == 503
        assert db.is_processed(PRINCIPAL, "m1")


class TestAuditEndpoints:
    def test_list_get_and_override(self, client, headers, message_source):
        message_source.add("m1")
        client.post("/api/preferences/deny-list/alice@example.com", headers=headers)
        client.post("/api/messages/m1/process", headers=headers)

        entries = client.get("/api/audit", headers=headers).json()
        assert len(entries) == 1
        entry_id = entries[0]["id"]

        detail = client.get(f"/api/audit/{entry_id}", headers=headers).json()
        assert detail["entry"]["action"] == "declined_request"
        assert detail["assessment"] is not None

        r = client.post(
            f"/api/audit/{entry_id}/override",
            json={"override": "approved", "reason": "Fine by me"},
            headers=headers,
        )
        assert r.status_code == 200
        assert r.json()["override"] == "approved"

    def test_filter_by_action(self, client, headers):
        main.ledger.log(NewAuditEntry(
            principal_id=PRINCIPAL, action=AuditAction.SENT_EMAIL, confidence_score=0.9, decision_rationale="ok",
        ))

        assert len(client.get("/api/audit?action=sent_email", headers=headers).json()) == 1
        assert client.get("/api/audit?action=escalated", headers=headers).json() == []

    def test_other_principals_entries_are_hidden(self, client, headers):
        entry_id = _other_entry()

        assert client.get(f"/api/audit/{entry_id}", headers=headers).status_code == 404
        r = client.post(f"/api/audit/{entry_id}/override", json={"override": "retracted"}, headers=headers)
        assert r.status_code == 404

    def test_unknown_entry(self, client, headers):
        assert client.get("/api/audit/9999", headers=headers).status_code == 404

    def test_stats_and_digest(self, client, headers):
        assert client.get("/api/audit/stats?days=30", headers=headers).status_code == 200
        assert client.get("/api/audit/digest", headers=headers).status_code == 200


class TestPreferencesAndBreaker:
    def test_patch_preferences(self, client, headers):
        r = client.patch("/api/preferences", json={"confidence_threshold": 0.9, "response_tone": "casual"}, headers=headers)

        assert r.status_code == 200
        assert r.json()["confidence_threshold"] == pytest.approx(0.9)
        assert r.json()["response_tone"] == "casual"

    def test_threshold_out_of_bounds_is_rejected(self, client, headers):
        r = client.patch("/api/preferences", json={"confidence_threshold": 0.99}, headers=headers)
        assert r.status_code == 422

    def test_empty_update_is_rejected(self, client, headers):
        assert client.patch("/api/preferences", json={}, headers=headers).status_code == 400

    def test_allow_list_add_and_remove(self, client, headers):
        r = client.post("/api/preferences/allow-list/VIP@Example.com", headers=headers)
        assert r.json()["allow_list"] == ["vip@example.com"]

        r = client.delete("/api/preferences/allow-list/vip@example.com", headers=headers)
        assert r.json()["allow_list"] == []

    def test_breaker_trip_and_force_close(self, client, headers):
        main.breaker.trip(PRINCIPAL)
        assert client.get("/api/circuit-breaker", headers=headers).json()["state"] == "open"

        r = client.post("/api/circuit-breaker/override", json={"force_close": True}, headers=headers)

        assert r.json()["state"] == "closed"
        assert r.json()["manual_override"] is True


class TestConversations:
    def test_list_and_close(self, client, headers):
        main.conversations.get_or_create("thread-9", PRINCIPAL)

        listed = client.get("/api/conversations", headers=headers).json()
        assert [c["thread_id"] for c in listed] == ["thread-9"]

        r = client.post("/api/conversations/thread-9/close", headers=headers)
        assert r.json() == {"ok": True, "thread_id": "thread-9"}
        assert client.get("/api/conversations", headers=headers).json() == []

    def test_close_someone_elses_thread(self, client, headers):
        main.conversations.get_or_create("thread-9", "someone-else")

        assert client.post("/api/conversations/thread-9/close", headers=headers).status_code == 404
        assert client.post("/api/conversations/missing/close", headers=headers).status_code == 404
