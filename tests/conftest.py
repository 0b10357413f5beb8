"""
Shared fixtures: a throwaway SQLite database per test, a controllable
clock, and in-memory fakes for the five external collaborators.
"""

from datetime import datetime, timedelta, timezone

import pytest

import database as db
from errors import CollaboratorFailure
from models import AvailabilityResult, Classification, InboundMessage, RequestKind, TimeInterval, Urgency
from preferences import PreferenceStore
from processor import DecisionOrchestrator

PRINCIPAL = "user-1"
START = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)  # a Monday


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_FILE", tmp_path / "test.db")
    db.init_db()
    return tmp_path / "test.db"


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


def interval(day: int = 4, hour: int = 15, minutes: int = 60) -> TimeInterval:
    start = datetime(2026, 3, day, hour, 0, tzinfo=timezone.utc)
    return TimeInterval(start=start, end=start + timedelta(minutes=minutes))


def make_classification(**overrides) -> Classification:
    fields = dict(
        is_scheduling_request=True,
        confidence=0.95,
        proposed_times=(interval(),),
        request_kind=RequestKind.INITIAL,
        urgency=Urgency.MEDIUM,
    )
    fields.update(overrides)
    return Classification(**fields)


class FakeMessageSource:
    def __init__(self):
        self.messages: dict[str, InboundMessage] = {}
        self.fail = False

    def add(self, message_id: str, thread_id: str = "thread-1", sender: str = "Alice Smith <alice@example.com>",
            subject: str = "Quick sync?", body: str = "Are you free Wednesday at 3pm?") -> InboundMessage:
        message = InboundMessage(message_id=message_id, thread_id=thread_id, sender=sender, subject=subject, body=body)
        self.messages[message_id] = message
        return message

    def get_message(self, principal_id: str, message_id: str) -> InboundMessage:
        if self.fail or message_id not in self.messages:
            raise CollaboratorFailure("message source", f"no message {message_id}")
        return self.messages[message_id]


class FakeClassifier:
    """Returns queued classifications in order, or the default one."""

    def __init__(self):
        self.default = make_classification()
        self.queue: list[Classification] = []
        self.calls: list[tuple[str, str, str]] = []
        self.fail = False

    def classify(self, raw_text: str, subject: str, tz_name: str = "UTC") -> Classification:
        self.calls.append((raw_text, subject, tz_name))
        if self.fail:
            raise RuntimeError("model unavailable")
        if self.queue:
            return self.queue.pop(0)
        return self.default


class FakeAvailability:
    """Everything requested is free unless listed in `busy`."""

    def __init__(self):
        self.busy: list[TimeInterval] = []
        self.alternatives: list[TimeInterval] = [interval(day=5, hour=16, minutes=60)]
        self.calls: list[tuple[str, list]] = []
        self.fail = False

    def check_availability(self, principal_id: str, proposed_times: list[TimeInterval]) -> AvailabilityResult:
        self.calls.append((principal_id, list(proposed_times)))
        if self.fail:
            raise CollaboratorFailure("calendar", "freebusy timed out")
        available = [t for t in proposed_times if not any(t.overlaps(b) for b in self.busy)]
        conflicts = [
            {"requested_start": t.start.isoformat(), "requested_end": t.end.isoformat()}
            for t in proposed_times if t not in available
        ]
        return AvailabilityResult(
            requested=list(proposed_times),
            available=available,
            conflicts=conflicts,
            suggested_alternatives=list(self.alternatives) if conflicts or not proposed_times else [],
        )


class FakeSender:
    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False
        self.before_send = None  # one-shot hook, run inside the next send

    def send(self, principal_id: str, to: str, subject: str, body: str, thread_id: str) -> str:
        hook, self.before_send = self.before_send, None
        if hook is not None:
            hook()
        if self.fail:
            raise CollaboratorFailure("gmail", "send rejected")
        self.sent.append({"principal_id": principal_id, "to": to, "subject": subject, "body": body, "thread_id": thread_id})
        return f"sent-{len(self.sent)}"


@pytest.fixture
def message_source():
    return FakeMessageSource()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def availability():
    return FakeAvailability()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def preferences():
    return PreferenceStore()


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def orchestrator(message_source, classifier, preferences, availability, sender, clock, alerts):
    return DecisionOrchestrator(
        message_source=message_source,
        classifier=classifier,
        preferences=preferences,
        availability=availability,
        sender=sender,
        alert=lambda principal_id, message: alerts.append((principal_id, message)),
        clock=clock,
    )
