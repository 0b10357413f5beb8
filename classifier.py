"""
Classify incoming emails using Claude.
Returns a Classification: is this a scheduling request, of what kind, and
which concrete time intervals were proposed.
"""

import json
import logging
import os
import re
import time
import zoneinfo
from datetime import datetime, timedelta
from typing import Callable, Optional

import anthropic

import database as db
from config import load_config
from errors import CollaboratorFailure
from models import Classification, RequestKind, TimeInterval, Urgency

logger = logging.getLogger(__name__)

CLASSIFICATION_SCHEMA = """
Return ONLY valid JSON matching this schema (no markdown, no explanation):
{
  "is_scheduling_request": true | false,
  "confidence": 0.0 - 1.0,
  "intent": "schedule_meeting" | "reschedule" | "confirm_time" | "cancel" | "other",
  "request_kind": "initial" | "confirmation" | "rescheduling" | "clarification",
  "urgency": "low" | "medium" | "high",
  "proposed_times": [{"start": "ISO 8601 with offset", "end": "ISO 8601 with offset or null"}],
  "participants": ["email addresses mentioned besides the sender"],
  "reasoning": "one sentence"
}

Definitions:
- is_scheduling_request: Is the sender trying to set up, move, or confirm a meeting?
- confidence: How confident are you in your classification (0 = very unsure, 1 = certain)?
- request_kind: "initial" = first ask for a meeting; "confirmation" = accepting a time already offered;
  "rescheduling" = moving an agreed meeting; "clarification" = answering or asking a question about a pending request.
- urgency: "high" only when the sender needs an answer today or mentions a hard deadline.
- proposed_times: Every concrete time the sender proposes, resolved against the reference date.
  Leave "end" null when no duration is stated. Vague phrases ("sometime next week") are not times.
"""

MAX_RETRIES = 3


def _build_classifier_prompt(now: datetime, tz_name: str) -> str:
    return f"""You are an email classifier for a scheduling assistant.
Your job is to decide whether an email is about scheduling a meeting and, if so,
extract the proposed meeting times precisely.

Reference date: {now.astimezone(zoneinfo.ZoneInfo(tz_name)).strftime('%A %Y-%m-%d %H:%M')} ({tz_name}).
Interpret times without an explicit zone in {tz_name}.

{CLASSIFICATION_SCHEMA}"""


class ClaudeClassifier:
    """The classifier collaborator: classify(raw_text, subject, tz_name) -> Classification."""

    def __init__(
        self,
        client: Optional[anthropic.Anthropic] = None,
        model: Optional[str] = None,
        tz_name: str = "UTC",
        default_meeting_minutes: int = 30,
        clock: Callable[[], datetime] = db.utcnow,
        retry_wait_seconds: float = 10,
    ):
        self.client = client or anthropic.Anthropic(api_key=os.environ.get("ANTHROPIC_API_KEY"))
        self.model = model or load_config()["anthropic_model"]
        self.tz_name = tz_name
        self.default_meeting_minutes = default_meeting_minutes
        self.clock = clock
        self.retry_wait_seconds = retry_wait_seconds

    def classify(self, raw_text: str, subject: str, tz_name: Optional[str] = None) -> Classification:
        """tz_name is the principal's zone; the constructor's zone is the fallback."""
        system_prompt = _build_classifier_prompt(self.clock(), tz_name or self.tz_name)
        user_prompt = f"""Classify this email:

Subject: {subject}

Body:
{raw_text[:4000]}
"""

        last_error = None
        for attempt in range(MAX_RETRIES):
            try:
                response = self.client.messages.create(
                    model=self.model,
                    max_tokens=1024,
                    system=system_prompt,
                    messages=[{"role": "user", "content": user_prompt}],
                )
                result = parse_response(response.content[0].text)
                return self._to_classification(result, raw_text, subject)

            except anthropic.APIStatusError as e:
                last_error = e
                if e.status_code == 529 and attempt < MAX_RETRIES - 1:
                    wait = self.retry_wait_seconds * (attempt + 1)
                    logger.warning(f"Anthropic overloaded (529), retrying in {wait}s... (attempt {attempt + 1}/{MAX_RETRIES})")
                    time.sleep(wait)
                else:
                    break
            except anthropic.APIError as e:
                last_error = e
                break
            except (ValueError, KeyError, TypeError) as e:
                last_error = e
                break

        logger.error(f"Classification error: {last_error}")
        raise CollaboratorFailure("classifier", str(last_error)) from last_error

    def _to_classification(self, result: dict, raw_text: str, subject: str) -> Classification:
        proposed = tuple(
            parse_interval(t, self.default_meeting_minutes) for t in result.get("proposed_times") or []
        )
        classification = Classification(
            is_scheduling_request=bool(result["is_scheduling_request"]),
            confidence=max(0.0, min(1.0, float(result["confidence"]))),
            proposed_times=proposed,
            request_kind=RequestKind(result.get("request_kind") or "initial"),
            urgency=Urgency(result.get("urgency") or "medium"),
            subject=subject,
            raw_text=raw_text,
            intent=result.get("intent") or "other",
            participants=tuple(result.get("participants") or ()),
        )
        logger.info(
            f"  Classification: scheduling={classification.is_scheduling_request} "
            f"kind={classification.request_kind.value} confidence={classification.confidence:.2f} "
            f"times={len(proposed)} ({result.get('reasoning', '')})"
        )
        return classification


def parse_response(raw: str) -> dict:
    """Strip markdown code fences and parse; raises ValueError on a malformed reply."""
    raw = raw.strip()
    raw = re.sub(r"```(?:json)?", "", raw).strip()
    result = json.loads(raw)

    required = ["is_scheduling_request", "confidence"]
    for key in required:
        if key not in result:
            raise ValueError(f"Missing key: {key}")
    return result


def parse_interval(data: dict, default_minutes: int = 30) -> TimeInterval:
    start = _parse_dt(data["start"])
    end = _parse_dt(data["end"]) if data.get("end") else start + timedelta(minutes=default_minutes)
    return TimeInterval(start=start, end=end)


def _parse_dt(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        raise ValueError(f"Proposed time without offset: {value}")
    return dt
