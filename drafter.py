"""
Draft scheduling replies from templates.
Three reply kinds: availability, confirmation, clarification; three tones:
formal, casual, professional (default).
"""

import logging
import re
import zoneinfo
from dataclasses import dataclass
from typing import Optional

from models import AvailabilityResult, TimeInterval

logger = logging.getLogger(__name__)


@dataclass
class Reply:
    text: str
    summary: str
    offered: tuple[TimeInterval, ...] = ()  # slots the reply put on the table


def availability_reply(
    availability: AvailabilityResult,
    tone: str = "professional",
    recipient_name: Optional[str] = None,
    tz_name: str = "UTC",
) -> Reply:
    if not availability.available:
        if availability.suggested_alternatives:
            body = (
                "Unfortunately I'm not free at the times you suggested. "
                "Here are some alternatives that work for me:\n\n"
                + format_slots(availability.suggested_alternatives, tz_name)
            )
        else:
            body = "Unfortunately I'm fully booked at the times you suggested. Could you propose a few other options?"
    elif len(availability.available) == len(availability.requested):
        body = "I'm available at all of the times you suggested:\n\n" + format_slots(availability.available, tz_name)
    else:
        body = "I'm available at the following times:\n\n" + format_slots(availability.available, tz_name)
        if availability.suggested_alternatives:
            body += (
                "\n\nIf those don't work, here are some other options:\n\n"
                + format_slots(availability.suggested_alternatives, tz_name)
            )

    summary = (
        f"Shared availability: {len(availability.available)} of {len(availability.requested)} "
        f"requested slot(s) free, {len(availability.suggested_alternatives)} alternative(s)"
    )
    logger.debug(summary)
    offered = tuple(availability.available) + tuple(availability.suggested_alternatives)
    return Reply(text=_wrap(body, tone, recipient_name), summary=summary, offered=offered)


def confirmation_reply(
    slot: TimeInterval,
    tone: str = "professional",
    recipient_name: Optional[str] = None,
    tz_name: str = "UTC",
) -> Reply:
    when = format_slot(slot, tz_name)
    minutes = int(slot.duration_seconds // 60)
    if tone == "formal":
        body = f"I am pleased to confirm our meeting on {when} ({minutes} minutes). It has been added to my calendar."
    elif tone == "casual":
        body = f"Perfect, {when} works for me. See you then!"
    else:
        body = f"Sounds good. I've confirmed {when} for our meeting ({minutes} minutes)."
    return Reply(text=_wrap(body, tone, recipient_name), summary=f"Confirmed meeting {when}")


def clarification_reply(reason: str, tone: str = "professional", recipient_name: Optional[str] = None) -> Reply:
    reason = reason.rstrip(".")
    if tone == "formal":
        body = f"I would appreciate some clarification regarding your meeting request. {reason}. Please provide additional details at your earliest convenience."
    elif tone == "casual":
        body = f"Quick question about the meeting: {reason}. Let me know!"
    else:
        body = f"Thanks for reaching out. Could you clarify one thing? {reason}."
    return Reply(text=_wrap(body, tone, recipient_name), summary="Requested clarification")


def reply_subject(subject: str) -> str:
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


def recipient_name(sender: str) -> Optional[str]:
    """'Jane Doe <jane@x.com>' -> 'Jane Doe'; 'jane.doe@x.com' -> 'Jane Doe'."""
    match = re.match(r"^\s*\"?([^<\"]+?)\"?\s*<", sender)
    if match:
        return match.group(1).strip()
    local = extract_email(sender).split("@")[0]
    if not local:
        return None
    return " ".join(p.capitalize() for p in re.split(r"[._]", local) if p)


def extract_email(sender: str) -> str:
    """Extract bare email from 'Name <email>' format."""
    match = re.search(r"<([^>]+)>", sender)
    return (match.group(1) if match else sender).strip()


# ── Formatting ─────────────────────────────────────────────────────────────────

def format_slots(slots: list[TimeInterval], tz_name: str = "UTC") -> str:
    """One line per day, e.g. '2/18: 12-1pm, 3:30-4pm'."""
    tz = zoneinfo.ZoneInfo(tz_name)
    by_day: dict[str, list[str]] = {}
    for slot in sorted(slots, key=lambda s: s.start):
        start = slot.start.astimezone(tz)
        end = slot.end.astimezone(tz)
        day_key = f"{start.month}/{start.day}"
        by_day.setdefault(day_key, []).append(f"{_fmt_time(start)}-{_fmt_time(end)}")
    return "\n".join(f"{day}: {', '.join(parts)}" for day, parts in by_day.items())


def format_slot(slot: TimeInterval, tz_name: str = "UTC") -> str:
    tz = zoneinfo.ZoneInfo(tz_name)
    start = slot.start.astimezone(tz)
    return f"{start.strftime('%A')} {start.month}/{start.day} at {_fmt_time(start)}"


def _fmt_time(dt) -> str:
    """Format like 12pm, 10:30am."""
    h = dt.hour
    m = dt.minute
    period = "am" if h < 12 else "pm"
    h12 = h % 12 or 12
    if m == 0:
        return f"{h12}{period}"
    return f"{h12}:{m:02d}{period}"


def _wrap(body: str, tone: str, name: Optional[str]) -> str:
    if tone == "formal":
        greeting = f"Dear {name or 'Sir/Madam'},"
        closing = "Kind regards"
    elif tone == "casual":
        greeting = f"Hey {name or 'there'}!"
        closing = "Cheers"
    else:
        greeting = f"Hi {name or 'there'},"
        closing = "Best"
    return f"{greeting}\n\n{body}\n\n{closing}"
