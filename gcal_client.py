"""
Google Calendar availability: check proposed meeting times against the
principal's free/busy and suggest alternatives inside working hours.
"""

import logging
import zoneinfo
from datetime import datetime, timedelta
from typing import Callable, Optional

from googleapiclient.errors import HttpError

import auth
import database as db
from errors import CollaboratorFailure
from models import AvailabilityResult, TimeInterval
from preferences import PreferenceStore

logger = logging.getLogger(__name__)

MIN_SLOT_MINUTES = 30


class CalendarAvailability:
    """The availability collaborator: check_availability(principal_id, proposed_times)."""

    def __init__(
        self,
        service_factory: Callable = auth.get_calendar_service,
        preferences: Optional[PreferenceStore] = None,
        clock: Callable[[], datetime] = db.utcnow,
        days_ahead: int = 7,
        max_alternatives: int = 3,
    ):
        self.service_factory = service_factory
        self.preferences = preferences or PreferenceStore()
        self.clock = clock
        self.days_ahead = days_ahead
        self.max_alternatives = max_alternatives

    def check_availability(self, principal_id: str, proposed_times: list[TimeInterval]) -> AvailabilityResult:
        policy = self.preferences.get(principal_id)
        user_tz = zoneinfo.ZoneInfo(policy.user_timezone)
        now = self.clock().astimezone(user_tz)

        window_start = min([now] + [t.start for t in proposed_times])
        window_end = max([now + timedelta(days=self.days_ahead)] + [t.end for t in proposed_times])
        busy = self._busy_periods(principal_id, window_start, window_end)

        available = []
        conflicts = []
        for slot in proposed_times:
            clashes = [b for b in busy if slot.overlaps(b)]
            if clashes:
                for b in clashes:
                    conflicts.append({
                        "requested_start": slot.start.isoformat(),
                        "requested_end": slot.end.isoformat(),
                        "busy_start": b.start.isoformat(),
                        "busy_end": b.end.isoformat(),
                    })
            else:
                available.append(slot)

        alternatives = []
        if len(available) < len(proposed_times) or not proposed_times:
            minutes = policy.default_meeting_minutes
            if proposed_times:
                minutes = max(MIN_SLOT_MINUTES, int(proposed_times[0].duration_seconds // 60))
            free = _compute_free_slots(
                now, self.days_ahead, busy, policy.working_hours_start, policy.working_hours_end
            )
            alternatives = _pick_alternatives(free, timedelta(minutes=minutes), self.max_alternatives)

        logger.info(
            f"[{principal_id}] Availability: {len(available)}/{len(proposed_times)} free, "
            f"{len(conflicts)} conflict(s), {len(alternatives)} alternative(s)"
        )
        return AvailabilityResult(
            requested=list(proposed_times),
            available=available,
            conflicts=conflicts,
            suggested_alternatives=alternatives,
        )

    def _busy_periods(self, principal_id: str, start: datetime, end: datetime) -> list[TimeInterval]:
        try:
            service = self.service_factory(principal_id)
            result = service.freebusy().query(body={
                "timeMin": start.isoformat(),
                "timeMax": end.isoformat(),
                "items": [{"id": "primary"}],
            }).execute()
        except (HttpError, ValueError) as e:
            logger.error(f"[{principal_id}] Error fetching calendar: {e}")
            raise CollaboratorFailure("calendar", str(e)) from e

        return [
            TimeInterval.from_dict(b)
            for b in result["calendars"]["primary"].get("busy", [])
        ]


def _compute_free_slots(
    now: datetime,
    days_ahead: int,
    busy_periods: list[TimeInterval],
    work_start: int,
    work_end: int,
) -> list[TimeInterval]:
    """Compute free windows within working hours given busy periods. `now` is in the principal's zone."""
    free = []

    for day_offset in range(days_ahead):
        day = (now + timedelta(days=day_offset)).date()
        day_start = datetime(day.year, day.month, day.day, work_start, 0, tzinfo=now.tzinfo)
        day_end = datetime(day.year, day.month, day.day, work_end, 0, tzinfo=now.tzinfo)

        if day_end <= now:
            continue
        if day_start < now:
            day_start = now

        day_busy = sorted(
            (b for b in busy_periods if b.start < day_end and b.end > day_start),
            key=lambda b: b.start,
        )

        # Walk through the day collecting windows of at least MIN_SLOT_MINUTES
        cursor = day_start
        for b in day_busy:
            if cursor < b.start and (b.start - cursor) >= timedelta(minutes=MIN_SLOT_MINUTES):
                free.append(TimeInterval(start=cursor, end=b.start))
            cursor = max(cursor, b.end)

        if cursor < day_end and (day_end - cursor) >= timedelta(minutes=MIN_SLOT_MINUTES):
            free.append(TimeInterval(start=cursor, end=day_end))

    return free


def _pick_alternatives(free: list[TimeInterval], length: timedelta, limit: int) -> list[TimeInterval]:
    """First meeting-length slot from each free window, up to `limit`."""
    picks = []
    for window in free:
        start = _round_up(window.start)
        if start + length <= window.end:
            picks.append(TimeInterval(start=start, end=start + length))
        if len(picks) >= limit:
            break
    return picks


def _round_up(dt: datetime) -> datetime:
    """Next quarter hour."""
    extra = (-dt.minute) % 15
    rounded = dt.replace(second=0, microsecond=0) + timedelta(minutes=extra)
    if rounded < dt:
        rounded += timedelta(minutes=15)
    return rounded
