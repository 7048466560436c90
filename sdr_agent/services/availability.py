"""Slot availability: reconcile busy intervals into bookable meeting slots.

Policy
------
* Horizon: the 7 calendar days starting tomorrow, weekends skipped.
* Working hours 09:00–18:00 local time, one slot per hour.
* A slot is dropped if it overlaps any busy interval.
* At most ``MAX_SLOTS`` slots; traversal stops at the cap, so earlier days
  win (first-found, not globally optimal).

When no calendar is configured, or the calendar cannot be reached, a fixed
simulated schedule is offered instead so the conversation can continue.
Those fallbacks are logged and counted as ``Degraded/SimulatedFallback``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from sdr_agent.config import CALENDAR_TIMEZONE
from sdr_agent.errors import UpstreamFailure
from sdr_agent.models import BusyInterval, Slot
from sdr_agent.services.calendar import CalendarProvider
from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

HORIZON_DAYS = 7
WORKDAY_START_HOUR = 9
WORKDAY_END_HOUR = 18
SLOT_MINUTES = 60
MAX_SLOTS = 8

SIMULATED_TIMES_EARLY = ("10:00", "14:00", "16:00")
SIMULATED_TIMES_LATE = ("10:00", "14:00")
SIMULATED_EARLY_DAYS = 3
MAX_SIMULATED_SLOTS = 6


def _local_tz(tz: ZoneInfo | str | None) -> ZoneInfo:
    if isinstance(tz, ZoneInfo):
        return tz
    return ZoneInfo(tz or CALENDAR_TIMEZONE)


def _as_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Naive datetimes are taken to be in *tz*; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def _horizon_days(now: datetime) -> Iterable[tuple[int, date]]:
    """Yield ``(days_ahead, day)`` for the business days in the horizon."""
    today = now.date()
    for days_ahead in range(1, HORIZON_DAYS + 1):
        day = today + timedelta(days=days_ahead)
        if day.weekday() >= 5:  # Saturday, Sunday
            continue
        yield days_ahead, day


def format_display(start: datetime) -> str:
    """``Thu 02 Jan 2025 at 10:00``"""
    return start.strftime("%a %d %b %Y at %H:%M")


def make_slot(start: datetime) -> Slot:
    return Slot(
        date=start.strftime("%Y-%m-%d"),
        time=start.strftime("%H:%M"),
        datetime=start.strftime("%Y-%m-%dT%H:%M:%S"),
        display=format_display(start),
    )


def list_available_slots(
    busy: Iterable[BusyInterval],
    *,
    now: datetime | None = None,
    tz: ZoneInfo | str | None = None,
) -> list[Slot]:
    """Compute up to ``MAX_SLOTS`` free hourly slots around *busy*."""
    zone = _local_tz(tz)
    now = _as_local(now, zone) if now else datetime.now(zone)
    intervals = [(_as_local(b.start, zone), _as_local(b.end, zone)) for b in busy]

    slots: list[Slot] = []
    for _, day in _horizon_days(now):
        for hour in range(WORKDAY_START_HOUR, WORKDAY_END_HOUR):
            slot_start = datetime.combine(day, time(hour), tzinfo=zone)
            slot_end = slot_start + timedelta(minutes=SLOT_MINUTES)
            if any(slot_start < end and slot_end > start for start, end in intervals):
                continue
            slots.append(make_slot(slot_start))
            if len(slots) >= MAX_SLOTS:
                return slots
    return slots


def simulated_slots(
    *,
    now: datetime | None = None,
    tz: ZoneInfo | str | None = None,
) -> list[Slot]:
    """Static schedule used when no calendar is reachable."""
    zone = _local_tz(tz)
    now = _as_local(now, zone) if now else datetime.now(zone)

    slots: list[Slot] = []
    for days_ahead, day in _horizon_days(now):
        times = SIMULATED_TIMES_EARLY if days_ahead <= SIMULATED_EARLY_DAYS else SIMULATED_TIMES_LATE
        for hhmm in times:
            hour, minute = (int(part) for part in hhmm.split(":"))
            slots.append(make_slot(datetime.combine(day, time(hour, minute), tzinfo=zone)))
        if len(slots) >= MAX_SIMULATED_SLOTS:
            break
    return slots[:MAX_SIMULATED_SLOTS]


class AvailabilityResult(BaseModel):
    slots: list[Slot]
    simulated: bool = False
    reason: str | None = None

    def to_tool_result(self) -> dict:
        total = len(self.slots)
        return {
            "success": True,
            "slots": [slot.model_dump() for slot in self.slots],
            "total": total,
            "simulated": self.simulated,
            "message": f"{total} available slots in the next {HORIZON_DAYS} days",
        }


class AvailabilityService:
    """Fetches busy intervals from the calendar and turns them into slots."""

    def __init__(
        self,
        calendar: CalendarProvider | None,
        *,
        tz: ZoneInfo | str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._calendar = calendar
        self._tz = _local_tz(tz)
        self._clock = clock or (lambda: datetime.now(self._tz))

    def fetch_available_slots(self) -> AvailabilityResult:
        now = _as_local(self._clock(), self._tz)

        if self._calendar is None:
            logger.info("No calendar configured; offering simulated slots")
            metrics.record_fallback("calendar", "list_busy", reason="not_configured")
            return AvailabilityResult(
                slots=simulated_slots(now=now, tz=self._tz),
                simulated=True,
                reason="not_configured",
            )

        window_start = datetime.combine(now.date() + timedelta(days=1), time(0), tzinfo=self._tz)
        window_end = window_start + timedelta(days=HORIZON_DAYS)
        try:
            busy = self._calendar.list_busy_intervals(window_start, window_end)
        except UpstreamFailure as exc:
            logger.warning(
                "Calendar unreachable (%s); falling back to simulated slots", exc,
            )
            metrics.record_fallback("calendar", "list_busy", reason=type(exc).__name__)
            return AvailabilityResult(
                slots=simulated_slots(now=now, tz=self._tz),
                simulated=True,
                reason=type(exc).__name__,
            )

        slots = list_available_slots(busy, now=now, tz=self._tz)
        logger.info("Found %d free slots around %d busy intervals", len(slots), len(busy))
        return AvailabilityResult(slots=slots)
