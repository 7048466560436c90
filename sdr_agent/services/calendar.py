"""Calendar provider contract and static provider selection.

Two interchangeable implementations exist:

* ``google``: :class:`GoogleCalendarClient` (free/busy + event insert with Meet)
* ``calendly``: :class:`CalendlyClient` (scheduled events + ``POST /invitees``)

The provider is chosen once from ``CALENDAR_PROVIDER``; leaving it unset
runs availability and booking in simulated mode.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from sdr_agent.config import CALENDAR_PROVIDER
from sdr_agent.models import BookingRequest, BusyInterval, Meeting

logger = logging.getLogger(__name__)


class CalendarProvider(Protocol):
    """What the availability and booking services need from a calendar.

    Implementations raise :class:`~sdr_agent.errors.UpstreamFailure`
    (or a subclass) on any transport or API error.
    """

    name: str

    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]: ...

    def create_event(
        self, request: BookingRequest, start: datetime, end: datetime,
    ) -> Meeting: ...


def get_calendar_provider(name: str | None = None) -> CalendarProvider | None:
    """Return the configured provider, or ``None`` for simulated mode."""
    provider = (CALENDAR_PROVIDER if name is None else name).strip().lower()
    if not provider:
        logger.info("CALENDAR_PROVIDER not set; calendar runs in simulated mode")
        return None

    if provider == "google":
        from sdr_agent.services.google_calendar_client import get_google_calendar_client

        return get_google_calendar_client()
    if provider == "calendly":
        from sdr_agent.services.calendly_client import get_calendly_client

        return get_calendly_client()

    raise ValueError(
        f"Unsupported CALENDAR_PROVIDER {provider!r} (expected 'google' or 'calendly')"
    )
