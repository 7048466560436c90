"""Booking: validate a chosen slot, commit it to the calendar, tell the CRM.

A booking never fails because of the calendar being down: the service
substitutes a *simulated* meeting (``simulated=True``) so the conversation
can still confirm, and logs/counts the substitution.  Input errors, on the
other hand, fail fast before any external call.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sdr_agent.config import CALENDAR_TIMEZONE, SIMULATED_MEETING_BASE_URL
from sdr_agent.errors import InvalidInput, SDRAgentError, UpstreamFailure
from sdr_agent.models import BookingRequest, Meeting
from sdr_agent.services.calendar import CalendarProvider
from sdr_agent.services.crm import CRMAdapter
from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

MEETING_MINUTES = 30

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

# RFC 5322-ish pattern; covers the vast majority of real-world emails
# without requiring an external dependency.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def validate_email(email: str | None) -> str | None:
    """Return an error message if *email* looks invalid, else ``None``."""
    if not email or not email.strip():
        return "No email address was provided. Please ask the lead for their email."
    email = email.strip()
    if not _EMAIL_RE.match(email):
        return (
            f'"{email}" does not look like a valid email address. '
            "Please ask the lead to double-check and provide a corrected email."
        )
    return None


class BookingService:
    def __init__(
        self,
        calendar: CalendarProvider | None,
        crm: CRMAdapter | None,
        *,
        tz: ZoneInfo | str | None = None,
        simulated_base_url: str = SIMULATED_MEETING_BASE_URL,
    ):
        self._calendar = calendar
        self._crm = crm
        self._tz = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz or CALENDAR_TIMEZONE)
        self._simulated_base_url = simulated_base_url.rstrip("/")

    def validate(self, request: BookingRequest) -> datetime:
        """Check date, time and email; return the local start datetime.

        Raises:
            InvalidInput: if any of them is malformed.
        """
        if not _DATE_RE.match(request.date or ""):
            raise InvalidInput(f"Invalid date (use YYYY-MM-DD): {request.date}")
        if not _TIME_RE.match(request.time or ""):
            raise InvalidInput(f"Invalid time (use 24-hour HH:MM): {request.time}")
        email_error = validate_email(request.email)
        if email_error:
            raise InvalidInput(email_error)
        try:
            start = datetime.strptime(f"{request.date} {request.time}", "%Y-%m-%d %H:%M")
        except ValueError as exc:
            raise InvalidInput(f"Invalid date: {request.date}") from exc
        return start.replace(tzinfo=self._tz)

    def book_meeting(self, request: BookingRequest) -> Meeting:
        """Book a 30-minute meeting starting at the requested local date/time."""
        start = self.validate(request)
        end = start + timedelta(minutes=MEETING_MINUTES)
        logger.info("Booking %s for %s", start.isoformat(), request.email)

        if self._calendar is None:
            return self._simulated_meeting(request, start, reason="not_configured")

        try:
            meeting = self._calendar.create_event(request, start, end)
        except UpstreamFailure as exc:
            logger.warning(
                "Calendar %s failed to book (%s); returning a simulated meeting",
                self._calendar.name, exc,
            )
            return self._simulated_meeting(request, start, reason=type(exc).__name__)

        self._attach_to_lead(meeting)
        return meeting

    def _simulated_meeting(self, request: BookingRequest, start: datetime, reason: str) -> Meeting:
        metrics.record_fallback("calendar", "create_event", reason=reason)
        meeting_id = f"meeting_{uuid.uuid4().hex[:12]}"
        logger.warning(
            "Simulated meeting %s for %s at %s (reason: %s)",
            meeting_id, request.email, start.isoformat(), reason,
        )
        return Meeting(
            meeting_id=meeting_id,
            meeting_link=f"{self._simulated_base_url}/{meeting_id}",
            meeting_datetime=start.isoformat(),
            lead_record_id=request.lead_record_id,
            simulated=True,
        )

    def _attach_to_lead(self, meeting: Meeting) -> None:
        """Best effort: a CRM failure here never undoes the booking."""
        if not meeting.lead_record_id or self._crm is None:
            logger.info("Meeting %s has no lead record; CRM not updated", meeting.meeting_id)
            return
        try:
            result = self._crm.attach_meeting(
                meeting.lead_record_id,
                meeting.meeting_link,
                datetime.fromisoformat(meeting.meeting_datetime),
            )
            meeting.crm_updated = bool(result.updated_fields)
        except SDRAgentError as exc:
            logger.warning(
                "Could not attach meeting %s to record %s: %s",
                meeting.meeting_id, meeting.lead_record_id, exc,
            )
        except Exception:
            # The event already exists on the calendar; report it without the CRM link
            logger.exception(
                "Unexpected error attaching meeting %s to record %s",
                meeting.meeting_id, meeting.lead_record_id,
            )
