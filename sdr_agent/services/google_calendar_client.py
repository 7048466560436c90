"""Google Calendar provider: free/busy lookups and Meet-enabled event creation.

Credentials are a stored OAuth refresh token (client id + secret + refresh
token).  How that token was obtained is out of scope; ``google-auth``
refreshes the access token transparently.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from sdr_agent.config import (
    CALENDAR_TIMEZONE,
    GOOGLE_CALENDAR_ID,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REFRESH_TOKEN,
    REQUEST_TIMEOUT_SECONDS,
)
from sdr_agent.errors import UpstreamFailure, UpstreamTimeout
from sdr_agent.models import BookingRequest, BusyInterval, Meeting
from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


class GoogleCalendarError(UpstreamFailure):
    """Raised when a Google Calendar call fails."""


class GoogleCalendarTimeout(GoogleCalendarError, UpstreamTimeout):
    """Raised when Google Calendar does not answer in time."""


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def build_calendar_service(
    client_id: str,
    client_secret: str,
    refresh_token: str,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
):
    """Build a Calendar v3 service whose HTTP calls are bounded by *timeout*."""
    credentials = Credentials(
        token=None,
        refresh_token=refresh_token,
        client_id=client_id,
        client_secret=client_secret,
        token_uri=TOKEN_URI,
        scopes=CALENDAR_SCOPES,
    )
    http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
    return build("calendar", "v3", http=http, cache_discovery=False)


class GoogleCalendarClient:
    """Calendar provider backed by the Google Calendar v3 API."""

    name = "google"

    def __init__(
        self,
        service: Any,
        *,
        calendar_id: str | None = None,
        timezone: str | None = None,
    ):
        self._service = service
        self._calendar_id = calendar_id or GOOGLE_CALENDAR_ID
        self._timezone = timezone or CALENDAR_TIMEZONE

    def _execute(self, operation: str, request) -> dict[str, Any]:
        """Run a googleapiclient request, translating errors to UpstreamFailure."""
        t0 = time.perf_counter()
        try:
            result = request.execute()
        except HttpError as exc:
            status = getattr(exc.resp, "status", None)
            metrics.record_failure("google_calendar", operation, error_type="HttpError")
            raise GoogleCalendarError(
                f"Google Calendar {operation} failed: {exc}",
                status_code=int(status) if status else None,
            ) from exc
        except TimeoutError as exc:
            metrics.record_failure("google_calendar", operation, error_type="TimeoutError")
            raise GoogleCalendarTimeout(f"Google Calendar {operation} timed out") from exc
        except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
            metrics.record_failure("google_calendar", operation, error_type=type(exc).__name__)
            raise GoogleCalendarError(f"Google Calendar {operation} failed: {exc}") from exc

        metrics.record_success(
            "google_calendar", operation, latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return result

    # ── CalendarProvider ─────────────────────────────────────────────

    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        body = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "timeZone": self._timezone,
            "items": [{"id": self._calendar_id}],
        }
        result = self._execute("freebusy", self._service.freebusy().query(body=body))
        calendar = result.get("calendars", {}).get(self._calendar_id, {})
        if calendar.get("errors"):
            raise GoogleCalendarError(
                f"Google Calendar free/busy error: {calendar['errors'][0].get('reason')}"
            )
        return [
            BusyInterval(start=_parse_iso(b["start"]), end=_parse_iso(b["end"]))
            for b in calendar.get("busy", [])
        ]

    def create_event(self, request: BookingRequest, start: datetime, end: datetime) -> Meeting:
        """Insert the event with a Google Meet link and email the invite."""
        event = {
            "summary": f"Sales meeting - {request.name}",
            "description": (
                "Meeting booked by the SDR agent\n\n"
                f"Lead: {request.name}\n"
                f"Email: {request.email}\n"
                f"Company: {request.company or 'Not provided'}\n"
                f"Need: {request.need or 'Not provided'}"
            ),
            "start": {"dateTime": start.isoformat(), "timeZone": self._timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": self._timezone},
            "attendees": [{"email": request.email}],
            "conferenceData": {
                "createRequest": {
                    "requestId": f"meet-{uuid.uuid4().hex}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                },
            },
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 30},
                ],
            },
        }
        created = self._execute(
            "events.insert",
            self._service.events().insert(
                calendarId=self._calendar_id,
                body=event,
                conferenceDataVersion=1,
                sendUpdates="all",
            ),
        )
        logger.info("Google Calendar event %s created for %s", created.get("id"), request.email)
        return Meeting(
            meeting_id=created["id"],
            meeting_link=created.get("hangoutLink") or created.get("htmlLink", ""),
            meeting_datetime=start.isoformat(),
            lead_record_id=request.lead_record_id,
            event_url=created.get("htmlLink"),
            provider=self.name,
        )


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: GoogleCalendarClient | None = None
_client_lock = threading.Lock()


def get_google_calendar_client() -> GoogleCalendarClient | None:
    """Return the shared GoogleCalendarClient (``None`` if credentials are missing)."""
    global _client
    if not (GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET and GOOGLE_REFRESH_TOKEN):
        logger.warning(
            "CALENDAR_PROVIDER=google but GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET / "
            "GOOGLE_REFRESH_TOKEN are not all set"
        )
        return None
    if _client is None:
        with _client_lock:
            if _client is None:
                service = build_calendar_service(
                    GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, GOOGLE_REFRESH_TOKEN,
                )
                _client = GoogleCalendarClient(service)
                logger.info("Google Calendar ready (calendar: %s)", GOOGLE_CALENDAR_ID)
    return _client
