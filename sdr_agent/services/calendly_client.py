"""HTTP client for the Calendly API v2 with retry logic and timeout handling.

Calendly docs: https://developer.calendly.com/api-docs/
All requests require a Personal Access Token passed as a Bearer token.

Used as the "scheduling-link" calendar provider: busy intervals are the
owner's active scheduled events, and bookings go through the Scheduling
API (``POST /invitees``) on a single event type.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import UTC, datetime
from typing import Any

import httpx

from sdr_agent.config import (
    CALENDAR_TIMEZONE,
    CALENDLY_API_TOKEN,
    CALENDLY_BASE_URL,
    CALENDLY_EVENT_TYPE_URI,
    REQUEST_TIMEOUT_SECONDS,
)
from sdr_agent.errors import UpstreamFailure, UpstreamTimeout
from sdr_agent.models import BookingRequest, BusyInterval, Meeting
from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
MAX_PAGES = 20


class CalendlyAPIError(UpstreamFailure):
    """Raised when a Calendly API call fails after all retries."""


class CalendlyTimeout(CalendlyAPIError, UpstreamTimeout):
    """Raised when Calendly keeps timing out after all retries."""


def _to_utc_iso(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000000Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class CalendlyClient:
    """Thin wrapper around the Calendly REST API v2 with automatic retries."""

    name = "calendly"

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        *,
        event_type_uri: str | None = None,
        timezone: str | None = None,
    ):
        self._token = token or CALENDLY_API_TOKEN
        self._base_url = base_url or CALENDLY_BASE_URL
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._timezone = timezone or CALENDAR_TIMEZONE
        # Fetched lazily once; neither changes while the process runs
        self._user_uri: str | None = None
        self._event_type_uri: str | None = event_type_uri or CALENDLY_EVENT_TYPE_URI
        self._locations: list[dict[str, Any]] | None = None

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = f"{method} {path.split('?')[0]}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                )
                if response.status_code >= 500:
                    raise CalendlyAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise CalendlyAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                try:
                    payload = response.json()
                except ValueError as exc:
                    raise CalendlyAPIError(
                        f"Calendly returned a non-JSON body for {operation}",
                        status_code=response.status_code,
                    ) from exc
                if not isinstance(payload, dict):
                    raise CalendlyAPIError(f"Unexpected {operation} response: {payload!r}")
                metrics.record_success(
                    "calendly", operation, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                return payload

            except httpx.TransportError as exc:
                last_error = exc
                metrics.record_failure("calendly", operation, error_type=type(exc).__name__)
                logger.warning(
                    "Calendly API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except CalendlyAPIError as exc:
                metrics.record_failure("calendly", operation, error_type=type(exc).__name__)
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Calendly API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        message = f"Calendly API request failed after {MAX_RETRIES} retries: {last_error}"
        if isinstance(last_error, httpx.TimeoutException):
            raise CalendlyTimeout(message)
        raise CalendlyAPIError(message)

    def _path(self, uri: str) -> str:
        return uri.replace(self._base_url, "")

    # ── Lookups ──────────────────────────────────────────────────────

    def get_current_user_uri(self) -> str:
        """Return the URI of the authenticated Calendly user (cached)."""
        if self._user_uri is None:
            data = self._request("GET", "/users/me")
            try:
                self._user_uri = data["resource"]["uri"]
            except (KeyError, TypeError) as exc:
                raise CalendlyAPIError(f"Unexpected /users/me response: {data!r}") from exc
        return self._user_uri

    def get_event_types(self) -> list[dict[str, Any]]:
        """List all active event types for the current user."""
        user_uri = self.get_current_user_uri()
        data = self._request(
            "GET", "/event_types", params={"user": user_uri, "active": "true"},
        )
        return data.get("collection", [])

    def get_event_type_uri(self) -> str:
        """The configured event type, or the first active one."""
        if self._event_type_uri is None:
            event_types = self.get_event_types()
            if not event_types:
                raise CalendlyAPIError(
                    "No active event types found. Please check the Calendly configuration."
                )
            try:
                self._event_type_uri = event_types[0]["uri"]
            except (KeyError, TypeError) as exc:
                raise CalendlyAPIError(f"Unexpected event type: {event_types[0]!r}") from exc
        return self._event_type_uri

    def list_scheduled_events(
        self,
        *,
        min_start_time: str | None = None,
        max_start_time: str | None = None,
        status: str = "active",
    ) -> list[dict[str, Any]]:
        """List scheduled events for the current user, following pagination."""
        user_uri = self.get_current_user_uri()
        params: dict[str, Any] = {"user": user_uri, "status": status, "count": 100}
        if min_start_time:
            params["min_start_time"] = min_start_time
        if max_start_time:
            params["max_start_time"] = max_start_time

        events: list[dict[str, Any]] = []
        path = "/scheduled_events"
        for _ in range(MAX_PAGES):
            data = self._request("GET", path, params=params)
            events.extend(data.get("collection", []))
            next_page = (data.get("pagination") or {}).get("next_page")
            if not next_page:
                break
            # next_page is a full URL that already carries the query string
            path, params = self._path(next_page), None
        return events

    def get_scheduled_event(self, event_uri: str) -> dict[str, Any]:
        data = self._request("GET", self._path(event_uri))
        return data.get("resource", {})

    def create_invitee(
        self,
        event_type_uri: str,
        start_time: str,
        *,
        name: str,
        email: str,
        timezone: str,
    ) -> dict[str, Any]:
        """Create a booking by adding an invitee to an event type slot.

        See: https://developer.calendly.com/schedule-events-with-ai-agents
        """
        if self._locations is None:
            et_data = self._request("GET", self._path(event_type_uri))
            self._locations = et_data.get("resource", {}).get("locations") or []

        payload: dict[str, Any] = {
            "event_type": event_type_uri,
            "start_time": start_time,
            "invitee": {
                "name": name,
                "email": email,
                "timezone": timezone,
            },
        }
        if self._locations:
            loc = self._locations[0]
            if not isinstance(loc, dict) or "kind" not in loc:
                raise CalendlyAPIError(f"Unexpected event type location: {loc!r}")
            payload["location"] = {
                "kind": loc["kind"],
                "location": loc.get("location", ""),
            }

        data = self._request("POST", "/invitees", json_body=payload)
        resource = data.get("resource") if isinstance(data, dict) else None
        if not isinstance(resource, dict):
            raise CalendlyAPIError(f"Unexpected invitee response: {data!r}")
        return resource

    # ── CalendarProvider ─────────────────────────────────────────────

    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        events = self.list_scheduled_events(
            min_start_time=_to_utc_iso(start), max_start_time=_to_utc_iso(end),
        )
        try:
            return [
                BusyInterval(start=_parse_iso(e["start_time"]), end=_parse_iso(e["end_time"]))
                for e in events
                if e.get("start_time") and e.get("end_time")
            ]
        except (AttributeError, TypeError, ValueError) as exc:
            raise CalendlyAPIError(f"Unexpected scheduled event payload: {exc}") from exc

    def create_event(self, request: BookingRequest, start: datetime, end: datetime) -> Meeting:
        """Book *start* on the event type; Calendly sends the invitation email.

        The event length comes from the event type itself, not from *end*.
        """
        invitee = self.create_invitee(
            self.get_event_type_uri(),
            _to_utc_iso(start),
            name=request.name,
            email=request.email,
            timezone=self._timezone,
        )
        event_uri = invitee.get("event", "")
        event: dict[str, Any] = {}
        if event_uri:
            try:
                event = self.get_scheduled_event(event_uri)
            except CalendlyAPIError as exc:
                logger.warning("Booked %s but could not read its location: %s", event_uri, exc)

        location = event.get("location") if isinstance(event, dict) else None
        if not isinstance(location, dict):
            location = {}
        link = (
            location.get("join_url")
            or location.get("location")
            or invitee.get("reschedule_url")
            or event_uri
        )
        logger.info("Calendly event %s booked for %s", event_uri, request.email)
        return Meeting(
            meeting_id=event_uri.rstrip("/").split("/")[-1] or invitee.get("uri", ""),
            meeting_link=link,
            meeting_datetime=start.isoformat(),
            lead_record_id=request.lead_record_id,
            event_url=event_uri or None,
            provider=self.name,
        )


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: CalendlyClient | None = None
_client_lock = threading.Lock()


def get_calendly_client() -> CalendlyClient | None:
    """Return a module-level CalendlyClient singleton (``None`` if unconfigured).

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if not CALENDLY_API_TOKEN:
        logger.warning("CALENDAR_PROVIDER=calendly but CALENDLY_API_TOKEN is not set")
        return None
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = CalendlyClient()
    return _client
