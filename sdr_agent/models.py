"""Pydantic domain models for leads, slots and meetings."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


def normalize_email(email: str) -> str:
    """Dedup key for a lead: trimmed and case-folded."""
    return email.strip().lower()


class Lead(BaseModel):
    """A prospective customer's qualification record."""

    name: str
    email: str
    company: str | None = None
    need: str | None = None
    interest_confirmed: bool | None = None

    @property
    def normalized_email(self) -> str:
        return normalize_email(self.email)


class UpsertAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    NO_CHANGES = "no_changes"


class UpsertResult(BaseModel):
    """Outcome of :meth:`CRMAdapter.upsert_lead`."""

    action: UpsertAction
    record_id: str
    timestamp: str
    simulated: bool = False


class AttachResult(BaseModel):
    """Outcome of :meth:`CRMAdapter.attach_meeting` (always best-effort)."""

    record_id: str
    updated_fields: list[str] = Field(default_factory=list)
    message: str


class CRMRecord(BaseModel):
    """A CRM record as seen by the lookup: id plus ``field_id -> value``."""

    id: str
    title: str | None = None
    values: dict[str, str | None] = Field(default_factory=dict)


class BusyInterval(BaseModel):
    """A half-open ``[start, end)`` span during which the calendar is taken."""

    start: datetime
    end: datetime


class Slot(BaseModel):
    """A candidate meeting time, computed on demand and never persisted."""

    date: str
    time: str
    datetime: str
    display: str


class BookingRequest(BaseModel):
    """Everything needed to commit a slot to the calendar."""

    date: str
    time: str
    name: str
    email: str
    company: str | None = None
    need: str | None = None
    lead_record_id: str | None = None


class Meeting(BaseModel):
    """A booked (or simulated) meeting."""

    meeting_id: str
    meeting_link: str
    meeting_datetime: str
    lead_record_id: str | None = None
    event_url: str | None = None
    provider: str = "simulated"
    simulated: bool = False
    crm_updated: bool = False
