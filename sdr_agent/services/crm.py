"""CRM adapter: idempotent lead upsert keyed by email, plus meeting attach.

Works in two modes:

* **Pipefy**: field ids come from :class:`SchemaResolver`; lookups page
  through every card of the pipe.
* **Simulated**: no credentials configured.  Leads are remembered
  in-process so repeated emails take the ``updated`` path, and the
  well-known ``SIMULATED_DUPLICATE_EMAIL`` always does.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from sdr_agent.config import CRM_FALSE_LABEL, CRM_TRUE_LABEL
from sdr_agent.errors import SchemaUnavailable
from sdr_agent.models import (
    AttachResult,
    CRMRecord,
    Lead,
    UpsertAction,
    UpsertResult,
    normalize_email,
)
from sdr_agent.services.pipefy_client import PipefyClient, get_pipefy_client
from sdr_agent.services.schema_resolver import (
    ExternalField,
    FieldMapping,
    SchemaResolver,
    get_schema_resolver,
)

logger = logging.getLogger(__name__)

SIMULATED_DUPLICATE_EMAIL = "duplicate@example.com"
SIMULATED_DUPLICATE_RECORD_ID = "sim_card_12345"

_CHECKLIST_TYPES = {"checklist_vertical", "checklist_horizontal"}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class CRMAdapter:
    def __init__(
        self,
        client: PipefyClient | None,
        resolver: SchemaResolver,
        *,
        true_label: str = CRM_TRUE_LABEL,
        false_label: str = CRM_FALSE_LABEL,
    ):
        self._client = client
        self._resolver = resolver
        self._true_label = true_label
        self._false_label = false_label
        # simulated mode only: normalized email -> record id
        self._simulated_records: dict[str, str] = {
            SIMULATED_DUPLICATE_EMAIL: SIMULATED_DUPLICATE_RECORD_ID,
        }
        self._simulated_lock = threading.Lock()

    @property
    def simulated(self) -> bool:
        return self._client is None

    # ── Field preparation ────────────────────────────────────────────

    def _format_value(self, field: ExternalField, value: Any) -> Any:
        if isinstance(value, bool):
            value = self._true_label if value else self._false_label
        elif isinstance(value, datetime):
            value = value.date().isoformat() if field.type == "date" else value.isoformat()
        if field.type in _CHECKLIST_TYPES:
            return [value]
        return value

    def _prepare_fields(self, lead: Lead, mapping: FieldMapping) -> list[dict[str, Any]]:
        """Return ``field_id``/``field_value`` pairs for supplied, mapped fields."""
        values: dict[str, Any] = {
            "name": lead.name,
            "email": lead.email.strip(),
            "company": lead.company,
            "need": lead.need,
            "interest_confirmed": lead.interest_confirmed,
        }
        fields = []
        for logical_field, value in values.items():
            field = mapping.get(logical_field)
            if field is None or value is None or value == "":
                continue
            fields.append(
                {"field_id": field.id, "field_value": self._format_value(field, value)}
            )
        return fields

    def _require_mapping(self) -> FieldMapping:
        mapping = self._resolver.resolve()
        if mapping is None:
            raise SchemaUnavailable("CRM field mapping could not be loaded")
        if mapping.get("email") is None:
            raise SchemaUnavailable("CRM pipe has no email field; cannot deduplicate leads")
        return mapping

    # ── Lookup ───────────────────────────────────────────────────────

    def find_record_by_email(self, email: str) -> CRMRecord | None:
        """Find the record whose mapped email equals *email* (trimmed, case-insensitive)."""
        key = normalize_email(email)
        if self._client is None:
            with self._simulated_lock:
                record_id = self._simulated_records.get(key)
            return CRMRecord(id=record_id, values={}) if record_id else None

        email_field_id = self._require_mapping().field_id("email")
        for card in self._client.iter_cards():
            values = {
                f["field"]["id"]: f.get("value")
                for f in card.get("fields") or []
                if f.get("field")
            }
            stored = values.get(email_field_id)
            if stored and normalize_email(stored) == key:
                logger.debug("CRM record %s matches %s", card["id"], key)
                return CRMRecord(id=str(card["id"]), title=card.get("title"), values=values)
        return None

    # ── Upsert ───────────────────────────────────────────────────────

    def upsert_lead(self, lead: Lead) -> UpsertResult:
        """Create the lead, or update the existing record with the same email."""
        logger.info("Upserting lead %s (company=%s)", lead.normalized_email, lead.company)
        if self._client is None:
            return self._simulated_upsert(lead)

        mapping = self._require_mapping()
        existing = self.find_record_by_email(lead.email)

        if existing is not None:
            changed = [
                f for f in self._prepare_fields(lead, mapping)
                if not _same_value(existing.values.get(f["field_id"]), f["field_value"])
            ]
            if not changed:
                logger.info("Lead %s unchanged (record %s)", lead.normalized_email, existing.id)
                return UpsertResult(
                    action=UpsertAction.NO_CHANGES, record_id=existing.id, timestamp=_now_iso(),
                )
            for f in changed:
                self._client.update_card_field(existing.id, f["field_id"], f["field_value"])
            logger.info(
                "Lead %s updated (record %s, %d fields)",
                lead.normalized_email, existing.id, len(changed),
            )
            return UpsertResult(
                action=UpsertAction.UPDATED, record_id=existing.id, timestamp=_now_iso(),
            )

        card = self._client.create_card(self._prepare_fields(lead, mapping))
        logger.info("Lead %s created (record %s)", lead.normalized_email, card["id"])
        return UpsertResult(
            action=UpsertAction.CREATED,
            record_id=str(card["id"]),
            timestamp=card.get("created_at") or _now_iso(),
        )

    def _simulated_upsert(self, lead: Lead) -> UpsertResult:
        key = lead.normalized_email
        with self._simulated_lock:
            record_id = self._simulated_records.get(key)
            if record_id is None:
                record_id = f"sim_card_{uuid.uuid4().hex[:12]}"
                self._simulated_records[key] = record_id
                action = UpsertAction.CREATED
            else:
                action = UpsertAction.UPDATED
        logger.info("Lead %s %s in simulated CRM (record %s)", key, action.value, record_id)
        return UpsertResult(
            action=action, record_id=record_id, timestamp=_now_iso(), simulated=True,
        )

    # ── Meeting attach ───────────────────────────────────────────────

    def attach_meeting(self, record_id: str, link: str, when: datetime) -> AttachResult:
        """Write meeting link/date onto the record, when those fields exist.

        Never fails just because the pipe has no meeting fields.
        """
        if self._client is None:
            return AttachResult(
                record_id=record_id,
                updated_fields=["meeting_link", "meeting_date"],
                message="Meeting attached to simulated CRM record",
            )

        mapping = self._resolver.resolve()
        updates: list[tuple[str, ExternalField, Any]] = []
        if mapping is not None:
            for logical_field, value in (("meeting_link", link), ("meeting_date", when)):
                field = mapping.get(logical_field)
                if field is not None:
                    updates.append((logical_field, field, value))

        if not updates:
            logger.warning("CRM pipe has no meeting fields; record %s left as is", record_id)
            return AttachResult(record_id=record_id, message="No meeting fields configured")

        for _, field, value in updates:
            self._client.update_card_field(record_id, field.id, self._format_value(field, value))
        logger.info("Meeting %s attached to record %s", link, record_id)
        return AttachResult(
            record_id=record_id,
            updated_fields=[name for name, _, _ in updates],
            message="Record updated with meeting details",
        )


def _same_value(stored: Any, new: Any) -> bool:
    """Loose comparison between a stored CRM value and an outgoing one."""
    if stored is None:
        return False
    if isinstance(new, list):
        new = new[0] if len(new) == 1 else new
        stored_text = str(stored).strip()
        if stored_text.startswith("[") and stored_text.endswith("]"):
            stored = stored_text[1:-1].strip().strip('"')
    return str(stored).strip() == str(new).strip()


def get_crm_adapter() -> CRMAdapter:
    """Build a CRMAdapter wired to the configured Pipefy pipe (if any)."""
    return CRMAdapter(get_pipefy_client(), get_schema_resolver())
