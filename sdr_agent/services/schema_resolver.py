"""Resolve logical lead fields onto the CRM's dynamically configured fields.

The CRM pipe is configured by humans, so field ids are unknown until
runtime and labels vary ("E-mail", "Nome completo", "Company name",
"Link da reunião" …).  The resolver fetches the pipe's start-form fields
once, normalizes each label, and binds every logical field whose trigger
substrings appear in the normalized label.

Precedence
----------
A label can satisfy several rules (``"nome_da_empresa"`` matches both
``name`` and ``company``), and several labels can satisfy the same rule.
Bindings are applied in the order the CRM returns its fields and the
**last match wins**.  That ordering comes from the CRM, not from us; use
``GET /api/crm/field-mapping`` or ``sdr-agent-discover`` to inspect the
result when configuring a new pipe.
"""

from __future__ import annotations

import logging
import re
import threading
import unicodedata

from pydantic import BaseModel, Field

from sdr_agent.services.pipefy_client import PipefyClient, get_pipefy_client

logger = logging.getLogger(__name__)

LEAD_FIELDS = (
    "name",
    "email",
    "company",
    "need",
    "interest_confirmed",
    "meeting_link",
    "meeting_date",
)

# logical field -> groups of alternative triggers; every group must match
FIELD_RULES: tuple[tuple[str, tuple[tuple[str, ...], ...]], ...] = (
    ("name", (("nome", "name"),)),
    ("email", (("email", "e_mail"),)),
    ("company", (("empresa", "company"),)),
    ("need", (("necessidade", "need"),)),
    ("interest_confirmed", (("interesse", "interest"),)),
    ("meeting_link", (("link",), ("reuniao", "meeting"))),
    ("meeting_date", (("data", "date"), ("reuniao", "meeting"))),
)

_WHITESPACE_RE = re.compile(r"\s+")
_INVALID_CHARS_RE = re.compile(r"[^a-z0-9_]")


class ExternalField(BaseModel):
    id: str
    label: str
    type: str = ""


class FieldMapping(BaseModel):
    """Resolved mapping, keyed both by normalized label and by logical field."""

    by_label: dict[str, ExternalField] = Field(default_factory=dict)
    logical: dict[str, ExternalField] = Field(default_factory=dict)

    def get(self, logical_field: str) -> ExternalField | None:
        return self.logical.get(logical_field)

    def field_id(self, logical_field: str) -> str | None:
        field = self.logical.get(logical_field)
        return field.id if field else None


def normalize_label(label: str) -> str:
    """``"Endereço de E-mail"`` -> ``"endereco_de_email"``."""
    decomposed = unicodedata.normalize("NFD", label.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    underscored = _WHITESPACE_RE.sub("_", stripped)
    return _INVALID_CHARS_RE.sub("", underscored)


def _matches(normalized: str, groups: tuple[tuple[str, ...], ...]) -> bool:
    return all(any(trigger in normalized for trigger in group) for group in groups)


def build_field_mapping(fields: list[dict]) -> FieldMapping:
    """Build a :class:`FieldMapping` from raw CRM field dicts, in order."""
    mapping = FieldMapping()
    for raw in fields:
        field = ExternalField(
            id=str(raw["id"]), label=raw.get("label") or "", type=raw.get("type") or "",
        )
        normalized = normalize_label(field.label)
        mapping.by_label[normalized] = field

        for logical_field, groups in FIELD_RULES:
            if _matches(normalized, groups):
                previous = mapping.logical.get(logical_field)
                if previous is not None and previous.id != field.id:
                    logger.debug(
                        "Field mapping: %s rebound from %r to %r",
                        logical_field, previous.label, field.label,
                    )
                mapping.logical[logical_field] = field
    return mapping


class SchemaResolver:
    """Lazily resolves and caches the CRM field mapping for the process.

    ``resolve()`` returns ``None`` when no CRM client is configured, which
    callers treat as simulated mode rather than as an error.  Fetch
    failures propagate as ``UpstreamFailure`` and leave the cache empty so
    the next call retries.
    """

    def __init__(self, client: PipefyClient | None):
        self._client = client
        self._mapping: FieldMapping | None = None
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return self._client is not None

    def resolve(self) -> FieldMapping | None:
        if self._client is None:
            logger.debug("Schema resolver: no CRM configured (simulated mode)")
            return None

        mapping = self._mapping
        if mapping is not None:
            return mapping

        with self._lock:
            if self._mapping is None:
                fields = self._client.get_start_form_fields()
                self._mapping = build_field_mapping(fields)
                logger.info(
                    "CRM fields mapped: %s (logical: %s)",
                    sorted(self._mapping.by_label),
                    sorted(self._mapping.logical),
                )
                missing = [f for f in LEAD_FIELDS if f not in self._mapping.logical]
                if missing:
                    logger.warning("CRM pipe has no field for: %s", ", ".join(missing))
            return self._mapping

    def invalidate(self) -> None:
        """Drop the cached mapping (e.g. after the pipe form was edited)."""
        with self._lock:
            self._mapping = None
        logger.info("CRM field mapping cache cleared")


# ── Module-level singleton (thread-safe) ────────────────────────────
_resolver: SchemaResolver | None = None
_resolver_lock = threading.Lock()


def get_schema_resolver() -> SchemaResolver:
    """Return the process-wide SchemaResolver (double-checked locking)."""
    global _resolver
    if _resolver is None:
        with _resolver_lock:
            if _resolver is None:
                _resolver = SchemaResolver(get_pipefy_client())
    return _resolver
