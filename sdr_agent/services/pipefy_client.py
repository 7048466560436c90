"""GraphQL client for the Pipefy API with retry logic and timeout handling.

Pipefy docs: https://developers.pipefy.com/graphql
All requests go to a single GraphQL endpoint with a Bearer token.  A
"pipe" is the CRM collection leads live in; each lead is a "card".
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from typing import Any

import httpx

from sdr_agent.config import (
    PIPEFY_API_TOKEN,
    PIPEFY_API_URL,
    PIPEFY_PIPE_ID,
    REQUEST_TIMEOUT_SECONDS,
)
from sdr_agent.errors import UpstreamFailure, UpstreamTimeout
from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
CARDS_PAGE_SIZE = 50

# ── Queries ─────────────────────────────────────────────────────────
PIPE_FIELDS_QUERY = """
query GetPipeFields($pipeId: ID!) {
  pipe(id: $pipeId) {
    id
    name
    start_form_fields { id label type }
  }
}
"""

CARDS_QUERY = """
query SearchCards($pipeId: ID!, $first: Int!, $after: String) {
  cards(pipe_id: $pipeId, first: $first, after: $after) {
    pageInfo { hasNextPage endCursor }
    edges {
      node {
        id
        title
        fields { name value field { id } }
      }
    }
  }
}
"""

CREATE_CARD_MUTATION = """
mutation CreateCard($pipeId: ID!, $fields: [FieldValueInput]) {
  createCard(input: { pipe_id: $pipeId, fields_attributes: $fields }) {
    card { id title created_at }
  }
}
"""

UPDATE_CARD_FIELD_MUTATION = """
mutation UpdateCardField($cardId: ID!, $fieldId: ID!, $value: [UndefinedInput]) {
  updateCardField(input: { card_id: $cardId, field_id: $fieldId, new_value: $value }) {
    success
    card { id updated_at }
  }
}
"""


class PipefyAPIError(UpstreamFailure):
    """Raised when a Pipefy call fails after all retries or returns errors."""


class PipefyTimeout(PipefyAPIError, UpstreamTimeout):
    """Raised when Pipefy keeps timing out after all retries."""


class PipefyClient:
    """Thin wrapper around the Pipefy GraphQL endpoint, scoped to one pipe."""

    def __init__(
        self,
        token: str | None = None,
        pipe_id: str | None = None,
        api_url: str | None = None,
    ):
        self._token = token or PIPEFY_API_TOKEN
        self.pipe_id = pipe_id or PIPEFY_PIPE_ID
        self._client = httpx.Client(
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._api_url = api_url or PIPEFY_API_URL

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(self, operation: str, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """POST a GraphQL document with exponential-backoff retries.

        Transport errors and 5xx responses are retried.  4xx responses,
        non-JSON bodies and GraphQL-level ``errors`` are not.
        """
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.post(
                    self._api_url, json={"query": query, "variables": variables},
                )
                if response.status_code >= 500:
                    raise PipefyAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise PipefyAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                try:
                    payload = response.json()
                except ValueError as exc:
                    raise PipefyAPIError(f"Pipefy returned a non-JSON body for {operation}") from exc
                if not isinstance(payload, dict):
                    raise PipefyAPIError(f"Unexpected {operation} response: {payload!r}")
                if payload.get("errors"):
                    message = payload["errors"][0].get("message") or "GraphQL error"
                    raise PipefyAPIError(f"GraphQL error in {operation}: {message}")

                metrics.record_success(
                    "pipefy", operation, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                return payload.get("data") or {}

            except httpx.TransportError as exc:
                last_error = exc
                metrics.record_failure("pipefy", operation, error_type=type(exc).__name__)
                logger.warning(
                    "Pipefy %s attempt %d/%d failed (%s). Retrying in %.1fs…",
                    operation,
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except PipefyAPIError as exc:
                metrics.record_failure("pipefy", operation, error_type=type(exc).__name__)
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Pipefy server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        message = f"Pipefy {operation} failed after {MAX_RETRIES} retries: {last_error}"
        if isinstance(last_error, httpx.TimeoutException):
            raise PipefyTimeout(message)
        raise PipefyAPIError(message)

    # ── Public API methods ───────────────────────────────────────────

    def get_start_form_fields(self) -> list[dict[str, Any]]:
        """Return the pipe's start-form fields (``id``, ``label``, ``type``)."""
        data = self._request("GetPipeFields", PIPE_FIELDS_QUERY, {"pipeId": self.pipe_id})
        pipe = data.get("pipe") or {}
        fields = pipe.get("start_form_fields") or []
        if not all(isinstance(f, dict) and f.get("id") for f in fields):
            raise PipefyAPIError("Unexpected GetPipeFields response: field without an id")
        return fields

    def iter_cards(self, page_size: int = CARDS_PAGE_SIZE) -> Iterator[dict[str, Any]]:
        """Yield every card in the pipe, following the cursor to the last page."""
        cursor: str | None = None
        while True:
            data = self._request(
                "SearchCards",
                CARDS_QUERY,
                {"pipeId": self.pipe_id, "first": page_size, "after": cursor},
            )
            cards = data.get("cards") or {}
            for edge in cards.get("edges") or []:
                node = edge.get("node") if isinstance(edge, dict) else None
                if not isinstance(node, dict) or not node.get("id"):
                    raise PipefyAPIError(f"Unexpected SearchCards edge: {edge!r}")
                yield node

            page_info = cards.get("pageInfo") or {}
            if not page_info.get("hasNextPage") or not page_info.get("endCursor"):
                return
            cursor = page_info["endCursor"]

    def create_card(self, fields: list[dict[str, Any]]) -> dict[str, Any]:
        """Create a card from ``[{"field_id": ..., "field_value": ...}]``."""
        data = self._request(
            "CreateCard",
            CREATE_CARD_MUTATION,
            {"pipeId": self.pipe_id, "fields": fields},
        )
        card = (data.get("createCard") or {}).get("card")
        if not isinstance(card, dict) or not card.get("id"):
            raise PipefyAPIError(f"Unexpected CreateCard response: {data!r}")
        return card

    def update_card_field(self, card_id: str, field_id: str, value: Any) -> dict[str, Any]:
        """Overwrite a single field of an existing card."""
        new_value = value if isinstance(value, list) else [value]
        data = self._request(
            "UpdateCardField",
            UPDATE_CARD_FIELD_MUTATION,
            {"cardId": card_id, "fieldId": field_id, "value": new_value},
        )
        result = data.get("updateCardField") or {}
        if not result.get("success", False):
            raise PipefyAPIError(f"Pipefy refused to update field {field_id} on card {card_id}")
        return result.get("card") or {"id": card_id}


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: PipefyClient | None = None
_client_lock = threading.Lock()


def get_pipefy_client() -> PipefyClient | None:
    """Return the shared PipefyClient, or ``None`` when Pipefy is not configured.

    ``None`` is the signal for the CRM layer to run in simulated mode.
    """
    global _client
    if not (PIPEFY_API_TOKEN and PIPEFY_PIPE_ID):
        return None
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = PipefyClient()
    return _client
