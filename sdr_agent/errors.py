"""Error taxonomy shared by the orchestrator, adapters and API layer.

Every error carries a short machine-readable ``code``.  Errors raised while
a tool call is being dispatched are not propagated to the HTTP caller;
the orchestrator turns them into a tool-result payload via
:meth:`SDRAgentError.to_tool_result` so the model can react to them.
"""

from __future__ import annotations

from typing import Any


class SDRAgentError(Exception):
    """Base class for all domain errors."""

    code = "agent_error"

    def to_tool_result(self) -> dict[str, Any]:
        """Structured payload fed back to the model as a tool outcome."""
        return {"error": True, "code": self.code, "message": str(self)}


class ConversationNotFound(SDRAgentError):
    """The supplied conversation id is unknown (or has expired)."""

    code = "conversation_not_found"

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id!r} not found")


class InvalidInput(SDRAgentError):
    """Malformed user or model input (date, time, email, arguments)."""

    code = "invalid_input"


class SchemaUnavailable(SDRAgentError):
    """The CRM field mapping is absent or lacks a required field."""

    code = "schema_unavailable"


class UpstreamFailure(SDRAgentError):
    """Transport, auth or server error from an external provider."""

    code = "upstream_failure"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class UpstreamTimeout(UpstreamFailure):
    """An external call or the whole turn exceeded its time budget.

    Retryable: the client may send the same message again.
    """

    code = "upstream_timeout"


class OrchestrationExhausted(SDRAgentError):
    """The model kept requesting tools past the iteration cap."""

    code = "orchestration_exhausted"


class UnknownTool(SDRAgentError):
    """The model requested a tool name that was never declared."""

    code = "unknown_tool"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class BookingAborted(SDRAgentError):
    """The lead could not be registered, so the meeting was not booked."""

    code = "booking_aborted"
