"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """Incoming chat message from the widget.

    ``message`` is optional at the schema level so that a missing message
    yields a 400 from the route rather than a 422 from validation.
    """

    message: str | None = Field(None, max_length=4000, description="The visitor's message")
    conversation_id: str | None = Field(
        None,
        max_length=100,
        description="Conversation id returned by a previous call; omit to start a new one",
    )


class ChatResponse(BaseModel):
    """Response from the agent."""

    conversation_id: str = Field(..., description="Id to send with the next message")
    message: str = Field(..., description="The agent's reply")
    timestamp: str = Field(..., description="ISO 8601 UTC timestamp of the reply")


class DeleteConversationResponse(BaseModel):
    message: str = "Conversation removed"


class ConversationListResponse(BaseModel):
    total: int
    conversation_ids: list[str]


class FieldMappingResponse(BaseModel):
    configured: bool
    fields: dict[str, dict[str, str]] = Field(default_factory=dict)
    logical: dict[str, dict[str, str]] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "sdr-agent"
