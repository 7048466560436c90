"""FastAPI route definitions for the SDR agent API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from sdr_agent.api.schemas import (
    ChatRequest,
    ChatResponse,
    ConversationListResponse,
    DeleteConversationResponse,
    FieldMappingResponse,
    HealthResponse,
)
from sdr_agent.errors import (
    ConversationNotFound,
    InvalidInput,
    UpstreamFailure,
    UpstreamTimeout,
)
from sdr_agent.services.schema_resolver import get_schema_resolver

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_orchestrator(request: Request):
    """Retrieve the orchestrator created during the FastAPI lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return orchestrator


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Send a message to the agent and get its reply.

    Omit ``conversation_id`` to start a new conversation; send the returned
    id with every following message.  The orchestrator is synchronous
    (LLM and provider calls block), so it runs in a worker thread.
    """
    if not request.message or not request.message.strip():
        raise HTTPException(status_code=400, detail="A message is required.")

    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        turn = await asyncio.to_thread(
            orchestrator.handle_message, request.conversation_id, request.message,
        )
    except ConversationNotFound as e:
        raise HTTPException(
            status_code=404,
            detail="Conversation not found. Start a new conversation.",
        ) from e
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except UpstreamTimeout as e:
        logger.warning("[%s] Chat request timed out: %s", request_id, e)
        raise HTTPException(
            status_code=504,
            detail="The assistant took too long to answer. Please try again.",
        ) from e
    except Exception as e:
        # Full traceback stays server-side; the client gets a generic message
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(
        conversation_id=turn.conversation_id,
        message=turn.reply,
        timestamp=turn.timestamp,
    )


@router.delete("/chat/{conversation_id}", response_model=DeleteConversationResponse)
async def delete_conversation(conversation_id: str, http_request: Request):
    """Forget a conversation (useful for tests and "start over" buttons)."""
    orchestrator = _get_orchestrator(http_request)
    try:
        orchestrator.end_conversation(conversation_id)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail="Conversation not found.") from e
    return DeleteConversationResponse()


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(http_request: Request):
    """Debug listing of live conversation ids."""
    ids = _get_orchestrator(http_request).list_conversations()
    return ConversationListResponse(total=len(ids), conversation_ids=ids)


@router.get("/crm/field-mapping", response_model=FieldMappingResponse)
async def get_field_mapping():
    """Show how CRM fields were resolved (for configuring a new pipe)."""
    try:
        mapping = await asyncio.to_thread(get_schema_resolver().resolve)
    except UpstreamFailure as e:
        logger.warning("Could not load CRM field mapping: %s", e)
        raise HTTPException(status_code=502, detail="The CRM could not be reached.") from e

    if mapping is None:
        return FieldMappingResponse(configured=False)
    return FieldMappingResponse(
        configured=True,
        fields={key: f.model_dump() for key, f in mapping.by_label.items()},
        logical={key: f.model_dump() for key, f in mapping.logical.items()},
    )


@router.delete("/crm/field-mapping", response_model=HealthResponse)
async def clear_field_mapping():
    """Clear the cached CRM field mapping after the pipe form changed."""
    get_schema_resolver().invalidate()
    return HealthResponse()
