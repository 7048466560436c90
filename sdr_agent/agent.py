"""Conversation orchestrator for the SDR lead-qualification agent.

Architecture:
  Each inbound message runs a bounded **tool-calling loop** against the
  conversation's dialogue session::

    user text → model ─┬─ text?      → reply (done)
                       └─ tool call? → dispatch → tool result → model → …

  Dispatch is an exhaustive match over the declared tool variants:

    register_lead          → CRM upsert (remembers the record id)
    fetch_available_slots  → availability service
    schedule_meeting       → [implicit lead upsert] → booking

  Failures inside a tool never abort the turn; they are fed back to the
  model as ``{"error": true, ...}`` so it can explain them to the visitor.
  Only a dialogue transport failure, the iteration cap or the wall-clock
  budget fail the request.

  State:
    Conversations are held in an injected :class:`SessionStore`.  A turn
    holds the conversation's lock for its whole duration.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from sdr_agent.config import MAX_TOOL_ITERATIONS, TURN_TIME_BUDGET_SECONDS
from sdr_agent.dialogue import DialogueSession, ToolInvocation, create_dialogue_session
from sdr_agent.errors import (
    BookingAborted,
    ConversationNotFound,
    InvalidInput,
    OrchestrationExhausted,
    SDRAgentError,
    UnknownTool,
    UpstreamTimeout,
)
from sdr_agent.models import BookingRequest, Lead
from sdr_agent.services.availability import AvailabilityService
from sdr_agent.services.booking import BookingService
from sdr_agent.services.calendar import get_calendar_provider
from sdr_agent.services.crm import CRMAdapter, get_crm_adapter
from sdr_agent.services.metrics import metrics
from sdr_agent.session_store import Conversation, InMemorySessionStore, SessionStore
from sdr_agent.tools.lead_tools import (
    FetchAvailableSlots,
    RegisterLead,
    ScheduleMeeting,
    ToolCall,
    parse_tool_call,
)

logger = logging.getLogger(__name__)


class ChatTurn(BaseModel):
    """What one inbound message produces."""

    conversation_id: str
    reply: str
    timestamp: str


class ConversationOrchestrator:
    def __init__(
        self,
        *,
        store: SessionStore,
        crm: CRMAdapter,
        availability: AvailabilityService,
        booking: BookingService,
        session_factory: Callable[[], DialogueSession] = create_dialogue_session,
        max_iterations: int = MAX_TOOL_ITERATIONS,
        turn_budget_seconds: float = TURN_TIME_BUDGET_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._crm = crm
        self._availability = availability
        self._booking = booking
        self._session_factory = session_factory
        self._max_iterations = max_iterations
        self._turn_budget = turn_budget_seconds
        self._clock = clock

    # ── Conversation lifecycle ───────────────────────────────────────

    def start_conversation(self) -> Conversation:
        conversation = Conversation(str(uuid.uuid4()), self._session_factory())
        self._store.put(conversation)
        logger.info("New conversation: %s", conversation.conversation_id)
        return conversation

    def end_conversation(self, conversation_id: str) -> None:
        if not self._store.delete(conversation_id):
            raise ConversationNotFound(conversation_id)
        logger.info("Conversation removed: %s", conversation_id)

    def list_conversations(self) -> list[str]:
        return self._store.list_ids()

    # ── Entry point ──────────────────────────────────────────────────

    def handle_message(self, conversation_id: str | None, text: str) -> ChatTurn:
        """Process one inbound message and return the model's final reply.

        Raises:
            InvalidInput: blank message.
            ConversationNotFound: unknown ``conversation_id``.
            OrchestrationExhausted: the model never stopped calling tools.
            UpstreamTimeout: the wall-clock budget was spent before the next
                tool dispatch.
            UpstreamFailure: the language model could not be reached.
        """
        if not text or not text.strip():
            raise InvalidInput("A message is required")

        if conversation_id:
            conversation = self._store.get(conversation_id)
            if conversation is None:
                raise ConversationNotFound(conversation_id)
        else:
            conversation = self.start_conversation()

        with conversation.lock:
            reply = self._run_tool_loop(conversation, text)
            conversation.touch()

        return ChatTurn(
            conversation_id=conversation.conversation_id,
            reply=reply,
            timestamp=datetime.now(UTC).isoformat(),
        )

    # ── Tool-calling loop ────────────────────────────────────────────

    def _run_tool_loop(self, conversation: Conversation, text: str) -> str:
        """Alternate model calls and tool dispatches until the model answers in text.

        The turn budget is soft: the deadline is checked before each dispatch
        only.  A tool that is already running, and the model call that
        receives its result, are allowed to finish past the deadline.
        """
        cid = conversation.conversation_id
        deadline = self._clock() + self._turn_budget
        pending_lead_record_id = conversation.lead_record_id
        iterations = 0

        turn = conversation.dialogue.send(text)
        while turn.tool_call is not None:
            iterations += 1
            if iterations > self._max_iterations:
                metrics.record_orchestration("exhausted", iterations - 1)
                logger.error(
                    "[%s] Model still calling tools after %d iterations",
                    cid, self._max_iterations,
                )
                raise OrchestrationExhausted(
                    f"Tool-calling loop exceeded {self._max_iterations} iterations"
                )
            if self._clock() > deadline:
                metrics.record_orchestration("timeout", iterations - 1)
                logger.error("[%s] Turn exceeded its %.0fs budget", cid, self._turn_budget)
                raise UpstreamTimeout(
                    f"Turn exceeded its {self._turn_budget:.0f}s time budget"
                )

            invocation = turn.tool_call
            logger.info("[%s] Tool requested: %s", cid, invocation.name)
            result, lead_record_id = self._dispatch(invocation, pending_lead_record_id)
            if lead_record_id and lead_record_id != pending_lead_record_id:
                pending_lead_record_id = lead_record_id
                conversation.lead_record_id = lead_record_id
                logger.info("[%s] Lead record id stored: %s", cid, lead_record_id)

            turn = conversation.dialogue.send_tool_result(invocation, result)

        metrics.record_orchestration("reply", iterations)
        logger.info("[%s] Final reply after %d tool calls", cid, iterations)
        return turn.text

    def _dispatch(
        self, invocation: ToolInvocation, lead_record_id: str | None,
    ) -> tuple[dict[str, Any], str | None]:
        """Run one tool; return its result payload and the (new) lead record id."""
        try:
            call = parse_tool_call(invocation.name, invocation.args)
            return self._run_tool(call, lead_record_id)
        except SDRAgentError as exc:
            logger.warning("Tool %s failed: %s", invocation.name, exc)
            return exc.to_tool_result(), lead_record_id
        except Exception as exc:
            logger.exception("Unexpected error in tool %s", invocation.name)
            return {
                "error": True,
                "code": "tool_error",
                "message": f"Error executing {invocation.name}: {exc}",
            }, lead_record_id

    def _run_tool(
        self, call: ToolCall, lead_record_id: str | None,
    ) -> tuple[dict[str, Any], str | None]:
        if isinstance(call, RegisterLead):
            result = self._crm.upsert_lead(
                Lead(
                    name=call.name,
                    email=call.email,
                    company=call.company,
                    need=call.need,
                    interest_confirmed=call.interest_confirmed,
                )
            )
            payload = {"success": True, **result.model_dump(mode="json")}
            payload["message"] = f"Lead {result.action.value.replace('_', ' ')}"
            return payload, result.record_id

        if isinstance(call, FetchAvailableSlots):
            return self._availability.fetch_available_slots().to_tool_result(), lead_record_id

        if isinstance(call, ScheduleMeeting):
            return self._schedule_meeting(call, lead_record_id)

        raise UnknownTool(type(call).__name__)

    def _schedule_meeting(
        self, call: ScheduleMeeting, lead_record_id: str | None,
    ) -> tuple[dict[str, Any], str | None]:
        """Two-step saga: make sure the lead exists, then book with its id."""
        request = BookingRequest(
            date=call.date,
            time=call.time,
            name=call.name,
            email=call.email,
            company=call.company,
            need=call.need,
        )
        # Reject malformed input before the CRM is touched
        self._booking.validate(request)

        if lead_record_id is None:
            logger.info("No lead record yet; registering %s before booking", call.email)
            try:
                upsert = self._crm.upsert_lead(
                    Lead(
                        name=call.name,
                        email=call.email,
                        company=call.company,
                        need=call.need,
                        interest_confirmed=True,
                    )
                )
            except Exception as exc:
                raise BookingAborted(
                    f"Could not register the lead, so the meeting was not booked: {exc}"
                ) from exc
            lead_record_id = upsert.record_id

        request.lead_record_id = lead_record_id
        meeting = self._booking.book_meeting(request)
        payload = {"success": True, **meeting.model_dump(mode="json")}
        payload["message"] = (
            "Meeting booked (simulated: calendar unavailable)"
            if meeting.simulated
            else "Meeting booked"
        )
        return payload, lead_record_id


def create_sdr_agent(store: SessionStore | None = None) -> ConversationOrchestrator:
    """Wire the orchestrator to the configured CRM and calendar providers."""
    crm = get_crm_adapter()
    calendar = get_calendar_provider()
    orchestrator = ConversationOrchestrator(
        store=store or InMemorySessionStore(),
        crm=crm,
        availability=AvailabilityService(calendar),
        booking=BookingService(calendar, crm),
    )
    logger.info(
        "SDR agent ready (CRM: %s, calendar: %s, max iterations: %d)",
        "simulated" if crm.simulated else "pipefy",
        calendar.name if calendar else "simulated",
        MAX_TOOL_ITERATIONS,
    )
    return orchestrator
