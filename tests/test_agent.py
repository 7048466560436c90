"""Tests for the conversation orchestrator and its tool-calling loop.

Covers:
  - Conversation lifecycle (new ids, continuation, unknown ids)
  - Tool dispatch: register, slots, schedule (with the implicit lead upsert)
  - Failures fed back to the model vs failures that end the turn
End-to-end runs use a scripted LLM, a mocked Pipefy client and a mocked
calendar provider.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest
from langchain_core.messages import AIMessage, ToolMessage

from sdr_agent.agent import ConversationOrchestrator
from sdr_agent.dialogue import DialogueSession
from sdr_agent.errors import (
    ConversationNotFound,
    InvalidInput,
    OrchestrationExhausted,
    UpstreamFailure,
    UpstreamTimeout,
)
from sdr_agent.models import Meeting
from sdr_agent.services.availability import AvailabilityService
from sdr_agent.services.booking import BookingService
from sdr_agent.services.crm import CRMAdapter
from sdr_agent.services.pipefy_client import PipefyAPIError
from sdr_agent.services.schema_resolver import SchemaResolver
from sdr_agent.session_store import InMemorySessionStore

TZ = ZoneInfo("America/Sao_Paulo")
WEDNESDAY = datetime(2025, 1, 1, 15, 0, tzinfo=TZ)

PIPE_FIELDS = [
    {"id": "f_name", "label": "Nome", "type": "short_text"},
    {"id": "f_email", "label": "E-mail", "type": "email"},
    {"id": "f_company", "label": "Empresa", "type": "short_text"},
    {"id": "f_need", "label": "Necessidade", "type": "long_text"},
    {"id": "f_interest", "label": "Interesse", "type": "radio_vertical"},
    {"id": "f_link", "label": "Link da Reunião", "type": "short_text"},
    {"id": "f_date", "label": "Data da Reunião", "type": "datetime"},
]

REGISTER_ARGS = {
    "name": "Ana Souza",
    "email": "ana@globex.com",
    "company": "Globex",
    "need": "More qualified leads",
    "interest_confirmed": True,
}
SCHEDULE_ARGS = {
    "date": "2025-01-02",
    "time": "10:00",
    "name": "Ana Souza",
    "email": "ana@globex.com",
    "company": "Globex",
}


# ── Helpers ──────────────────────────────────────────────────────────


def _text(content: str) -> AIMessage:
    return AIMessage(content=content)


_call_counter = iter(range(1_000_000))


def _tool(name: str, args: dict | None = None) -> AIMessage:
    call_id = f"call_{next(_call_counter)}"
    return AIMessage(
        content="",
        tool_calls=[{"name": name, "args": args or {}, "id": call_id, "type": "tool_call"}],
    )


def _book(request, start, end) -> Meeting:
    return Meeting(
        meeting_id="evt_1",
        meeting_link="https://meet.google.com/abc-defg-hij",
        meeting_datetime=start.isoformat(),
        lead_record_id=request.lead_record_id,
        provider="google",
    )


def _tool_results(store, conversation_id: str) -> list[dict]:
    conversation = store.get(conversation_id)
    return [
        json.loads(m.content)
        for m in conversation.dialogue.messages
        if isinstance(m, ToolMessage)
    ]


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def llm():
    return MagicMock()


@pytest.fixture
def pipefy():
    client = MagicMock()
    client.get_start_form_fields.return_value = PIPE_FIELDS
    client.iter_cards.side_effect = lambda *a, **kw: iter([])
    client.create_card.return_value = {"id": "301", "created_at": "2025-01-01T18:00:00Z"}
    client.update_card_field.return_value = {"id": "301"}
    return client


@pytest.fixture
def calendar():
    calendar = MagicMock()
    calendar.name = "google"
    calendar.list_busy_intervals.return_value = []
    calendar.create_event.side_effect = _book
    return calendar


@pytest.fixture
def store():
    return InMemorySessionStore(ttl_seconds=0)


@pytest.fixture
def make_orchestrator(llm, pipefy, calendar, store):
    def _make(**kwargs):
        crm = CRMAdapter(pipefy, SchemaResolver(pipefy))
        return ConversationOrchestrator(
            store=store,
            crm=crm,
            availability=AvailabilityService(calendar, tz=TZ, clock=lambda: WEDNESDAY),
            booking=BookingService(calendar, crm, tz=TZ),
            session_factory=lambda: DialogueSession(llm, system_prompt=lambda: "SYSTEM"),
            **kwargs,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


# ── TestConversationLifecycle ────────────────────────────────────────


class TestConversationLifecycle:
    def test_greeting_starts_conversation(self, orchestrator, llm):
        llm.invoke.side_effect = [_text("Hi! I'm Vera. How can I help?")]
        turn = orchestrator.handle_message(None, "Hi")

        assert turn.conversation_id
        assert turn.reply == "Hi! I'm Vera. How can I help?"
        assert turn.timestamp

    def test_conversation_id_is_stable_and_history_kept(self, orchestrator, llm):
        llm.invoke.side_effect = [_text("Hello!"), _text("Nice to meet you, Ana.")]
        first = orchestrator.handle_message(None, "Hi")
        second = orchestrator.handle_message(first.conversation_id, "I'm Ana")

        assert second.conversation_id == first.conversation_id
        # system + human + ai + human
        assert len(llm.invoke.call_args[0][0]) == 4

    def test_unknown_conversation(self, orchestrator, llm):
        with pytest.raises(ConversationNotFound):
            orchestrator.handle_message("does-not-exist", "Hi")
        llm.invoke.assert_not_called()

    def test_blank_message_is_invalid(self, orchestrator):
        with pytest.raises(InvalidInput):
            orchestrator.handle_message(None, "   ")

    def test_end_conversation(self, orchestrator, llm):
        llm.invoke.side_effect = [_text("Hello!")]
        turn = orchestrator.handle_message(None, "Hi")
        assert orchestrator.list_conversations() == [turn.conversation_id]

        orchestrator.end_conversation(turn.conversation_id)
        assert orchestrator.list_conversations() == []
        with pytest.raises(ConversationNotFound):
            orchestrator.end_conversation(turn.conversation_id)


# ── TestQualificationFlow ────────────────────────────────────────────


class TestQualificationFlow:
    def test_register_fetch_and_schedule(self, orchestrator, llm, pipefy, calendar, store):
        llm.invoke.side_effect = [
            _tool("register_lead", REGISTER_ARGS),
            _tool("fetch_available_slots"),
            _text("I have Thursday at 10:00 or 11:00. Which works?"),
            _tool("schedule_meeting", SCHEDULE_ARGS),
            _text("Booked! Here is your link."),
        ]

        first = orchestrator.handle_message(None, "Yes, let's talk")
        second = orchestrator.handle_message(first.conversation_id, "Thursday 10:00")

        assert second.reply == "Booked! Here is your link."
        pipefy.create_card.assert_called_once()
        calendar.create_event.assert_called_once()
        assert store.get(first.conversation_id).lead_record_id == "301"

        register, slots, meeting = _tool_results(store, first.conversation_id)
        assert register["action"] == "created"
        assert register["record_id"] == "301"
        assert slots["simulated"] is False
        assert slots["slots"][0] == {
            "date": "2025-01-02",
            "time": "09:00",
            "datetime": "2025-01-02T09:00:00",
            "display": "Thu 02 Jan 2025 at 09:00",
        }
        assert meeting["success"] is True
        assert meeting["lead_record_id"] == "301"
        assert meeting["crm_updated"] is True
        updated = {c[0][1] for c in pipefy.update_card_field.call_args_list}
        assert updated == {"f_link", "f_date"}

    def test_all_three_tools_in_one_message_create_one_record(
        self, orchestrator, llm, pipefy, calendar,
    ):
        llm.invoke.side_effect = [
            _tool("register_lead", REGISTER_ARGS),
            _tool("fetch_available_slots"),
            _tool("schedule_meeting", SCHEDULE_ARGS),
            _text("All set for Thursday at 10:00."),
        ]
        turn = orchestrator.handle_message(None, "Book me the first slot tomorrow")

        assert turn.reply == "All set for Thursday at 10:00."
        pipefy.create_card.assert_called_once()
        assert calendar.create_event.call_args[0][0].lead_record_id == "301"

    def test_schedule_without_register_creates_lead_first(self, orchestrator, llm, pipefy, store):
        llm.invoke.side_effect = [_tool("schedule_meeting", SCHEDULE_ARGS), _text("Done")]
        turn = orchestrator.handle_message(None, "Book me Thursday 10:00")

        pipefy.create_card.assert_called_once()
        fields = {f["field_id"]: f["field_value"] for f in pipefy.create_card.call_args[0][0]}
        assert fields["f_interest"] == "Yes"
        (meeting,) = _tool_results(store, turn.conversation_id)
        assert meeting["lead_record_id"] == "301"

    def test_repeated_register_does_not_duplicate(self, orchestrator, llm, pipefy, store):
        card = {
            "id": "301",
            "fields": [{"name": "E-mail", "value": "ana@globex.com", "field": {"id": "f_email"}}],
        }
        pipefy.iter_cards.side_effect = [iter([]), iter([card])]
        llm.invoke.side_effect = [
            _tool("register_lead", REGISTER_ARGS),
            _tool("register_lead", REGISTER_ARGS),
            _text("Got it"),
        ]
        turn = orchestrator.handle_message(None, "Hi, I'm Ana")

        pipefy.create_card.assert_called_once()
        first, second = _tool_results(store, turn.conversation_id)
        assert first["action"] == "created"
        assert second["action"] == "updated"
        assert second["record_id"] == "301"

    def test_unreachable_calendar_offers_simulated_slots(self, orchestrator, llm, calendar, store):
        calendar.list_busy_intervals.side_effect = UpstreamFailure("connection refused")
        llm.invoke.side_effect = [_tool("fetch_available_slots"), _text("Here are some times")]
        turn = orchestrator.handle_message(None, "When can we meet?")

        (slots,) = _tool_results(store, turn.conversation_id)
        assert slots["simulated"] is True
        assert slots["slots"]

    def test_calendar_booking_failure_gives_simulated_meeting(
        self, orchestrator, llm, calendar, store,
    ):
        calendar.create_event.side_effect = UpstreamFailure("500")
        llm.invoke.side_effect = [_tool("schedule_meeting", SCHEDULE_ARGS), _text("Booked")]
        turn = orchestrator.handle_message(None, "Thursday 10:00")

        (meeting,) = _tool_results(store, turn.conversation_id)
        assert meeting["success"] is True
        assert meeting["simulated"] is True


# ── TestToolFailures ─────────────────────────────────────────────────


class TestToolFailures:
    def test_unknown_tool_is_fed_back(self, orchestrator, llm, store):
        llm.invoke.side_effect = [_tool("delete_crm"), _text("Sorry, I can't do that.")]
        turn = orchestrator.handle_message(None, "Hi")

        assert turn.reply == "Sorry, I can't do that."
        (result,) = _tool_results(store, turn.conversation_id)
        assert result["error"] is True
        assert result["code"] == "unknown_tool"

    def test_invalid_date_never_touches_crm_or_calendar(
        self, orchestrator, llm, pipefy, calendar, store,
    ):
        llm.invoke.side_effect = [
            _tool("schedule_meeting", {**SCHEDULE_ARGS, "date": "2025-13-40"}),
            _text("That date looks wrong."),
        ]
        turn = orchestrator.handle_message(None, "Book 2025-13-40")

        (result,) = _tool_results(store, turn.conversation_id)
        assert result["code"] == "invalid_input"
        pipefy.create_card.assert_not_called()
        calendar.create_event.assert_not_called()

    def test_failed_implicit_registration_aborts_booking(
        self, orchestrator, llm, pipefy, calendar, store,
    ):
        pipefy.create_card.side_effect = PipefyAPIError("Client error 401", status_code=401)
        llm.invoke.side_effect = [_tool("schedule_meeting", SCHEDULE_ARGS), _text("Sorry")]
        turn = orchestrator.handle_message(None, "Thursday 10:00")

        (result,) = _tool_results(store, turn.conversation_id)
        assert result["code"] == "booking_aborted"
        calendar.create_event.assert_not_called()

    def test_unexpected_error_is_fed_back(self, orchestrator, llm, calendar, store):
        calendar.list_busy_intervals.side_effect = RuntimeError("bug")
        llm.invoke.side_effect = [_tool("fetch_available_slots"), _text("Sorry")]
        turn = orchestrator.handle_message(None, "When?")

        (result,) = _tool_results(store, turn.conversation_id)
        assert result["code"] == "tool_error"

    def test_llm_failure_ends_the_turn(self, orchestrator, llm):
        llm.invoke.side_effect = RuntimeError("overloaded")
        with pytest.raises(UpstreamFailure):
            orchestrator.handle_message(None, "Hi")


# ── TestLoopLimits ───────────────────────────────────────────────────


class TestLoopLimits:
    def test_exhausted_after_max_iterations(self, make_orchestrator, llm):
        orchestrator = make_orchestrator(max_iterations=3)
        llm.invoke.side_effect = lambda messages: _tool("fetch_available_slots")

        with pytest.raises(OrchestrationExhausted):
            orchestrator.handle_message(None, "Hi")
        # first call plus one per dispatched tool
        assert llm.invoke.call_count == 4

    def test_turn_budget(self, make_orchestrator, llm):
        ticks = iter([0.0, 5.0, 50.0])
        orchestrator = make_orchestrator(turn_budget_seconds=30, clock=lambda: next(ticks))
        llm.invoke.side_effect = lambda messages: _tool("fetch_available_slots")

        with pytest.raises(UpstreamTimeout):
            orchestrator.handle_message(None, "Hi")
        assert llm.invoke.call_count == 2

    def test_running_tool_is_not_interrupted_by_the_budget(
        self, make_orchestrator, llm, pipefy, store,
    ):
        now = [0.0]
        orchestrator = make_orchestrator(turn_budget_seconds=30, clock=lambda: now[0])

        def slow_create_card(*args, **kwargs):
            now[0] = 50.0
            return {"id": "301", "created_at": "2025-01-01T18:00:00Z"}

        pipefy.create_card.side_effect = slow_create_card
        llm.invoke.side_effect = [
            _tool("register_lead", REGISTER_ARGS),
            _text("You're all set, Ana."),
        ]

        turn = orchestrator.handle_message(None, "I'm Ana from Globex")

        # The deadline is only checked before a dispatch, so the overrun is tolerated
        assert now[0] > 30
        assert turn.reply == "You're all set, Ana."
        assert store.get(turn.conversation_id).lead_record_id == "301"


# ── TestConcurrentMessages ───────────────────────────────────────────


class TestConcurrentMessages:
    def test_messages_for_one_conversation_run_one_at_a_time(self, orchestrator, llm):
        cid = orchestrator.start_conversation().conversation_id
        started = threading.Event()
        release = threading.Event()
        seen: list[list[str]] = []

        def invoke(messages):
            seen.append([m.content for m in messages])
            if len(seen) == 1:
                started.set()
                release.wait(timeout=5)
                return _text("first reply")
            return _text("second reply")

        llm.invoke.side_effect = invoke
        replies: dict[str, str] = {}

        def send(key: str, text: str) -> None:
            replies[key] = orchestrator.handle_message(cid, text).reply

        first = threading.Thread(target=send, args=("first", "first message"))
        first.start()
        assert started.wait(timeout=5)

        second = threading.Thread(target=send, args=("second", "second message"))
        second.start()
        second.join(timeout=0.2)
        assert second.is_alive()
        assert len(seen) == 1

        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert replies == {"first": "first reply", "second": "second reply"}
        assert seen[1] == ["SYSTEM", "first message", "first reply", "second message"]

    def test_other_conversations_are_not_blocked(self, orchestrator, llm):
        busy_cid = orchestrator.start_conversation().conversation_id
        started = threading.Event()
        release = threading.Event()

        def invoke(messages):
            if messages[-1].content == "slow":
                started.set()
                release.wait(timeout=5)
                return _text("slow reply")
            return _text("fast reply")

        llm.invoke.side_effect = invoke
        worker = threading.Thread(target=orchestrator.handle_message, args=(busy_cid, "slow"))
        worker.start()
        try:
            assert started.wait(timeout=5)
            turn = orchestrator.handle_message(None, "hello")
            assert turn.reply == "fast reply"
            assert worker.is_alive()
        finally:
            release.set()
            worker.join(timeout=5)
