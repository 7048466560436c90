"""Per-conversation LLM dialogue session.

A :class:`DialogueSession` owns the message history for one conversation
and a Claude model with the lead tools bound.  The orchestrator sees it as
an opaque capability::

    turn = session.send("Hi")                      # -> ModelTurn
    turn = session.send_tool_result(call, result)  # -> ModelTurn

``ModelTurn.tool_call`` is set when the model asked for a tool.  Only the
first tool call of a response is surfaced; any others get a "not
processed" tool result when the next payload is sent, because the
Anthropic API requires a result for every ``tool_use`` block.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import anthropic
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AnyMessage, HumanMessage, SystemMessage, ToolMessage

from sdr_agent.config import (
    ANTHROPIC_API_KEY,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    MODEL_NAME,
)
from sdr_agent.errors import UpstreamFailure, UpstreamTimeout
from sdr_agent.prompts import get_system_prompt
from sdr_agent.services.metrics import metrics
from sdr_agent.tools.lead_tools import TOOL_DECLARATIONS

logger = logging.getLogger(__name__)

SKIPPED_TOOL_RESULT = {
    "error": True,
    "code": "not_processed",
    "message": "Only one tool call is processed per response; call it again if still needed.",
}
ABANDONED_TOOL_RESULT = {
    "error": True,
    "code": "not_processed",
    "message": "The previous request was interrupted before this tool ran.",
}


@dataclass
class ToolInvocation:
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""


@dataclass
class ModelTurn:
    """One model response: either final text or a tool request."""

    text: str = ""
    tool_call: ToolInvocation | None = None


def _message_text(message: Any) -> str:
    """Extract plain text from an AIMessage (string or content blocks)."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def build_llm():
    """Build the Claude chat model with the lead tools bound."""
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=LLM_TEMPERATURE,
        max_tokens=LLM_MAX_TOKENS,
        timeout=LLM_TIMEOUT_SECONDS,
    )
    return llm.bind_tools(TOOL_DECLARATIONS)


class DialogueSession:
    """Message history plus a tool-bound model for one conversation."""

    def __init__(self, llm, system_prompt: Callable[[], str] = get_system_prompt):
        self._llm = llm
        self._system_prompt = system_prompt
        self.messages: list[AnyMessage] = []
        self._open_tool_calls: list[dict[str, Any]] = []

    def send(self, text: str) -> ModelTurn:
        """Send a user message and return the model's response."""
        self._close_open_tool_calls(ABANDONED_TOOL_RESULT)
        self.messages.append(HumanMessage(content=text))
        return self._invoke()

    def send_tool_result(self, invocation: ToolInvocation, result: dict[str, Any]) -> ModelTurn:
        """Feed a tool outcome back and return the model's next response."""
        for call in self._open_tool_calls:
            payload = result if call.get("id") == invocation.call_id else SKIPPED_TOOL_RESULT
            self._append_tool_message(call, payload)
        if not self._open_tool_calls:
            self._append_tool_message(
                {"id": invocation.call_id, "name": invocation.name}, result,
            )
        self._open_tool_calls = []
        return self._invoke()

    # ── Internal ──────────────────────────────────────────────────────

    def _append_tool_message(self, call: dict[str, Any], payload: dict[str, Any]) -> None:
        self.messages.append(
            ToolMessage(
                content=json.dumps(payload, default=str, ensure_ascii=False),
                tool_call_id=call.get("id") or "",
                name=call.get("name"),
            )
        )

    def _close_open_tool_calls(self, payload: dict[str, Any]) -> None:
        for call in self._open_tool_calls:
            self._append_tool_message(call, payload)
        self._open_tool_calls = []

    def _invoke(self) -> ModelTurn:
        system = SystemMessage(content=self._system_prompt())
        t0 = time.perf_counter()
        try:
            response = self._llm.invoke([system] + self.messages)
        except anthropic.APITimeoutError as exc:
            metrics.record_failure(
                "anthropic", "llm_invoke", error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise UpstreamTimeout("The language model did not answer in time") from exc
        except Exception as exc:
            metrics.record_failure(
                "anthropic", "llm_invoke", error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise UpstreamFailure(f"Language model request failed: {exc}") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
        self.messages.append(response)

        tool_calls = list(getattr(response, "tool_calls", None) or [])
        self._open_tool_calls = tool_calls
        if not tool_calls:
            logger.debug("Model replied with text in %.0fms", elapsed)
            return ModelTurn(text=_message_text(response))

        if len(tool_calls) > 1:
            logger.warning(
                "Model requested %d tools at once; only %s is processed",
                len(tool_calls), tool_calls[0].get("name"),
            )
        first = tool_calls[0]
        logger.debug("Model requested tool %s in %.0fms", first.get("name"), elapsed)
        return ModelTurn(
            text=_message_text(response),
            tool_call=ToolInvocation(
                name=first.get("name", ""),
                args=dict(first.get("args") or {}),
                call_id=first.get("id") or "",
            ),
        )


def create_dialogue_session() -> DialogueSession:
    """Start a new session with an empty history and the fixed tool set."""
    logger.info("New dialogue session (model: %s)", MODEL_NAME)
    return DialogueSession(build_llm())
