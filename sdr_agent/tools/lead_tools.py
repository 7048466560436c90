"""Tool declarations the model can call, as typed argument models.

Each tool is a Pydantic model; its JSON schema is what the model sees and
its validator is what parses the model's arguments.  ``ToolCall`` is the
closed set of variants the orchestrator dispatches over.  A name outside
that set can only come from out-of-band model output and raises
``UnknownTool``.
"""

from __future__ import annotations

from typing import Any, ClassVar, Union

from pydantic import BaseModel, Field, ValidationError

from sdr_agent.errors import InvalidInput, UnknownTool


class RegisterLead(BaseModel):
    """Register or update a lead in the CRM.

    Call this whenever name, email and need have been collected, whatever
    the lead's interest.  Set interest_confirmed to true only if the lead
    EXPLICITLY agreed to a meeting; otherwise false.
    """

    tool_name: ClassVar[str] = "register_lead"

    name: str = Field(..., description="Lead's full name")
    email: str = Field(..., description="Lead's email (used to avoid duplicates)")
    company: str | None = Field(None, description="Lead's company, if given")
    need: str = Field(..., description="The need, pain or problem the lead wants to solve")
    interest_confirmed: bool = Field(
        ...,
        description="true ONLY if the lead explicitly confirmed interest in a meeting",
    )


class FetchAvailableSlots(BaseModel):
    """Fetch the meeting slots available over the next 7 days."""

    tool_name: ClassVar[str] = "fetch_available_slots"


class ScheduleMeeting(BaseModel):
    """Schedule a meeting with the lead at a specific slot.

    Use ONLY after the lead picked one of the slots returned by
    fetch_available_slots.
    """

    tool_name: ClassVar[str] = "schedule_meeting"

    date: str = Field(..., description="Meeting date, YYYY-MM-DD (e.g. 2025-11-10)")
    time: str = Field(..., description="Meeting time, 24-hour HH:MM (e.g. 14:00)")
    name: str = Field(..., description="Lead's name (same as in register_lead)")
    email: str = Field(..., description="Lead's email (same as in register_lead)")
    company: str | None = Field(None, description="Lead's company, if given")
    need: str | None = Field(None, description="Lead's need, if given")


ToolCall = Union[RegisterLead, FetchAvailableSlots, ScheduleMeeting]

TOOL_MODELS: dict[str, type[BaseModel]] = {
    model.tool_name: model
    for model in (RegisterLead, FetchAvailableSlots, ScheduleMeeting)
}


def _anthropic_tool(model: type[BaseModel]) -> dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    schema.pop("description", None)
    schema.setdefault("properties", {})
    return {
        "name": model.tool_name,
        "description": " ".join((model.__doc__ or "").split()),
        "input_schema": schema,
    }


TOOL_DECLARATIONS: list[dict[str, Any]] = [_anthropic_tool(m) for m in TOOL_MODELS.values()]


def parse_tool_call(name: str, args: dict[str, Any] | None) -> ToolCall:
    """Turn a raw model tool request into a typed variant.

    Raises:
        UnknownTool: for names that were never declared.
        InvalidInput: when the arguments do not match the declaration.
    """
    model = TOOL_MODELS.get(name)
    if model is None:
        raise UnknownTool(name)
    try:
        return model.model_validate(args or {})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or name}: {err['msg']}"
            for err in exc.errors()
        )
        raise InvalidInput(f"Invalid arguments for {name}: {problems}") from exc
