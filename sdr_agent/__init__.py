"""SDR Agent: a conversational lead-qualification assistant.

Architecture Overview
=====================

A website visitor chats with the assistant, which qualifies them as a sales
lead, records them in the CRM and books a discovery meeting.

Each inbound message runs a bounded **tool-calling loop**: the message goes
to Claude together with the conversation history; whenever the model asks
for a tool, the orchestrator dispatches it and feeds the result back, until
the model answers with plain text.

Tools
-----
- ``register_lead``: idempotent CRM upsert keyed by e-mail.
- ``fetch_available_slots``: next weekdays' free hourly slots.
- ``schedule_meeting``: registers the lead if needed, then books.

Key Design Decisions
--------------------
- **CRM fields are discovered at runtime**: the Pipefy pipe's start-form
  labels are normalized and matched to logical lead fields, so the pipe can
  be configured by humans in any language.
- **Graceful degradation**: a missing or failing calendar falls back to a
  simulated schedule and simulated meetings, flagged as such; an
  unconfigured CRM runs against an in-memory registry.
- **Errors stay in the conversation**: tool failures are returned to the
  model as structured results; only LLM failures, the iteration cap and the
  turn time budget fail a request.
- **Dual Interface**: FastAPI server (production) + CLI chat loop.

Package Structure
-----------------
- ``sdr_agent/agent.py``: conversation orchestrator and tool-calling loop
- ``sdr_agent/dialogue.py``: per-conversation Claude session
- ``sdr_agent/session_store.py``: conversation storage
- ``sdr_agent/config.py``: configuration from env / SSM
- ``sdr_agent/services/``: Pipefy, Google Calendar, Calendly and domain services
- ``sdr_agent/tools/``: tool declarations and argument models
- ``sdr_agent/api/``: FastAPI routes and Pydantic schemas
"""
