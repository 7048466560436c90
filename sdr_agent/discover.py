"""Print how the configured providers look from the agent's side.

Useful when pointing the agent at a new CRM pipe or calendar account:
shows every start-form field of the pipe, which logical lead field each
one resolved to, and (with Calendly configured) the available event types.

Usage:
    sdr-agent-discover
"""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

from sdr_agent.errors import UpstreamFailure

logger = logging.getLogger(__name__)


def _print_field_mapping() -> bool:
    from sdr_agent.services.schema_resolver import LEAD_FIELDS, get_schema_resolver  # noqa: PLC0415

    resolver = get_schema_resolver()
    if not resolver.configured:
        print("CRM: not configured (PIPEFY_API_TOKEN / PIPEFY_PIPE_ID unset), simulated mode.")
        return True

    try:
        mapping = resolver.resolve()
    except UpstreamFailure as e:
        print(f"CRM: could not fetch the pipe's fields: {e}")
        return False

    print("CRM fields:")
    for key, field in mapping.by_label.items():
        print(f"  {key:<32} id={field.id:<28} type={field.type}")

    print("\nResolved lead fields:")
    for name in LEAD_FIELDS:
        field = mapping.get(name)
        target = f"{field.label} ({field.id})" if field else "-- not mapped --"
        print(f"  {name:<20} -> {target}")
    return True


def _print_calendly_event_types() -> bool:
    from sdr_agent.services.calendly_client import get_calendly_client  # noqa: PLC0415

    client = get_calendly_client()
    if client is None:
        return True

    try:
        event_types = client.get_event_types()
    except UpstreamFailure as e:
        print(f"\nCalendly: could not list event types: {e}")
        return False

    print("\nCalendly event types:")
    for et in event_types:
        status = "active" if et.get("active") else "inactive"
        print(f"  {et.get('name', '?'):<32} {et.get('duration', '?')} min  {status}")
        print(f"    {et.get('uri')}")
    return True


def main():
    parser = argparse.ArgumentParser(description="Inspect the CRM field mapping")
    parser.add_argument("--debug", action="store_true", help="Show HTTP requests")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    ok = _print_field_mapping()
    ok = _print_calendly_event_types() and ok
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
