"""CLI entry point for the SDR lead-qualification agent.

A terminal chat loop for trying the agent without the web widget.  For
production, use the FastAPI server (``sdr_agent/server.py``).

Usage:
    sdr-agent            # normal mode (quiet)
    sdr-agent --debug    # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from sdr_agent.errors import SDRAgentError

logger = logging.getLogger(__name__)

ASSISTANT_NAME = "Vera"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("googleapiclient").setLevel(logging.WARNING)

    logging.getLogger("sdr_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="SDR lead-qualification agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    # Imported late so that .env is loaded before configuration is read
    from sdr_agent.agent import create_sdr_agent  # noqa: PLC0415

    print("\n" + "=" * 60)
    print("  SDR Lead Qualification Agent - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    orchestrator = create_sdr_agent()
    conversation_id: str | None = None

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Have a great day!")
            break

        if user_input.lower() == "new":
            if conversation_id:
                orchestrator.end_conversation(conversation_id)
            conversation_id = None
            print("\n>> New conversation started.\n")
            continue

        try:
            turn = orchestrator.handle_message(conversation_id, user_input)
            conversation_id = turn.conversation_id
            print(f"\n{ASSISTANT_NAME}: {turn.reply}\n")
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except SDRAgentError as e:
            logger.warning("Turn failed: %s", e)
            print(f"\n{ASSISTANT_NAME}: I'm sorry, something went wrong: {e}")
            print("     Please try again or type 'new' to start over.\n")


if __name__ == "__main__":
    main()
