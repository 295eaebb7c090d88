"""CLI entry point for the Clinic Front Desk.

This provides a simple terminal-based chat interface for testing and
development. For production, use the FastAPI server (frontdesk/server.py).

Usage:
    uv run python -m frontdesk.main            # normal mode (quiet)
    uv run python -m frontdesk.main --debug    # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from frontdesk.config import CALL_CONTEXT_TTL_SECONDS, SESSION_TTL_SECONDS
from frontdesk.conversation import ConversationEngine
from frontdesk.services.call_context import CallContextStore
from frontdesk.services.calls import CallDispatcher
from frontdesk.services.dialogue import DialogueService, DialogueStepFailed
from frontdesk.services.fhir_client import get_fhir_client
from frontdesk.services.store import InMemoryStore
from frontdesk.services.telephony import TwilioGateway

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("twilio").setLevel(logging.WARNING)

    # Always keep our own logger at INFO minimum so session starts show
    logging.getLogger("frontdesk").setLevel(logging.DEBUG if debug else logging.INFO)


def _build_engine() -> ConversationEngine:
    fhir = get_fhir_client()
    contexts = CallContextStore(InMemoryStore(default_ttl=CALL_CONTEXT_TTL_SECONDS))
    dispatcher = CallDispatcher(fhir, TwilioGateway(), contexts)
    return ConversationEngine(
        DialogueService(), fhir, dispatcher, InMemoryStore(default_ttl=SESSION_TTL_SECONDS),
    )


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Clinic Front Desk CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Clinic Front Desk - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    engine = _build_engine()
    session = engine.start_session()
    print(f"Assistant: {session.last_assistant_utterance()}\n")

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
            session = engine.start_session()
            print(f"\n>> New session started: {session.session_id}\n")
            print(f"Assistant: {session.last_assistant_utterance()}\n")
            continue

        try:
            result = engine.handle_message(session.session_id, user_input)
            print(f"\nAssistant: {result['reply']}\n")
            if result["events"]:
                logger.info("Actions: %s", ", ".join(result["events"]))

        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except DialogueStepFailed:
            print("\nAssistant: I'm sorry, I'm having trouble right now. Please try again.\n")
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nAssistant: I'm sorry, something went wrong: {e}")
            print("     Please try again or type 'new' to start a fresh session.\n")


if __name__ == "__main__":
    main()
