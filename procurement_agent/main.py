"""CLI entry point for the procurement agent.

A terminal chat against the in-memory demo catalog, for testing and
development.  For production, use the FastAPI server
(``procurement_agent/server.py``).

Usage:
    python -m procurement_agent.main                 # normal mode (quiet)
    python -m procurement_agent.main --debug         # debug mode (shows API calls)
    python -m procurement_agent.main --user alice    # act as a specific user
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv

from procurement_agent.agent import TurnOrchestrator, TurnRequest, create_procurement_agent
from procurement_agent.models import Message
from procurement_agent.services.demo_catalog import InMemoryProcurementServices

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

    logging.getLogger("procurement_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def _render(message: Message) -> str:
    """Agent reply plus a plain-text rendering of its metadata."""
    lines = [message.content]
    metadata = message.metadata
    if metadata and metadata.items:
        for item in metadata.items:
            lines.append(f"  • {item.name} ({item.id}): ${item.price:.2f} [{item.availability}]")
    if metadata and metadata.purchase_request:
        lines.append(f"  Purchase request: {metadata.purchase_request.id}")
    return "\n".join(lines)


async def _chat_loop(agent: TurnOrchestrator, user_id: str) -> None:
    conversation_id: str | None = None

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if user_input.lower() == "new":
            conversation_id = None
            print("\n>> New conversation started.\n")
            continue

        try:
            result = await agent.handle_turn(
                TurnRequest(user_id=user_id, message=user_input, conversation_id=conversation_id)
            )
        except ValueError as e:
            # TurnValidationError: the message itself was rejected
            print(f"\nAgent: {e}\n")
            continue
        except Exception:
            logger.exception("Error processing message")
            print("\nAgent: I'm sorry, something went wrong.")
            print("       Please try again or type 'new' to start a fresh conversation.\n")
            continue

        if conversation_id is None:
            logger.info("Started conversation %s", result.conversation_id)
        conversation_id = result.conversation_id
        print(f"\nAgent: {_render(result.messages[-1])}\n")


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Procurement Agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--user", default="cli-user",
        help="User id to act as (carts and conversations are per user)",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Procurement Agent - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    agent = create_procurement_agent(services=InMemoryProcurementServices())
    asyncio.run(_chat_loop(agent, args.user))


if __name__ == "__main__":
    main()
