"""CLI entry point for the Dental Concierge.

A terminal chat against the real LLM and Dentalink, with an in-memory
store and a console transport instead of WhatsApp.  For production, use
the FastAPI server (dental_concierge/server.py).

Usage:
    python -m dental_concierge.main                  # normal mode (quiet)
    python -m dental_concierge.main --debug          # debug mode (shows API calls)
    python -m dental_concierge.main --phone 573001234567
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_PHONE = "573000000000"


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

    logging.getLogger("dental_concierge").setLevel(logging.DEBUG if debug else logging.INFO)


class ConsoleTransport:
    """Prints outbound messages instead of sending them to WhatsApp."""

    async def send_text(self, to: str, body: str) -> None:
        print(f"\nPaola → {to}: {body}\n")


async def _chat(phone: str) -> None:
    # Imported late so load_dotenv() runs before config is read
    from dental_concierge.services.dentalink_client import get_dentalink_client
    from dental_concierge.services.document_store import InMemoryDocumentStore
    from dental_concierge.wiring import create_concierge

    concierge = create_concierge(
        transport=ConsoleTransport(),
        store=InMemoryDocumentStore(),
        scheduling=get_dentalink_client(),
    )
    logger.info("Started conversation for %s", phone)

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "Tú: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\n¡Hasta luego!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "salir", "q"):
                print("\n¡Hasta luego!")
                break

            if user_input.lower() == "new":
                await concierge.sessions.remove(phone)
                print("\n>> Sesión reiniciada\n")
                continue

            # The CLI skips the debounce buffer: every line is one turn
            await concierge.orchestrator.handle_turn(phone, user_input)
    finally:
        await concierge.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Dental Concierge CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--phone", default=DEFAULT_PHONE,
        help="Conversation key (patient phone, digits only)",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Dental Concierge - CLI Chat")
    print("=" * 60)
    print("  Escribe tu mensaje y presiona Enter.")
    print("  Comandos: 'salir' para terminar, 'new' para una sesión nueva.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_chat(args.phone))
    except KeyboardInterrupt:
        print("\n\n¡Hasta luego!")


if __name__ == "__main__":
    main()
