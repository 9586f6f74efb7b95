"""
Expenditure Data Layer Entry Point.

Bootstraps the dependency graph via constructor injection, signs in and
keeps a live, ordered snapshot of the ``expenses`` collection, logging a
summary on every change until interrupted.

Usage::

    python main.py --email finance@example.com
    # password from EXPENDITURE_PASSWORD or an interactive prompt
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys
from collections.abc import Callable
from typing import Optional

from expenditure.auth import SessionManager
from expenditure.client import ClientHandle, connect
from expenditure.config import get_config
from expenditure.errors import ConfigurationError, RemoteError
from expenditure.logger import StructuredLogger, get_logger
from expenditure.models.events import SubscriptionErrorEvent
from expenditure.models.expense import Expense
from expenditure.services import create_services


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Watch the expenses collection of the expenditure database.",
    )
    parser.add_argument("--email", help="Sign in as this user before watching.")
    return parser.parse_args(argv)


def _summarize(logger: StructuredLogger, snapshot: tuple[Expense, ...]) -> None:
    pending = sum(1 for expense in snapshot if expense.status == "pending")
    latest = snapshot[0].expense_date.isoformat() if snapshot else "-"
    logger.info(
        "Expenses: %d total, %d pending, latest %s",
        len(snapshot),
        pending,
        latest,
    )


def _stream_error_listener(
    logger: StructuredLogger, stop: asyncio.Event,
) -> Callable[[SubscriptionErrorEvent], None]:
    """Stop the watcher only when the change stream is lost for good."""

    def _on_error(event: SubscriptionErrorEvent) -> None:
        if not event.fatal:
            logger.warning("Skipped a change notification: %s", event.message)
            return
        logger.error("Live updates stopped: %s", event.message)
        stop.set()

    return _on_error


async def run(args: argparse.Namespace) -> int:
    """Wire dependencies and watch the expenses feed."""
    logger: StructuredLogger = get_logger("main")
    config = get_config()

    # ------------------------------------------------------------------
    # 1. Client handle (fatal on configuration errors)
    # ------------------------------------------------------------------
    try:
        client: ClientHandle = await connect(
            config.connection_config(),
            StructuredLogger(name="client"),
            auto_refresh_token=config.AUTO_REFRESH_TOKEN,
            persist_session=config.PERSIST_SESSION,
        )
    except ConfigurationError as exc:
        logger.critical("Configuration error: %s", exc)
        return 2

    # ------------------------------------------------------------------
    # 2. Session + services
    # ------------------------------------------------------------------
    session = SessionManager()
    services = create_services(client=client, config=config, session=session)
    auth_service = services["auth_service"]
    feed = services["expense_feed"]

    try:
        if args.email:
            password = os.environ.get("EXPENDITURE_PASSWORD") or getpass.getpass()
            result = await auth_service.sign_in(args.email, password)
            if not result.success:
                logger.error("Sign-in failed: %s", result.error_message)
                return 1
        elif not await auth_service.has_valid_session():
            logger.warning("No active session; only publicly readable rows are visible.")

        # --------------------------------------------------------------
        # 3. Live feed (blocks until interrupted)
        # --------------------------------------------------------------
        stop = asyncio.Event()
        feed.set_listeners(
            on_change=lambda snapshot: _summarize(logger, snapshot),
            on_error=_stream_error_listener(logger, stop),
        )
        try:
            await feed.start()
        except RemoteError as exc:
            logger.error("Initial fetch failed: %s", exc)
            return 1

        await stop.wait()
        return 1
    finally:
        await feed.stop()
        await services["subscription_manager"].close_all()
        await client.close()
        logger.info("Expenditure watcher shut down.")


def main(argv: Optional[list[str]] = None) -> int:
    """Application entry point."""
    try:
        return asyncio.run(run(_parse_args(argv)))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
