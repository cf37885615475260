"""Application entry point for the luxbot runtime."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import commands
import log_setup
import settings
from adapters.file_store import FileCredentialStore
from adapters.session_export import SessionWebhookExporter, seed_store_from_url
from client import build_credential_store, build_socket_factory
from core.dispatcher import CommandDispatcher
from core.lifecycle import ConnectionLifecycleManager
from core.models import LifecycleOutcome
from core.ports import CredentialStorePort, SocketFactory
from core.registry import load_commands
from get_session import login, render_challenge, resolve_2fa_password

NAME = "LUX"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


def _configure_logging() -> None:
    load_dotenv()
    log_setup.configure_logging(
        log_setup.parse_log_settings(settings.LOGGING, settings.PROJECT_ROOT),
        settings.SESSION_ID,
    )


def _prepare_store() -> CredentialStorePort:
    store = build_credential_store(settings.CREDENTIAL_BACKEND, root=settings.PROJECT_ROOT)
    # Only seeds when the store has nothing for this session yet.
    seed_store_from_url(store, settings.SESSION_ID, os.getenv("FETCH_FROM_URL"))
    return store


def _build_manager(store: CredentialStorePort, socket_factory: SocketFactory) -> ConnectionLifecycleManager:
    manager = ConnectionLifecycleManager(
        settings.SESSION_ID,
        store,
        socket_factory,
        settings.LIFECYCLE_CONFIG,
        fallback_store=FileCredentialStore(os.path.join(settings.PROJECT_ROOT, "sessions")),
        challenge_renderer=render_challenge,
    )

    webhook_url = os.getenv("SESSION_WEBHOOK")
    if webhook_url:
        def _snapshot():
            return manager.auth.snapshot() if manager.auth else None

        manager.add_phase_listener(SessionWebhookExporter(webhook_url, _snapshot))
    return manager


def _build_dispatcher(manager: ConnectionLifecycleManager) -> CommandDispatcher:
    def _load():
        return load_commands(commands, reload=True)

    return CommandDispatcher(
        load_commands(commands),
        manager,
        settings.DISPATCHER_CONFIG,
        registry_loader=_load,
    )


async def _serve() -> LifecycleOutcome:
    logger = logging.getLogger(__name__)
    store = _prepare_store()
    manager = _build_manager(store, build_socket_factory(resolve_2fa_password()))
    dispatcher = _build_dispatcher(manager)
    manager.set_message_handler(dispatcher.dispatch_many)
    manager.add_phase_listener(dispatcher.on_phase)

    logger.info("%s commands are loaded", len(dispatcher.registry))
    outcome = await manager.run()
    logger.info("Session %s stopped: %s", settings.SESSION_ID, outcome.value)
    return outcome


def _run() -> None:
    _print_banner()
    _configure_logging()
    logging.getLogger(__name__).info("Starting luxbot session %s", settings.SESSION_ID)

    try:
        outcome = asyncio.run(_serve())
    except KeyboardInterrupt:
        return
    if outcome is LifecycleOutcome.LOGGED_OUT:
        raise SystemExit("Session logged out; run `luxbot login` to link it again.")


def _login() -> None:
    _print_banner()
    _configure_logging()

    async def _run_login() -> bool:
        store = _prepare_store()
        socket_factory = build_socket_factory(resolve_2fa_password(interactive=True))
        manager = _build_manager(store, socket_factory)
        try:
            return await login(manager)
        finally:
            manager.stop()

    if not asyncio.run(_run_login()):
        raise SystemExit(1)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="luxbot")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the bot")
    subparsers.add_parser("login", help="Link the session and save its credentials, then exit")

    args = parser.parse_args(argv)
    if args.command == "login":
        _login()
        return
    _run()


if __name__ == "__main__":
    main()
