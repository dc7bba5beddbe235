"""
taskdesk entry point.

Loads configuration, configures logging, signs in and runs one command:
list organizations, create an organization, or run store diagnostics.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import structlog

from .auth import GoTrueAuthProvider
from .config import TaskdeskConfig, load_config
from .diagnostics import run_diagnostics
from .errors import AuthenticationError, StoreError
from .identity import IdentityContext, ProfileResolver
from .metrics import MetricsCollector
from .state import OrganizationState
from .store import SqlStore, build_store


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        # stdout carries command output
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _execute(config: TaskdeskConfig, args: argparse.Namespace) -> int:
    log = structlog.get_logger()
    api_key = config.store.api_key
    if not api_key:
        print(f"Error: store API key missing, set ${config.store.api_key_env}", file=sys.stderr)
        return 2
    email, password = config.auth.email, config.auth.password
    if not email or not password:
        print(
            f"Error: auth.email must be configured and ${config.auth.password_env} set",
            file=sys.stderr,
        )
        return 2

    metrics = MetricsCollector()
    provider = GoTrueAuthProvider(
        config.auth_url,
        api_key,
        verify_tls=config.store.verify_tls,
        request_timeout=config.store.request_timeout_seconds,
    )
    store = build_store(config.store, access_token=provider.access_token)
    identity = IdentityContext(provider, ProfileResolver(store, config.profile_retry))

    await provider.open()
    await store.open()
    try:
        if isinstance(store, SqlStore):
            await store.create_schema()
        await identity.start()
        try:
            await identity.sign_in(email, password)
        except (AuthenticationError, StoreError) as exc:
            print(f"Sign-in failed: {exc.message}", file=sys.stderr)
            return 1

        # Handlers run inside sign-in, so the profile is resolved by now
        snapshot = identity.snapshot
        if args.command == "diagnose":
            report = await run_diagnostics(store, snapshot)
            _print_json(report.model_dump(mode="json"))
            return 0 if report.ok else 1

        if not snapshot.ready:
            print("Error: could not resolve your user profile", file=sys.stderr)
            return 1

        state = OrganizationState(
            identity,
            store,
            default_role=config.organizations.missing_role_fallback,
            metrics=metrics,
        )
        state.start()
        try:
            await state.settle()
            if args.orgs_command == "create" and not await state.create_organization(args.name):
                return 1
            if state.error:
                print(f"Error: {state.error}", file=sys.stderr)
                return 1
            _print_json([org.model_dump(mode="json") for org in state.organizations])
            return 0
        finally:
            await state.close()
    finally:
        log.debug("taskdesk.metrics", **metrics.to_dict())
        await identity.stop()
        await store.close()
        await provider.close()


def run() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="taskdesk organization tool")
    parser.add_argument(
        "-c", "--config",
        default="taskdesk.yaml",
        help="Path to configuration file (default: taskdesk.yaml)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    orgs = commands.add_parser("orgs", help="List or create organizations")
    orgs_commands = orgs.add_subparsers(dest="orgs_command", required=True)
    orgs_commands.add_parser("list", help="List your organizations with your role")
    create = orgs_commands.add_parser("create", help="Create an organization you own")
    create.add_argument("name")

    commands.add_parser("diagnose", help="Check store access for the signed-in user")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("taskdesk.config_loaded", config_path=args.config, backend=config.store.backend)

    try:
        code = asyncio.run(_execute(config, args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    run()
