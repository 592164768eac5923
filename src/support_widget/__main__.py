"""CLI entry point for support-widget."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Awaitable, Callable

from support_widget.catalog.providers import ProviderCatalog
from support_widget.config import AppConfig, load_config
from support_widget.core.errors import SupportWidgetError
from support_widget.core.types import ContextKind, ConversationStatus
from support_widget.gateway.client import ServiceClient
from support_widget.gateway.local import LocalBackend
from support_widget.log import setup_logging
from support_widget.storage.models import Conversation


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument(
        "-e", "--env", default=".env", help="Path to .env file"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="support-widget",
        description="Multi-tenant support chat widget: operator tooling",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_config_args(subparsers.add_parser("config-check", help="Validate configuration"))
    _add_config_args(
        subparsers.add_parser("init", help="Create the schema and seed the provider catalog")
    )

    staff_parser = subparsers.add_parser("add-staff", help="Create a support agent or admin")
    _add_config_args(staff_parser)
    staff_parser.add_argument("--role", choices=["support", "admin"], required=True)
    staff_parser.add_argument("--email", required=True)
    staff_parser.add_argument("--password", required=True)
    staff_parser.add_argument("--name", default="", help="Display name (claimant name)")

    community_parser = subparsers.add_parser("add-community", help="Register a community")
    _add_config_args(community_parser)
    community_parser.add_argument("--id", dest="community_id", required=True)
    community_parser.add_argument("--name", required=True)

    conv_parser = subparsers.add_parser("conversations", help="List conversations")
    _add_config_args(conv_parser)
    conv_parser.add_argument(
        "--status", choices=[s.value for s in ConversationStatus], default=None
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(2)

    if args.command == "config-check":
        _check_config(args.config, args.env)
        return

    config = _load(args.config, args.env)
    setup_logging(config.log_level, json_output=config.log_json)

    match args.command:
        case "init":
            _run(config, _init)
        case "add-staff":
            _run(config, lambda c: _add_staff(c, args.role, args.email, args.password, args.name))
        case "add-community":
            _run(config, lambda c: _add_community(c, args.community_id, args.name))
        case "conversations":
            _run(config, lambda c: _list_conversations(c, args.status))


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml first")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory: {config.data_dir}")
    print(f"  Database: {config.backend.db_path}")
    print(f"  Object storage: {config.backend.storage_dir}")
    print(f"  Buckets: {config.buckets.chat_uploads}, {config.buckets.provider_logos}")
    print(f"  Local storage: {config.local_storage.path}")
    print(f"  Optimistic agent messages: {config.sync.optimistic_agent_messages}")
    print(f"  Presence interval: {config.presence.seen_interval_seconds}s")


def _run(config: AppConfig, command: Callable[[ServiceClient], Awaitable[None]]) -> None:
    """Open the backend, run *command* with a privileged client, close the backend."""

    async def _async_main() -> None:
        backend = LocalBackend(config.backend, config.buckets)
        await backend.start()
        try:
            client = ServiceClient(
                backend,
                ContextKind.MASTER,
                service_key=backend.service_credentials().service_key,
            )
            await command(client)
        finally:
            await backend.stop()

    try:
        asyncio.run(_async_main())
    except (SupportWidgetError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


async def _init(client: ServiceClient) -> None:
    providers = await ProviderCatalog(client).load(seed=True)
    print(f"Schema ready. Providers in catalog: {len(providers)}")


async def _add_staff(
    client: ServiceClient, role: str, email: str, password: str, name: str
) -> None:
    backend = client.backend
    if not isinstance(backend, LocalBackend):
        raise SupportWidgetError("add-staff needs the local backend")
    user = await backend.create_user(email, password, display_name=name)
    await backend.grant_membership(user.id, role)
    print(f"Created {role} user {user.email} ({user.display_name}) id={user.id}")


async def _add_community(client: ServiceClient, community_id: str, name: str) -> None:
    await client.insert("communities", {"id": community_id, "name": name})
    print(f"Community added: {community_id} ({name})")


async def _list_conversations(client: ServiceClient, status: str | None) -> None:
    rows = await client.select(
        "conversations", eq={"status": status} if status else None, order_by="created_at"
    )
    if not rows:
        print("No conversations.")
        return
    for row in rows:
        conv = Conversation.from_row(row)
        claimant = conv.claimed_by or "-"
        print(f"{conv.created_at}  {conv.id}  {conv.community_id:<16} {conv.status:<8} {claimant}")


if __name__ == "__main__":
    main()
