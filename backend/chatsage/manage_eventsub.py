"""Manage Twitch EventSub webhook subscriptions

Usage:
    chatsage-eventsub list                 # List all subscriptions
    chatsage-eventsub subscribe-all        # stream.online/offline for every active channel
    chatsage-eventsub subscribe-ads        # channel.ad_break.begin for opted-in channels
    chatsage-eventsub delete <id>          # Delete one subscription
    chatsage-eventsub delete-all [--yes]   # Delete every subscription

The service ensures subscriptions on its own; this tool is for inspection and
cleanup. Exit code is 0 on success and 1 on any top-level failure.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import httpx
from pydantic import ValidationError

from chatsage.core.config import BotSettings, get_settings
from chatsage.core.credentials import CredentialManager
from chatsage.core.logging import setup_logging
from chatsage.core.subscriptions import SubscriptionManager
from chatsage.shared.database import DatabaseManager, PoolConfig
from chatsage.shared.errors import ChatSageError
from chatsage.shared.models.subscription import BatchResult
from chatsage.shared.redact import redact
from chatsage.shared.repositories.channel import ChannelRepository
from chatsage.shared.secrets import SecretStore

LOGGER = logging.getLogger("ManageEventSub")

REGISTRY_COMMANDS = ("subscribe-all", "subscribe-ads")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatsage-eventsub", description="Manage EventSub subscriptions")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="List all subscriptions")
    sub.add_parser("subscribe-all", help="Ensure stream.online/offline for every active channel")
    sub.add_parser("subscribe-ads", help="Ensure ad-break subscriptions for opted-in channels")
    delete = sub.add_parser("delete", help="Delete one subscription")
    delete.add_argument("subscription_id")
    delete_all = sub.add_parser("delete-all", help="Delete every subscription")
    delete_all.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def list_subscriptions(subscriptions: SubscriptionManager) -> int:
    subs = await subscriptions.list_subscriptions()
    print(f"\n=== Found {len(subs)} Subscription(s) ===\n")
    for i, s in enumerate(subs, 1):
        print(f"{i}. ID: {s.id}")
        print(f"   Type: {s.type}")
        print(f"   Status: {s.status}")
        print(f"   Condition: {json.dumps(s.condition)}")
        print(f"   Created: {s.created_at}")
        print()
    return 0


def print_batch(result: BatchResult) -> None:
    print("\n=== Subscription Results ===")
    print(f"Total channels: {result.total}")
    print(f"Successful: {len(result.successful)}")
    print(f"Failed: {len(result.failed)}")
    if result.successful:
        print("\nSuccessful:")
        for ok in result.successful:
            print(f"  ✓ {ok['channel']} (ID: {ok.get('user_id')})")
    if result.failed:
        print("\nFailed:")
        for fail in result.failed:
            print(f"  ✗ {fail['channel']}: {fail['error']}")


async def subscribe_all(subscriptions: SubscriptionManager, repository: ChannelRepository) -> int:
    channels = await repository.list_active_channels()
    print(f"Subscribing {len(channels)} active channel(s) via {subscriptions.callback_url}")
    print_batch(await subscriptions.subscribe_all(channels))
    return 0


async def subscribe_ads(subscriptions: SubscriptionManager, repository: ChannelRepository) -> int:
    channels = await repository.list_active_channels()
    print_batch(await subscriptions.subscribe_ad_breaks(channels))
    return 0


async def delete_subscription(subscriptions: SubscriptionManager, subscription_id: str) -> int:
    if await subscriptions.delete(subscription_id):
        print(f"✓ Deleted subscription: {subscription_id}")
        return 0
    print(f"✗ Failed to delete subscription: {subscription_id}")
    return 1


async def delete_all_subscriptions(subscriptions: SubscriptionManager, assume_yes: bool = False) -> int:
    subs = await subscriptions.list_subscriptions()
    if not subs:
        print("No subscriptions to delete.")
        return 0

    if not assume_yes:
        confirm = input(f"\nAre you sure you want to delete ALL {len(subs)} subscription(s)? (yes/no): ")
        if confirm.lower() != "yes":
            print("Cancelled.")
            return 0

    deleted = await subscriptions.delete_all()
    print(f"\nDeleted {deleted}/{len(subs)} subscription(s)")
    return 0


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


async def run(
    args: argparse.Namespace,
    settings: BotSettings,
    *,
    http: httpx.AsyncClient | None = None,
    secrets: SecretStore | None = None,
    repository: ChannelRepository | None = None,
) -> int:
    """Execute one command; returns the process exit code."""
    own_http = http is None
    http = http or httpx.AsyncClient()
    secrets = secrets or SecretStore()
    database: DatabaseManager | None = None

    try:
        if repository is None and args.command in REGISTRY_COMMANDS:
            database = DatabaseManager(settings.database_url, PoolConfig.preset("cli"))
            await database.connect()
            repository = ChannelRepository(database.pool)

        credentials = CredentialManager(
            settings.twitch_client_id, settings.twitch_client_secret, repository, secrets, http
        )
        subscriptions = SubscriptionManager(
            credentials,
            http,
            callback_url=settings.eventsub_callback_url,
            webhook_secret=settings.eventsub_secret,
        )
        LOGGER.debug(f"Using client {redact(settings.twitch_client_id)}")

        if args.command == "list":
            return await list_subscriptions(subscriptions)
        if args.command == "subscribe-all":
            return await subscribe_all(subscriptions, repository)  # type: ignore[arg-type]
        if args.command == "subscribe-ads":
            return await subscribe_ads(subscriptions, repository)  # type: ignore[arg-type]
        if args.command == "delete":
            return await delete_subscription(subscriptions, args.subscription_id)
        if args.command == "delete-all":
            return await delete_all_subscriptions(subscriptions, args.yes)
        print(f"Unknown command: {args.command}")
        return 1

    except ChatSageError as e:
        print(f"[ERROR] {type(e).__name__}: {e}")
        return 1
    except Exception as e:
        LOGGER.exception(f"Command {args.command} failed: {e}")
        print(f"[ERROR] {e}")
        return 1
    finally:
        if database is not None:
            await database.disconnect()
        await secrets.close()
        if own_http:
            await http.aclose()


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"[ERROR] Invalid configuration: {e}")
        sys.exit(1)
    setup_logging(settings.log_level)

    try:
        code = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
