"""Application entry point for chatrelay."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters import telegram_bot_provider, telegram_client_provider
from adapters.snapshot_content import SnapshotContentStore
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_bot_provider import TelegramBotProvider
from adapters.telegram_client_provider import TelegramClientProvider
from client import open_bot_client
from core.router import NotificationRouter
from core.rules_engine import build_channels, build_rules

NAME = "CHATRELAY"
FONT = "tarty-1"

# Environment secrets masked in every log line.
SECRET_ENV_NAMES = ("TELEGRAM_BOT_TOKEN", "API_HASH")
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _secret_values() -> list[str]:
    values = {os.getenv(name) for name in SECRET_ENV_NAMES}
    return sorted((value for value in values if value), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = _RedactingFormatter(_secret_values(), fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/chatrelay.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _provider_enabled(provider_id: str) -> bool:
    return bool(settings.PROVIDERS.get(provider_id, {}).get("enabled", False))


def _load_content() -> SnapshotContentStore:
    return SnapshotContentStore.from_file(
        settings.CONTENT_SNAPSHOT_PATH,
        base_url=settings.CONTENT_BASE_URL,
        excerpt_chars=settings.EXCERPT_CHARS,
    )


def _load_storage(content: SnapshotContentStore) -> SQLiteStorage:
    """Validate channels and rules from config.json and sync them into SQLite."""

    channels = build_channels(settings.CHANNELS_CONFIG)
    rules = build_rules(
        settings.RULES_CONFIG,
        channel_ids={channel.id for channel in channels},
        group_ids=content.group_ids(),
    )
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    storage.sync_config(channels, rules)
    logging.getLogger(__name__).info("%s channels and %s rules are loaded", len(channels), len(rules))
    return storage


async def _route(post_id: int, dry_run: bool) -> None:
    logger = logging.getLogger(__name__)
    content = _load_content()
    storage = _load_storage(content)

    # Select provider adapters from configuration so the router stays
    # independent from delivery details.
    providers = {}
    client = None
    if _provider_enabled(telegram_bot_provider.PROVIDER_ID):
        if not settings.TELEGRAM_BOT_TOKEN:
            raise RuntimeError("TELEGRAM_BOT_TOKEN is required when the telegram provider is enabled")
        providers[telegram_bot_provider.PROVIDER_ID] = TelegramBotProvider(
            settings.TELEGRAM_BOT_TOKEN,
            threads=storage,
            timeout=settings.ROUTING.delivery_timeout,
        )
    if _provider_enabled(telegram_client_provider.PROVIDER_ID) and not dry_run:
        client = await open_bot_client()
        providers[telegram_client_provider.PROVIDER_ID] = TelegramClientProvider(client, threads=storage)
    logger.info("Enabled providers - %s", ", ".join(sorted(providers)) or "none")

    router = NotificationRouter(
        config=settings.ROUTING,
        content_store=content,
        visibility=content,
        rule_store=storage,
        channel_store=storage,
        providers=providers,
    )

    try:
        if dry_run:
            for target in router.plan(post_id):
                print(f"channel {target.channel_id} | {target.filter_hint.value} | {target.family.value}")
            return

        outcomes = await router.route(post_id)
        for outcome in outcomes:
            detail = f" | {outcome.error_key}" if outcome.error_key else ""
            print(f"channel {outcome.channel_id} | {outcome.status.value}{detail}")
        if not outcomes:
            print("No channels notified.")
    finally:
        if client is not None:
            await client.disconnect()


def _list_channels() -> None:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    channels = storage.list_channels()
    if not channels:
        print("No channels configured. Run `chatrelay check` to sync config.json.")
        return
    for channel in channels:
        status = channel.error_key or "ok"
        print(f"{channel.id}. {channel.provider_id} | {status}")


def _check() -> None:
    content = _load_content()
    _load_storage(content)
    print("Configuration is valid.")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="chatrelay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    route_parser = subparsers.add_parser("route", help="Route one post to matching channels")
    route_parser.add_argument("post_id", type=int)
    route_parser.add_argument("--dry-run", action="store_true", help="Print targets without delivering")
    subparsers.add_parser("channels", help="List channels and their last delivery error")
    subparsers.add_parser("check", help="Validate config.json and sync it into the database")

    args = parser.parse_args(argv)
    _print_banner()
    _configure_logging()

    if args.command == "channels":
        _list_channels()
        return
    if args.command == "check":
        _check()
        return
    asyncio.run(_route(args.post_id, args.dry_run))


if __name__ == "__main__":
    main()
