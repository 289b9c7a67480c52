"""Telethon bot session for the telegram_client provider.

Only `route` opens a session, and only when the telegram_client provider is
enabled. The caller owns the returned client and disconnects it when the
routing pass is over.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from telethon import TelegramClient

LOGGER = logging.getLogger(__name__)

DEFAULT_SESSION = "chatrelay"
REQUIRED_ENV = ("API_ID", "API_HASH", "TELEGRAM_BOT_TOKEN")


async def open_bot_client() -> TelegramClient:
    """Sign in as the relay bot using credentials from the environment."""

    load_dotenv()
    missing = [name for name in REQUIRED_ENV if not os.getenv(name)]
    if missing:
        raise RuntimeError(f"telegram_client provider needs {', '.join(missing)} in the environment")

    session_name = os.getenv("SESSION_NAME", DEFAULT_SESSION)
    LOGGER.info("Opening Telegram bot session %s", session_name)
    client = TelegramClient(session_name, int(os.environ["API_ID"]), os.environ["API_HASH"])
    await client.start(bot_token=os.environ["TELEGRAM_BOT_TOKEN"])
    return client
