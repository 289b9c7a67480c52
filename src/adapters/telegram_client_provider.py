"""Telethon delivery provider.

Sends notifications through an authorized Telethon client (bot or user
session), for destinations the Bot API cannot reach directly.
"""

from __future__ import annotations

from typing import Optional

from telethon import errors

from adapters.notification_formatting import format_notification
from adapters.telegram_bot_provider import CHANNEL_NOT_FOUND_KEY, FORBIDDEN_KEY
from core.errors import ProviderError
from core.models import Channel, EventContext, Filter
from core.ports import ThreadStorePort

PROVIDER_ID = "telegram_client"

FLOOD_WAIT_KEY = "chat_integration.provider.telegram.errors.flood_wait"


def _chat_ref(raw):
    # Numeric ids arrive as strings from JSON config; usernames stay strings.
    if isinstance(raw, str) and raw.lstrip("-").isdigit():
        return int(raw)
    return raw


class TelegramClientProvider:
    """Provider adapter that sends messages with a Telethon client."""

    def __init__(self, client, threads: Optional[ThreadStorePort] = None) -> None:
        self._client = client
        self._threads = threads

    async def deliver(self, channel: Channel, context: EventContext, filter_hint: Filter) -> None:
        """Send the formatted notification, translating Telethon errors to error keys."""

        chat = channel.data.get("chat_id")
        if not chat:
            raise ProviderError(CHANNEL_NOT_FOUND_KEY, info={"reason": "channel has no chat_id"})

        message = format_notification(context, filter_hint, mode="markdown")
        reply_to = None
        if filter_hint == Filter.THREAD and self._threads is not None:
            thread_ref = self._threads.get_thread(channel.id, context.topic_id)
            reply_to = int(thread_ref) if thread_ref else None

        try:
            sent = await self._client.send_message(
                _chat_ref(chat),
                message,
                parse_mode="md",
                reply_to=reply_to,
                link_preview=False,
            )
        except (errors.ChatWriteForbiddenError, errors.ChannelPrivateError, errors.UserBannedInChannelError) as e:
            raise ProviderError(FORBIDDEN_KEY, info={"chat": chat, "error": type(e).__name__}) from e
        except (errors.PeerIdInvalidError, errors.ChatIdInvalidError, ValueError) as e:
            # Telethon raises ValueError when it cannot resolve an entity.
            raise ProviderError(CHANNEL_NOT_FOUND_KEY, info={"chat": chat, "error": str(e)}) from e
        except errors.FloodWaitError as e:
            raise ProviderError(FLOOD_WAIT_KEY, info={"chat": chat, "seconds": e.seconds}) from e

        if filter_hint == Filter.THREAD and self._threads is not None and reply_to is None:
            message_id = getattr(sent, "id", None)
            if message_id is not None:
                self._threads.set_thread(channel.id, context.topic_id, str(message_id))
