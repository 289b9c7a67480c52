"""Telegram Bot API delivery provider.

Posts notifications into a Telegram chat through a bot, mapping known API
failures to stable error keys that end up on the channel record.
"""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from typing import Any, Optional

from adapters.notification_formatting import format_notification
from core.errors import ProviderError
from core.models import Channel, EventContext, Filter
from core.ports import ThreadStorePort

PROVIDER_ID = "telegram"

CHANNEL_NOT_FOUND_KEY = "chat_integration.provider.telegram.errors.channel_not_found"
FORBIDDEN_KEY = "chat_integration.provider.telegram.errors.forbidden"


def error_key_for_description(description: str) -> Optional[str]:
    """Map a Bot API error description to a known error key, if any."""

    if "chat not found" in description:
        return CHANNEL_NOT_FOUND_KEY
    if "Forbidden" in description:
        return FORBIDDEN_KEY
    return None


class TelegramBotProvider:
    """Provider that sends messages via the Telegram Bot API."""

    def __init__(self, bot_token: str, threads: Optional[ThreadStorePort] = None, timeout: float = 10) -> None:
        self._bot_token = bot_token
        self._threads = threads
        self._timeout = timeout

    def _endpoint(self) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            # The Bot API reports failures as JSON bodies on 4xx responses.
            body = e.read().decode("utf-8", errors="replace")
            try:
                return json.loads(body)
            except ValueError:
                raise ProviderError(info={"status": e.code, "response_body": body}) from e

    async def deliver(self, channel: Channel, context: EventContext, filter_hint: Filter) -> None:
        """Send the formatted notification to the channel's chat."""

        chat_id = channel.data.get("chat_id")
        if not chat_id:
            raise ProviderError(
                CHANNEL_NOT_FOUND_KEY,
                info={"reason": "channel has no chat_id"},
            )

        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": format_notification(context, filter_hint, mode="html"),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        thread_ref = None
        if filter_hint == Filter.THREAD and self._threads is not None:
            thread_ref = self._threads.get_thread(channel.id, context.topic_id)
            if thread_ref:
                payload["reply_to_message_id"] = int(thread_ref)

        # urllib blocks; run it off the event loop.
        response = await asyncio.to_thread(self._post, payload)
        if not response.get("ok"):
            description = str(response.get("description", ""))
            raise ProviderError(
                error_key_for_description(description),
                info={"message": payload["text"], "response_body": response},
                message=f"Bot API error: {description}",
            )

        if filter_hint == Filter.THREAD and self._threads is not None and not thread_ref:
            message_id = response.get("result", {}).get("message_id")
            if message_id is not None:
                self._threads.set_thread(channel.id, context.topic_id, str(message_id))
