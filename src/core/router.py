"""Core notification routing pipeline.

This module is integration-agnostic. It only relies on ports for content,
visibility, rules, channels and delivery, so it can be driven by a CLI, a
webhook or a job queue without changes here.

For one post the router enforces a strict order:
1) Feature flag check
2) Event context lookup
3) Visibility gate for the acting identity
4) Family resolvers, unioned per channel
5) Concurrent delivery, one failure boundary per channel
6) Per-channel error marker update
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Mapping, Optional

from core.config import RoutingConfig
from core.errors import GENERIC_ERROR_KEY, ProviderError
from core.models import (
    Channel,
    DeliveryOutcome,
    DeliveryStatus,
    EventContext,
    RouteTarget,
)
from core.ports import (
    ChannelStorePort,
    ContentStorePort,
    ProviderPort,
    RuleStorePort,
    VisibilityPort,
)
from core.resolvers import FAMILY_ORDER, resolve_targets

LOGGER = logging.getLogger(__name__)


def _dump_info(info: Mapping[str, Any]) -> str:
    return json.dumps(info, indent=2, sort_keys=True, default=str)


def outcome_from_exception(channel_id: int, exc: BaseException) -> DeliveryOutcome:
    """Convert a provider failure into a DeliveryOutcome."""

    if isinstance(exc, ProviderError) and exc.error_key:
        return DeliveryOutcome(
            channel_id=channel_id,
            status=DeliveryStatus.STRUCTURED_ERROR,
            error_key=exc.error_key,
            error_info=_dump_info(exc.info) if exc.info else None,
        )

    info: dict[str, Any]
    if isinstance(exc, ProviderError) and exc.info:
        info = exc.info
    else:
        info = {"exception": type(exc).__name__, "message": str(exc)}
    return DeliveryOutcome(
        channel_id=channel_id,
        status=DeliveryStatus.ERROR,
        error_key=GENERIC_ERROR_KEY,
        error_info=_dump_info(info),
    )


class NotificationRouter:
    """Orchestrates visibility gating, rule resolution and delivery."""

    def __init__(
        self,
        config: RoutingConfig,
        content_store: ContentStorePort,
        visibility: VisibilityPort,
        rule_store: RuleStorePort,
        channel_store: ChannelStorePort,
        providers: Mapping[str, ProviderPort],
    ) -> None:
        self._config = config
        self._content = content_store
        self._visibility = visibility
        self._rules = rule_store
        self._channels = channel_store
        self._providers = dict(providers)

    def plan(self, post_id: int) -> List[RouteTarget]:
        """Return the channels a post would notify, without delivering."""

        context = self._load_context(post_id)
        if context is None:
            return []
        return self._resolve(context)

    async def route(self, post_id: int) -> List[DeliveryOutcome]:
        """Route one post to every matching channel.

        Never raises for delivery problems; each channel's result is returned
        and persisted on that channel's error marker.
        """

        context = self._load_context(post_id)
        if context is None:
            return []

        targets = self._resolve(context)
        if not targets:
            LOGGER.debug("No channels matched post %s", post_id)
            return []

        results = await asyncio.gather(*(self._deliver(target, context) for target in targets))
        return [outcome for outcome in results if outcome is not None]

    def _load_context(self, post_id: int) -> Optional[EventContext]:
        if not self._config.enabled:
            LOGGER.debug("Routing disabled; skipping post %s", post_id)
            return None

        context = self._content.get_event_context(post_id)
        if context is None:
            LOGGER.info("Post %s not found; nothing to route", post_id)
            return None

        # Gate runs before any rule is read.
        username = self._config.effective_username
        if not self._visibility.can_see(username, context):
            LOGGER.info("Post %s is not visible to %s; skipping", post_id, username)
            return None
        return context

    def _resolve(self, context: EventContext) -> List[RouteTarget]:
        # One rule snapshot per pass.
        rules_by_family = {family: self._rules.rules_for_family(family) for family in FAMILY_ORDER}
        return resolve_targets(context, rules_by_family, self._config.tagging_enabled)

    async def _deliver(self, target: RouteTarget, context: EventContext) -> Optional[DeliveryOutcome]:
        try:
            channel = self._channels.get_channel(target.channel_id)
        except Exception as exc:
            LOGGER.exception("Could not load channel %s; skipping delivery", target.channel_id)
            return outcome_from_exception(target.channel_id, exc)
        if channel is None:
            LOGGER.warning("Rule points at missing channel %s; skipping", target.channel_id)
            return None

        provider = self._providers.get(channel.provider_id)
        if provider is None:
            LOGGER.warning(
                "Provider %s is not enabled; skipping channel %s",
                channel.provider_id,
                channel.id,
            )
            return None

        try:
            await asyncio.wait_for(
                provider.deliver(channel, context, target.filter_hint),
                timeout=self._config.delivery_timeout,
            )
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Delivery to channel %s timed out after %ss",
                channel.id,
                self._config.delivery_timeout,
            )
            outcome = DeliveryOutcome(
                channel_id=channel.id,
                status=DeliveryStatus.ERROR,
                error_key=GENERIC_ERROR_KEY,
                error_info=_dump_info({"exception": "TimeoutError", "timeout": self._config.delivery_timeout}),
            )
        except Exception as exc:
            outcome = outcome_from_exception(channel.id, exc)
            if outcome.status == DeliveryStatus.STRUCTURED_ERROR:
                LOGGER.warning("Delivery to channel %s failed: %s", channel.id, outcome.error_key)
            else:
                LOGGER.exception("Delivery to channel %s raised an unexpected error", channel.id)
        else:
            outcome = DeliveryOutcome(channel_id=channel.id, status=DeliveryStatus.OK)
            LOGGER.info(
                "Post %s sent to channel %s (%s via %s)",
                context.post_id,
                channel.id,
                target.filter_hint.value,
                target.family.value,
            )

        try:
            self._record(channel, outcome)
        except Exception:
            LOGGER.exception("Could not save the error marker for channel %s", channel.id)
        return outcome

    def _record(self, channel: Channel, outcome: DeliveryOutcome) -> None:
        """Overwrite the channel's error marker with this attempt's result."""

        if outcome.is_success:
            if channel.error_key is None and channel.error_info is None:
                return
            self._channels.set_error_state(channel.id, None, None)
            return
        self._channels.set_error_state(channel.id, outcome.error_key, outcome.error_info)
