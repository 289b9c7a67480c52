"""Ports (interfaces) used by the routing engine.

Ports define the minimal contracts for the content store, rule/channel
storage and delivery providers so the core can be reused with different
backends.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from core.models import Channel, EventContext, Family, Filter, Rule


class ContentStorePort(Protocol):
    """Resolves a post identifier into the facts used for matching."""

    def get_event_context(self, post_id: int) -> Optional[EventContext]:
        ...


class VisibilityPort(Protocol):
    """Answers whether an identity may read a post."""

    def can_see(self, username: str, context: EventContext) -> bool:
        ...


class RuleStorePort(Protocol):
    """Read-only access to configured rules."""

    def rules_for_family(self, family: Family) -> List[Rule]:
        ...


class ChannelStorePort(Protocol):
    """Channel lookup plus the per-channel error marker."""

    def get_channel(self, channel_id: int) -> Optional[Channel]:
        ...

    def set_error_state(self, channel_id: int, error_key: Optional[str], error_info: Optional[str]) -> None:
        ...


class ThreadStorePort(Protocol):
    """First provider message per (channel, topic), used by the thread hint."""

    def get_thread(self, channel_id: int, topic_id: int) -> Optional[str]:
        ...

    def set_thread(self, channel_id: int, topic_id: int, message_ref: str) -> None:
        ...


class ProviderPort(Protocol):
    """Delivery adapter for one provider.

    deliver() returns on success and raises on failure, ProviderError for
    known conditions. The router turns either into a DeliveryOutcome.
    """

    async def deliver(self, channel: Channel, context: EventContext, filter_hint: Filter) -> None:
        ...
