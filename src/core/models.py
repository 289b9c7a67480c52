"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any content store or chat provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class Family(Enum):
    """Independent rule evaluation tracks."""

    NORMAL = "normal"
    GROUP_MESSAGE = "group_message"
    GROUP_MENTION = "group_mention"


class Filter(Enum):
    """Action prescribed by a matched rule."""

    WATCH = "watch"
    FOLLOW = "follow"
    MUTE = "mute"
    THREAD = "thread"
    TAG_ADDED = "tag_added"


class DeliveryStatus(Enum):
    OK = "ok"
    STRUCTURED_ERROR = "structured_error"
    ERROR = "error"


@dataclass(frozen=True)
class Rule:
    """Configuration row mapping a matching condition and filter to a channel."""

    id: int
    channel_id: int
    filter: Filter
    family: Family = Family.NORMAL
    category_id: Optional[int] = None
    group_id: Optional[int] = None
    tags: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Channel:
    """Delivery destination bound to one provider."""

    id: int
    provider_id: str
    data: Mapping[str, Any] = field(default_factory=dict)
    error_key: Optional[str] = None
    error_info: Optional[str] = None


@dataclass(frozen=True)
class EventContext:
    """Read-only facts about one triggering post used for matching."""

    post_id: int
    topic_id: int
    category_id: Optional[int]
    is_private_message: bool
    post_number: int
    added_tags: frozenset[str] = frozenset()
    current_tags: frozenset[str] = frozenset()
    mentioned_groups: frozenset[int] = frozenset()
    participant_groups: frozenset[int] = frozenset()
    is_category_change_event: bool = False
    is_tag_change_event: bool = False
    # Display fields, consumed by notification formatting only.
    title: str = ""
    excerpt: str = ""
    url: Optional[str] = None
    username: Optional[str] = None
    category_name: Optional[str] = None

    @property
    def is_new_topic(self) -> bool:
        return self.post_number == 1

    @property
    def is_metadata_change(self) -> bool:
        return self.is_category_change_event or self.is_tag_change_event


@dataclass(frozen=True)
class RouteTarget:
    """A channel selected for notification, with the filter used as delivery hint."""

    channel_id: int
    filter_hint: Filter
    family: Family


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one delivery attempt, captured instead of raised."""

    channel_id: int
    status: DeliveryStatus
    error_key: Optional[str] = None
    error_info: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status == DeliveryStatus.OK
