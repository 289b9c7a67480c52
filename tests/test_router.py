from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Optional

from core.config import RoutingConfig
from core.errors import GENERIC_ERROR_KEY, ProviderError
from core.models import Channel, DeliveryStatus, EventContext, Family, Filter, Rule
from core.router import NotificationRouter

CATEGORY = 5
OTHER_CATEGORY = 6
GROUP = 40
OTHER_GROUP = 41


class FakeContentStore:
    def __init__(self) -> None:
        self.contexts: dict[int, EventContext] = {}
        self.lookups: list[int] = []

    def add(self, context: EventContext) -> EventContext:
        self.contexts[context.post_id] = context
        return context

    def get_event_context(self, post_id: int) -> Optional[EventContext]:
        self.lookups.append(post_id)
        return self.contexts.get(post_id)


class FakeVisibility:
    def __init__(self, visible: bool = True) -> None:
        self.visible = visible
        self.checked: list[tuple[str, int]] = []

    def can_see(self, username: str, context: EventContext) -> bool:
        self.checked.append((username, context.post_id))
        return self.visible


class FakeRuleStore:
    def __init__(self) -> None:
        self.rules: list[Rule] = []
        self.reads = 0

    def add(self, channel_id: int, filter_: Filter, **kwargs) -> Rule:
        rule = Rule(id=len(self.rules) + 1, channel_id=channel_id, filter=filter_, **kwargs)
        self.rules.append(rule)
        return rule

    def rules_for_family(self, family: Family) -> list[Rule]:
        self.reads += 1
        return [rule for rule in self.rules if rule.family == family]


class FakeChannelStore:
    def __init__(self) -> None:
        self.channels: dict[int, Channel] = {}
        self.writes: list[tuple[int, Optional[str]]] = []
        self.broken_lookups: set[int] = set()
        self.broken_writes: set[int] = set()

    def add(self, channel_id: int, provider_id: str = "dummy") -> Channel:
        channel = Channel(id=channel_id, provider_id=provider_id)
        self.channels[channel_id] = channel
        return channel

    def get_channel(self, channel_id: int) -> Optional[Channel]:
        if channel_id in self.broken_lookups:
            raise RuntimeError("database is locked")
        return self.channels.get(channel_id)

    def set_error_state(self, channel_id: int, error_key: Optional[str], error_info: Optional[str]) -> None:
        if channel_id in self.broken_writes:
            raise RuntimeError("database is locked")
        self.writes.append((channel_id, error_key))
        self.channels[channel_id] = replace(self.channels[channel_id], error_key=error_key, error_info=error_info)

    def error_key(self, channel_id: int) -> Optional[str]:
        return self.channels[channel_id].error_key


class DummyProvider:
    """Records deliveries; raises the configured exception instead when set."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, int, Filter]] = []
        self.exception: Optional[Exception] = None
        self.failing_channels: set[int] = set()
        self.delay = 0.0

    async def deliver(self, channel: Channel, context: EventContext, filter_hint: Filter) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exception is not None and (not self.failing_channels or channel.id in self.failing_channels):
            raise self.exception
        self.sent.append((channel.id, context.post_id, filter_hint))

    def sent_to_channel_ids(self) -> list[int]:
        return sorted(channel_id for channel_id, _, _ in self.sent)


class Harness:
    def __init__(self, **config) -> None:
        config.setdefault("enabled", True)
        self.config = RoutingConfig(**config)
        self.content = FakeContentStore()
        self.visibility = FakeVisibility()
        self.rules = FakeRuleStore()
        self.channels = FakeChannelStore()
        self.provider = DummyProvider()
        for channel_id in (1, 2, 3):
            self.channels.add(channel_id)

    def router(self) -> NotificationRouter:
        return NotificationRouter(
            config=self.config,
            content_store=self.content,
            visibility=self.visibility,
            rule_store=self.rules,
            channel_store=self.channels,
            providers={"dummy": self.provider},
        )

    def route(self, post_id: int):
        return asyncio.run(self.router().route(post_id))


def _post(post_id: int, **overrides) -> EventContext:
    values = dict(
        post_id=post_id,
        topic_id=10,
        category_id=CATEGORY,
        is_private_message=False,
        post_number=1,
    )
    values.update(overrides)
    return EventContext(**values)


def _private_post(post_id: int, groups: set[int], **overrides) -> EventContext:
    return _post(
        post_id,
        category_id=None,
        is_private_message=True,
        participant_groups=frozenset(groups),
        **overrides,
    )


def test_disabled_routing_is_a_no_op() -> None:
    harness = Harness(enabled=False)
    harness.content.add(_post(1))
    harness.rules.add(1, Filter.WATCH, category_id=CATEGORY)
    harness.provider.exception = ProviderError("hello")

    assert harness.route(1) == []
    assert harness.provider.sent == []
    assert harness.content.lookups == []
    assert harness.channels.writes == []


def test_missing_post_routes_nowhere() -> None:
    harness = Harness()
    harness.rules.add(1, Filter.WATCH)
    assert harness.route(99) == []
    assert harness.provider.sent == []


def test_visibility_gate_blocks_before_rules_are_read() -> None:
    harness = Harness(acting_username="david")
    harness.content.add(_post(1))
    harness.rules.add(1, Filter.FOLLOW)
    harness.visibility.visible = False

    assert harness.route(1) == []
    assert harness.visibility.checked == [("david", 1)]
    assert harness.rules.reads == 0

    harness.visibility.visible = True
    harness.route(1)
    assert harness.provider.sent_to_channel_ids() == [1]


def test_visibility_gate_falls_back_to_system_identity() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    harness.route(1)
    assert harness.visibility.checked == [("system", 1)]


def test_watch_follow_mute_for_new_topic_and_reply() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    harness.content.add(_post(2, post_number=2))
    harness.rules.add(1, Filter.WATCH, category_id=CATEGORY)
    harness.rules.add(2, Filter.FOLLOW, category_id=CATEGORY)
    harness.rules.add(3, Filter.MUTE, category_id=CATEGORY)

    harness.route(1)
    assert harness.provider.sent_to_channel_ids() == [1, 2]

    harness.provider.sent.clear()
    harness.route(2)
    assert harness.provider.sent_to_channel_ids() == [1]


def test_specific_mute_beats_wildcard_watch() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    harness.content.add(_post(2, category_id=OTHER_CATEGORY))
    harness.rules.add(1, Filter.WATCH)
    harness.rules.add(1, Filter.MUTE, category_id=CATEGORY)

    harness.route(1)
    assert harness.provider.sent == []

    harness.route(2)
    assert harness.provider.sent_to_channel_ids() == [1]


def test_specific_thread_beats_wildcard_watch_and_is_passed_as_hint() -> None:
    harness = Harness()
    harness.content.add(_post(2, post_number=2))
    harness.rules.add(1, Filter.WATCH)
    harness.rules.add(1, Filter.THREAD, category_id=CATEGORY)

    harness.route(2)
    assert harness.provider.sent == [(1, 2, Filter.THREAD)]


def test_private_messages_only_reach_group_message_rules() -> None:
    harness = Harness()
    harness.content.add(_private_post(1, {GROUP}))
    harness.content.add(_private_post(2, set()))
    harness.rules.add(1, Filter.WATCH)
    harness.rules.add(2, Filter.WATCH, family=Family.GROUP_MESSAGE, group_id=GROUP)

    harness.route(1)
    assert harness.provider.sent_to_channel_ids() == [2]

    harness.provider.sent.clear()
    harness.route(2)
    assert harness.provider.sent == []


def test_private_message_with_multiple_groups() -> None:
    harness = Harness()
    harness.content.add(_private_post(1, {GROUP, OTHER_GROUP}))
    harness.rules.add(1, Filter.WATCH, family=Family.GROUP_MESSAGE, group_id=GROUP)
    harness.rules.add(2, Filter.WATCH, family=Family.GROUP_MESSAGE, group_id=OTHER_GROUP)

    harness.route(1)
    assert harness.provider.sent_to_channel_ids() == [1, 2]


def test_group_mentions_in_public_and_private_topics() -> None:
    harness = Harness()
    harness.content.add(_post(3, post_number=3, mentioned_groups=frozenset({GROUP})))
    harness.content.add(_private_post(4, {OTHER_GROUP}, post_number=2, mentioned_groups=frozenset({GROUP})))
    harness.rules.add(1, Filter.WATCH)
    harness.rules.add(2, Filter.WATCH, family=Family.GROUP_MESSAGE, group_id=GROUP)
    harness.rules.add(3, Filter.WATCH, family=Family.GROUP_MENTION, group_id=GROUP)

    harness.route(3)
    assert harness.provider.sent_to_channel_ids() == [1, 3]

    harness.provider.sent.clear()
    harness.route(4)
    assert harness.provider.sent == []


def test_mention_rule_notifies_despite_muted_category() -> None:
    harness = Harness()
    harness.content.add(_post(3, post_number=3, mentioned_groups=frozenset({GROUP})))
    harness.rules.add(1, Filter.MUTE, category_id=CATEGORY)

    harness.route(3)
    assert harness.provider.sent == []

    harness.rules.add(1, Filter.WATCH, family=Family.GROUP_MENTION, group_id=GROUP)
    harness.route(3)
    assert harness.provider.sent_to_channel_ids() == [1]


def test_channel_matched_by_two_families_is_notified_once() -> None:
    harness = Harness()
    harness.content.add(_post(1, mentioned_groups=frozenset({GROUP})))
    harness.rules.add(1, Filter.WATCH, category_id=CATEGORY)
    harness.rules.add(1, Filter.THREAD, family=Family.GROUP_MENTION, group_id=GROUP)

    outcomes = harness.route(1)
    assert [outcome.channel_id for outcome in outcomes] == [1]
    assert harness.provider.sent == [(1, 1, Filter.THREAD)]


def test_category_change_triggers_scoped_follow_only() -> None:
    harness = Harness()
    harness.content.add(_post(5, post_number=4, is_category_change_event=True))
    harness.rules.add(1, Filter.FOLLOW, category_id=CATEGORY)
    harness.rules.add(2, Filter.FOLLOW)

    harness.route(5)
    assert harness.provider.sent_to_channel_ids() == [1]


def test_tag_change_events() -> None:
    harness = Harness()
    harness.content.add(
        _post(
            6,
            post_number=2,
            is_tag_change_event=True,
            added_tags=frozenset({"extra"}),
            current_tags=frozenset({"gsoc", "extra"}),
        )
    )
    harness.rules.add(1, Filter.TAG_ADDED, category_id=CATEGORY, tags=frozenset({"gsoc"}))
    harness.rules.add(2, Filter.TAG_ADDED, category_id=CATEGORY, tags=frozenset({"extra"}))
    harness.rules.add(3, Filter.WATCH)

    harness.route(6)
    assert harness.provider.sent_to_channel_ids() == [2]


def test_rules_with_tags_only_match_tagged_topics() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    harness.content.add(_post(2, current_tags=frozenset({"gsoc"})))
    harness.rules.add(1, Filter.FOLLOW, category_id=CATEGORY, tags=frozenset({"gsoc"}))

    harness.route(1)
    harness.route(2)
    assert harness.provider.sent == [(1, 2, Filter.FOLLOW)]


def test_error_marker_follows_each_attempt() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    harness.rules.add(1, Filter.WATCH, category_id=CATEGORY)

    harness.provider.exception = ProviderError("hello", info={"status": 400})
    outcomes = harness.route(1)
    assert outcomes[0].status == DeliveryStatus.STRUCTURED_ERROR
    assert harness.channels.error_key(1) == "hello"
    assert '"status": 400' in harness.channels.channels[1].error_info
    assert harness.provider.sent == []

    harness.provider.exception = RuntimeError("boom")
    outcomes = harness.route(1)
    assert outcomes[0].status == DeliveryStatus.ERROR
    assert harness.channels.error_key(1) == GENERIC_ERROR_KEY

    harness.provider.exception = None
    outcomes = harness.route(1)
    assert outcomes[0].is_success
    assert harness.channels.error_key(1) is None
    assert harness.channels.channels[1].error_info is None


def test_provider_error_without_key_is_generic() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    harness.rules.add(1, Filter.WATCH)
    harness.provider.exception = ProviderError(info={"response_body": "nope"})

    harness.route(1)
    assert harness.channels.error_key(1) == GENERIC_ERROR_KEY
    assert "nope" in harness.channels.channels[1].error_info


def test_successful_delivery_on_healthy_channel_skips_write() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    harness.rules.add(1, Filter.WATCH)

    harness.route(1)
    assert harness.channels.writes == []


def test_one_failing_channel_does_not_affect_others() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    for channel_id in (1, 2, 3):
        harness.rules.add(channel_id, Filter.WATCH)
    harness.provider.exception = ProviderError("chat_integration.provider.telegram.errors.forbidden")
    harness.provider.failing_channels = {2}

    outcomes = harness.route(1)

    assert [outcome.is_success for outcome in outcomes] == [True, False, True]
    assert harness.provider.sent_to_channel_ids() == [1, 3]
    assert harness.channels.writes == [(2, "chat_integration.provider.telegram.errors.forbidden")]


def test_slow_provider_times_out_with_generic_marker() -> None:
    harness = Harness(delivery_timeout=0.01)
    harness.content.add(_post(1))
    harness.rules.add(1, Filter.WATCH)
    harness.provider.delay = 1.0

    outcomes = harness.route(1)
    assert outcomes[0].status == DeliveryStatus.ERROR
    assert harness.channels.error_key(1) == GENERIC_ERROR_KEY


def test_channels_with_disabled_provider_are_skipped() -> None:
    harness = Harness()
    harness.channels.add(4, provider_id="slack")
    harness.content.add(_post(1))
    harness.rules.add(1, Filter.WATCH)
    harness.rules.add(4, Filter.WATCH)

    outcomes = harness.route(1)
    assert [outcome.channel_id for outcome in outcomes] == [1]
    assert harness.channels.error_key(4) is None


def test_plan_lists_targets_without_delivering() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    harness.rules.add(2, Filter.THREAD)

    targets = harness.router().plan(1)
    assert [(target.channel_id, target.filter_hint) for target in targets] == [(2, Filter.THREAD)]
    assert harness.provider.sent == []


def test_failed_marker_write_does_not_stop_other_channels() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    for channel_id in (1, 2, 3):
        harness.rules.add(channel_id, Filter.WATCH)
    harness.provider.exception = ProviderError("hello")
    harness.provider.failing_channels = {1}
    harness.provider.delay = 0.05
    harness.channels.broken_writes = {1}

    outcomes = harness.route(1)

    assert [outcome.channel_id for outcome in outcomes] == [1, 2, 3]
    assert outcomes[0].status == DeliveryStatus.STRUCTURED_ERROR
    assert harness.provider.sent_to_channel_ids() == [2, 3]
    assert harness.channels.error_key(1) is None


def test_failed_channel_lookup_is_reported_for_that_channel_only() -> None:
    harness = Harness()
    harness.content.add(_post(1))
    for channel_id in (1, 2, 3):
        harness.rules.add(channel_id, Filter.WATCH)
    harness.channels.broken_lookups = {2}

    outcomes = harness.route(1)

    assert [outcome.status for outcome in outcomes] == [
        DeliveryStatus.OK,
        DeliveryStatus.ERROR,
        DeliveryStatus.OK,
    ]
    assert outcomes[1].error_key == GENERIC_ERROR_KEY
    assert harness.provider.sent_to_channel_ids() == [1, 3]
