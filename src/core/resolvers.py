"""Family resolvers: decide which matched rules produce a notification.

Each family is evaluated on its own and the results are unioned per channel.
A mute in one family never suppresses a channel matched by another family.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Mapping

from core.models import EventContext, Family, Filter, Rule, RouteTarget
from core.rules_engine import (
    match_group_mention_rules,
    match_group_message_rules,
    match_normal_rules,
)

Trigger = Callable[[Rule, EventContext], bool]
Matcher = Callable[[EventContext, Iterable[Rule], bool], Dict[int, Rule]]

# Lower wins when one channel is reached through several families.
HINT_PRECEDENCE = {
    Filter.THREAD: 0,
    Filter.WATCH: 1,
    Filter.FOLLOW: 2,
    Filter.TAG_ADDED: 3,
}

FAMILY_ORDER = (Family.NORMAL, Family.GROUP_MESSAGE, Family.GROUP_MENTION)


def _never(rule: Rule, context: EventContext) -> bool:
    return False


def _on_content_post(rule: Rule, context: EventContext) -> bool:
    return not context.is_metadata_change


def _on_new_topic(rule: Rule, context: EventContext) -> bool:
    # Only category-scoped follow rules react to a topic moving into the category.
    if context.is_category_change_event:
        return rule.category_id is not None
    if context.is_tag_change_event:
        return False
    return context.is_new_topic


def _on_tags_added(rule: Rule, context: EventContext) -> bool:
    if not context.is_tag_change_event or not context.added_tags:
        return False
    if not rule.tags:
        return True
    return bool(rule.tags & context.added_tags)


def _on_any_post(rule: Rule, context: EventContext) -> bool:
    return True


CONTENT_TRIGGERS: Mapping[Filter, Trigger] = {
    Filter.MUTE: _never,
    Filter.WATCH: _on_content_post,
    Filter.THREAD: _on_content_post,
    Filter.FOLLOW: _on_new_topic,
    Filter.TAG_ADDED: _on_tags_added,
}

# A mention fires wherever it appears, new topic or reply.
MENTION_TRIGGERS: Mapping[Filter, Trigger] = {
    Filter.MUTE: _never,
    Filter.WATCH: _on_any_post,
    Filter.THREAD: _on_any_post,
    Filter.FOLLOW: _on_any_post,
    Filter.TAG_ADDED: _on_tags_added,
}

FAMILY_TABLE: Mapping[Family, tuple[Matcher, Mapping[Filter, Trigger]]] = {
    Family.NORMAL: (match_normal_rules, CONTENT_TRIGGERS),
    Family.GROUP_MESSAGE: (match_group_message_rules, CONTENT_TRIGGERS),
    Family.GROUP_MENTION: (match_group_mention_rules, MENTION_TRIGGERS),
}


def resolve_family(
    family: Family,
    context: EventContext,
    rules: Iterable[Rule],
    tagging_enabled: bool = True,
) -> Dict[int, RouteTarget]:
    """Return the channels one family contributes for this event."""

    matcher, triggers = FAMILY_TABLE[family]
    matched = matcher(context, rules, tagging_enabled)
    if not tagging_enabled:
        # Without tagging there are no tag events to react to.
        triggers = {**triggers, Filter.TAG_ADDED: _never}
    return {
        channel_id: RouteTarget(channel_id=channel_id, filter_hint=rule.filter, family=family)
        for channel_id, rule in matched.items()
        if triggers[rule.filter](rule, context)
    }


def union_targets(family_results: Iterable[Dict[int, RouteTarget]]) -> List[RouteTarget]:
    """Merge per-family results so each channel appears once.

    When hints differ, thread beats watch beats follow; the hint only
    affects how the provider posts, never whether it posts.
    """

    merged: Dict[int, RouteTarget] = {}
    for result in family_results:
        for channel_id, target in result.items():
            current = merged.get(channel_id)
            if current is None or HINT_PRECEDENCE[target.filter_hint] < HINT_PRECEDENCE[current.filter_hint]:
                merged[channel_id] = target
    return [merged[channel_id] for channel_id in sorted(merged)]


def resolve_targets(
    context: EventContext,
    rules_by_family: Mapping[Family, Iterable[Rule]],
    tagging_enabled: bool = True,
) -> List[RouteTarget]:
    """Run every family resolver and union the results by channel id."""

    return union_targets(
        resolve_family(family, context, rules_by_family.get(family, ()), tagging_enabled)
        for family in FAMILY_ORDER
    )
