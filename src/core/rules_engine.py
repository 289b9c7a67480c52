"""Rule compilation and matching logic (core domain)."""

from __future__ import annotations

import logging
from typing import Any, Collection, Dict, Iterable, List, Optional, Tuple

from core.errors import ConfigurationError
from core.models import Channel, EventContext, Family, Filter, Rule

LOGGER = logging.getLogger(__name__)

# Lower wins when two rules for the same channel are equally specific.
FILTER_PRECEDENCE = {
    Filter.MUTE: 0,
    Filter.THREAD: 1,
    Filter.WATCH: 2,
    Filter.FOLLOW: 3,
    Filter.TAG_ADDED: 4,
}

GROUP_FAMILIES = (Family.GROUP_MESSAGE, Family.GROUP_MENTION)


def _parse_enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"Unsupported {field_name} {value!r} (expected one of: {choices})") from None


def _optional_int(value: Any, field_name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{field_name} must be an integer, got {value!r}") from None


def build_channels(channels_config: Iterable[dict]) -> List[Channel]:
    """Normalize channel configs, rejecting duplicates and missing providers."""

    channels: List[Channel] = []
    seen: set[int] = set()
    for entry in channels_config:
        channel_id = _optional_int(entry.get("id"), "channel id")
        if channel_id is None:
            raise ConfigurationError("Every channel needs an id")
        if channel_id in seen:
            raise ConfigurationError(f"Duplicate channel id {channel_id}")
        provider_id = entry.get("provider")
        if not provider_id:
            raise ConfigurationError(f"Channel {channel_id} has no provider")
        seen.add(channel_id)
        channels.append(
            Channel(
                id=channel_id,
                provider_id=str(provider_id),
                data=dict(entry.get("data", {}) or {}),
            )
        )
    return channels


def validate_rule(
    rule: Rule,
    channel_ids: Collection[int],
    group_ids: Optional[Collection[int]] = None,
) -> None:
    """Raise ConfigurationError when a rule can never be routed correctly."""

    if rule.channel_id not in channel_ids:
        raise ConfigurationError(f"Rule {rule.id} references unknown channel {rule.channel_id}")

    if rule.family in GROUP_FAMILIES:
        if rule.group_id is None:
            raise ConfigurationError(f"Rule {rule.id} ({rule.family.value}) requires a group_id")
        if rule.category_id is not None:
            raise ConfigurationError(f"Rule {rule.id} ({rule.family.value}) cannot have a category_id")
        if group_ids is not None and rule.group_id not in group_ids:
            raise ConfigurationError(f"Rule {rule.id} references unknown group {rule.group_id}")
    elif rule.group_id is not None:
        raise ConfigurationError(f"Rule {rule.id} (normal) cannot have a group_id")


def build_rules(
    rules_config: Iterable[dict],
    channel_ids: Collection[int],
    group_ids: Optional[Collection[int]] = None,
) -> List[Rule]:
    """Normalize rule configs into immutable Rule records.

    Rules without an explicit id are numbered after the highest explicit id,
    in declaration order, so the id doubles as creation order for
    tie-breaking. Validation errors are raised here, on the configuration
    path, rather than during routing.
    """

    entries = list(rules_config)
    explicit_ids = [_optional_int(entry.get("id"), "rule id") for entry in entries]
    next_id = max((rule_id for rule_id in explicit_ids if rule_id is not None), default=0)

    compiled: List[Rule] = []
    seen: set[int] = set()
    for entry, rule_id in zip(entries, explicit_ids):
        if rule_id is None:
            next_id += 1
            rule_id = next_id
        if rule_id in seen:
            raise ConfigurationError(f"Duplicate rule id {rule_id}")
        seen.add(rule_id)

        # "type" is accepted as an alias, matching older exports.
        family_raw = entry.get("family") or entry.get("type") or Family.NORMAL.value
        tags = entry.get("tags") or []
        if isinstance(tags, str):
            tags = [tags]
        rule = Rule(
            id=rule_id,
            channel_id=_optional_int(entry.get("channel_id"), "channel_id"),
            family=_parse_enum(Family, family_raw, "family"),
            filter=_parse_enum(Filter, entry.get("filter"), "filter"),
            category_id=_optional_int(entry.get("category_id"), "category_id"),
            group_id=_optional_int(entry.get("group_id"), "group_id"),
            tags=frozenset(str(tag).strip().lower() for tag in tags if str(tag).strip()),
        )
        validate_rule(rule, channel_ids, group_ids)
        compiled.append(rule)
    return compiled


def tags_match(rule_tags: frozenset[str], topic_tags: frozenset[str]) -> bool:
    """Any intersection satisfies a tag restriction; no tags means no restriction."""

    if not rule_tags:
        return True
    return bool(rule_tags & topic_tags)


def _category_specificity(rule: Rule, context: EventContext) -> Optional[int]:
    if rule.category_id is None:
        return 0
    if rule.category_id == context.category_id:
        return 1
    return None


def _group_eligible(rule: Rule, groups: frozenset[int]) -> bool:
    if rule.group_id is None:
        LOGGER.warning("Skipping %s rule %s without group_id", rule.family.value, rule.id)
        return False
    return rule.group_id in groups


def _pick(candidates: Iterable[Tuple[int, Rule]]) -> Dict[int, Rule]:
    """Pick one rule per channel: most specific, then filter precedence, then newest."""

    best: Dict[int, Tuple[Tuple[int, int, int], Rule]] = {}
    for specificity, rule in candidates:
        key = (-specificity, FILTER_PRECEDENCE[rule.filter], -rule.id)
        current = best.get(rule.channel_id)
        if current is None or key < current[0]:
            best[rule.channel_id] = (key, rule)
    return {channel_id: rule for channel_id, (_, rule) in best.items()}


def _apply_tag_restriction(
    selected: Dict[int, Rule],
    context: EventContext,
    tagging_enabled: bool,
) -> Dict[int, Rule]:
    if not tagging_enabled:
        return selected
    return {
        channel_id: rule
        for channel_id, rule in selected.items()
        if tags_match(rule.tags, context.current_tags)
    }


def match_normal_rules(
    context: EventContext,
    rules: Iterable[Rule],
    tagging_enabled: bool = True,
) -> Dict[int, Rule]:
    """Return the most specific normal rule per channel for a public topic.

    A rule scoped to the event's category beats a wildcard rule. The tag
    restriction is checked on the selected rule only, so a more specific rule
    whose tags miss does not fall back to a wildcard rule.
    """

    if context.is_private_message:
        return {}

    candidates = []
    for rule in rules:
        if rule.family != Family.NORMAL:
            continue
        specificity = _category_specificity(rule, context)
        if specificity is not None:
            candidates.append((specificity, rule))
    return _apply_tag_restriction(_pick(candidates), context, tagging_enabled)


def match_group_message_rules(
    context: EventContext,
    rules: Iterable[Rule],
    tagging_enabled: bool = True,
) -> Dict[int, Rule]:
    """Return one group_message rule per channel for groups with access to a PM."""

    if not context.is_private_message:
        return {}

    candidates = [
        (0, rule)
        for rule in rules
        if rule.family == Family.GROUP_MESSAGE and _group_eligible(rule, context.participant_groups)
    ]
    return _apply_tag_restriction(_pick(candidates), context, tagging_enabled)


def match_group_mention_rules(
    context: EventContext,
    rules: Iterable[Rule],
    tagging_enabled: bool = True,
) -> Dict[int, Rule]:
    """Return one group_mention rule per channel for groups mentioned in the post.

    Inside a private message a mentioned group must also have access to the
    topic, otherwise the mention alone would leak the message.
    """

    candidates = []
    for rule in rules:
        if rule.family != Family.GROUP_MENTION:
            continue
        if not _group_eligible(rule, context.mentioned_groups):
            continue
        if context.is_private_message and rule.group_id not in context.participant_groups:
            continue
        candidates.append((0, rule))
    return _apply_tag_restriction(_pick(candidates), context, tagging_enabled)
