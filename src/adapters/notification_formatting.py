"""Shared notification formatting helpers.

Keeping formatting here prevents drift between providers and keeps messages
consistent regardless of delivery channel.
"""

from __future__ import annotations

import html

from core.models import EventContext, Filter


def format_location_label(context: EventContext) -> str:
    """Return where the post lives: category name, private message, or uncategorized."""

    if context.is_private_message:
        return "Private message"
    if context.category_name:
        return context.category_name
    if context.category_id is not None:
        return f"category {context.category_id}"
    return "Uncategorized"


def _headline(context: EventContext) -> str:
    if context.is_category_change_event:
        return "Topic moved"
    if context.is_tag_change_event:
        return "Tags added"
    if context.is_new_topic:
        return "New topic"
    return "New reply"


def _format_markdown(context: EventContext, filter_hint: Filter) -> str:
    """Create the Markdown notification body used by the client provider."""

    def escape_md(value: str) -> str:
        for ch in r"*[`_":
            value = value.replace(ch, f"\\{ch}")
        return value

    divider = "──────────────"
    lines = [
        f"**{_headline(context)}:** {escape_md(context.title)}",
        f"**Where:** {escape_md(format_location_label(context))}",
    ]
    if context.username:
        lines.append(f"**By:** {escape_md(context.username)}")
    if context.is_tag_change_event and context.added_tags:
        lines.append(f"**Added tags:** {escape_md(', '.join(sorted(context.added_tags)))}")
    elif context.current_tags:
        lines.append(f"**Tags:** {escape_md(', '.join(sorted(context.current_tags)))}")

    # Thread replies already sit under the topic, so they skip the divider.
    if filter_hint != Filter.THREAD:
        lines.append(divider)
    if context.excerpt:
        lines.extend(["", escape_md(context.excerpt)])
    if context.url:
        lines.extend(["", "**Link:**", context.url])
    return "\n".join(lines)


def _format_html(context: EventContext, filter_hint: Filter) -> str:
    """Create the HTML notification body used by the Bot API provider."""

    parts = [
        f"<b>{html.escape(_headline(context))}:</b> {html.escape(context.title)}",
        f"<b>Where:</b> {html.escape(format_location_label(context))}",
    ]
    if context.username:
        parts.append(f"<b>By:</b> {html.escape(context.username)}")
    if context.is_tag_change_event and context.added_tags:
        parts.append(f"<b>Added tags:</b> {html.escape(', '.join(sorted(context.added_tags)))}")
    elif context.current_tags:
        parts.append(f"<b>Tags:</b> {html.escape(', '.join(sorted(context.current_tags)))}")

    if filter_hint != Filter.THREAD:
        parts.append("──────────────")
    if context.excerpt:
        parts.extend(["", html.escape(context.excerpt)])
    if context.url:
        safe_link = html.escape(context.url)
        parts.extend(["", f"<a href=\"{safe_link}\">{safe_link}</a>"])
    return "\n".join(parts)


def format_notification(context: EventContext, filter_hint: Filter, mode: str) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "markdown":
        return _format_markdown(context, filter_hint)
    if mode == "html":
        return _format_html(context, filter_hint)
    raise ValueError(f"Unsupported notification format: {mode}")
