"""JSON snapshot content adapter.

Reads a forum export (users, groups, categories, topics, posts) and answers
the content store and visibility questions the router asks. This keeps the
core free of any particular forum API.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

from core.config import SYSTEM_USERNAME
from core.models import EventContext

LOGGER = logging.getLogger(__name__)

CATEGORY_CHANGED = "category_changed"
TAGS_CHANGED = "tags_changed"
EVERYONE = "everyone"


def _tag_set(values: Optional[list]) -> frozenset[str]:
    return frozenset(str(value).strip().lower() for value in values or [] if str(value).strip())


class SnapshotContentStore:
    """Content store and visibility oracle backed by an in-memory snapshot."""

    def __init__(self, snapshot: dict[str, Any], base_url: str = "", excerpt_chars: int = 400) -> None:
        self._base_url = base_url.rstrip("/")
        self._excerpt_chars = excerpt_chars
        self._users = {str(user["username"]).lower(): user for user in snapshot.get("users", [])}
        self._groups = {int(group["id"]): group for group in snapshot.get("groups", [])}
        self._group_ids_by_name = {str(group["name"]).lower(): gid for gid, group in self._groups.items()}
        self._categories = {int(category["id"]): category for category in snapshot.get("categories", [])}
        self._topics = {int(topic["id"]): topic for topic in snapshot.get("topics", [])}
        self._posts = {int(post["id"]): post for post in snapshot.get("posts", [])}

    @classmethod
    def from_file(cls, path: str, base_url: str = "", excerpt_chars: int = 400) -> "SnapshotContentStore":
        if not os.path.exists(path):
            raise FileNotFoundError(f"Content snapshot not found: {path}")
        with open(path, "r", encoding="utf-8") as handle:
            return cls(json.load(handle), base_url=base_url, excerpt_chars=excerpt_chars)

    def group_ids(self) -> set[int]:
        return set(self._groups)

    def resolve_group_names(self, names: Optional[list]) -> frozenset[int]:
        """Map mentioned group names to ids, case-insensitively; unknown names are dropped."""

        resolved = set()
        for name in names or []:
            group_id = self._group_ids_by_name.get(str(name).lstrip("@").lower())
            if group_id is not None:
                resolved.add(group_id)
        return frozenset(resolved)

    def get_event_context(self, post_id: int) -> Optional[EventContext]:
        post = self._posts.get(post_id)
        if post is None or post.get("deleted"):
            return None
        topic = self._topics.get(int(post["topic_id"]))
        if topic is None or topic.get("deleted"):
            return None

        is_private = bool(topic.get("private_message", False))
        category_id = None if is_private else topic.get("category_id")
        category = self._categories.get(category_id) if category_id is not None else None
        action = post.get("action")
        post_number = int(post.get("post_number", 1))

        url = None
        if self._base_url:
            url = f"{self._base_url}/t/{topic['id']}/{post_number}"

        return EventContext(
            post_id=post_id,
            topic_id=int(topic["id"]),
            category_id=category_id,
            is_private_message=is_private,
            post_number=post_number,
            added_tags=_tag_set(post.get("added_tags")) if action == TAGS_CHANGED else frozenset(),
            current_tags=_tag_set(topic.get("tags")),
            mentioned_groups=self.resolve_group_names(post.get("mentions")),
            participant_groups=frozenset(int(gid) for gid in topic.get("allowed_groups", [])) if is_private else frozenset(),
            is_category_change_event=action == CATEGORY_CHANGED,
            is_tag_change_event=action == TAGS_CHANGED,
            title=str(topic.get("title", "")),
            excerpt=str(post.get("raw", ""))[: self._excerpt_chars].strip(),
            url=url,
            username=post.get("username"),
            category_name=category.get("name") if category else None,
        )

    def can_see(self, username: str, context: EventContext) -> bool:
        """Return True when the user may read the post's topic."""

        user = self._users.get(username.lower())
        if user is None and username == SYSTEM_USERNAME:
            # The built-in system identity reads everything unless the export overrides it.
            return True
        if user is None:
            LOGGER.warning("Acting user %s does not exist in the snapshot", username)
            return False
        if user.get("admin", False):
            return True

        user_groups = {int(gid) for gid in user.get("groups", [])}
        topic = self._topics.get(context.topic_id, {})

        if context.is_private_message:
            allowed_users = {str(name).lower() for name in topic.get("allowed_users", [])}
            return username.lower() in allowed_users or bool(user_groups & context.participant_groups)

        if context.category_id is None:
            return True
        category = self._categories.get(context.category_id)
        if category is None:
            return False
        read_groups = category.get("read_groups")
        if read_groups is None or EVERYONE in read_groups:
            return True
        return bool(user_groups & self._read_group_ids(category))

    def _read_group_ids(self, category: dict[str, Any]) -> set[int]:
        """Resolve a category's read_groups, given as ids or group names."""

        resolved = set()
        for entry in category.get("read_groups", []):
            if isinstance(entry, int) or str(entry).strip().isdigit():
                resolved.add(int(entry))
                continue
            group_id = self._group_ids_by_name.get(str(entry).lower())
            if group_id is None:
                LOGGER.warning("Category %s lists unknown read group %r", category.get("id"), entry)
                continue
            resolved.add(group_id)
        return resolved
