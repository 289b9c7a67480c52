"""SQLite storage adapter.

Implements the core RuleStorePort and ChannelStorePort using a simple SQLite
database, plus the topic thread map used by the thread delivery hint.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from core.models import Channel, Family, Filter, Rule


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the rule and channel store contracts."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - channels: delivery destinations and their last error marker
        - rules: routing rules, replaced wholesale on config sync
        - topic_threads: first provider message per (channel, topic)
        """

        with self._connect() as conn:
            # channels keeps operator-visible provider health next to the
            # channel definition.
            # Fields:
            # - id: channel id from config (PRIMARY KEY)
            # - provider: provider id used to pick the delivery adapter
            # - data: provider-specific settings as JSON
            # - error_key: last delivery error code, NULL when healthy
            # - error_info: JSON detail for the last error
            # - updated_at: timestamp of the last error marker change
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS channels (
                    id INTEGER PRIMARY KEY,
                    provider TEXT NOT NULL,
                    data TEXT NOT NULL DEFAULT '{}',
                    error_key TEXT,
                    error_info TEXT,
                    updated_at TIMESTAMP
                )
                """
            )
            # rules are read-only during routing. id doubles as creation order.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rules (
                    id INTEGER PRIMARY KEY,
                    channel_id INTEGER NOT NULL,
                    family TEXT NOT NULL,
                    filter TEXT NOT NULL,
                    category_id INTEGER,
                    group_id INTEGER,
                    tags TEXT NOT NULL DEFAULT '[]'
                )
                """
            )
            # topic_threads lets providers reply in-thread for the thread hint.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS topic_threads (
                    channel_id INTEGER NOT NULL,
                    topic_id INTEGER NOT NULL,
                    message_ref TEXT NOT NULL,
                    PRIMARY KEY (channel_id, topic_id)
                )
                """
            )

    def sync_config(self, channels: Iterable[Channel], rules: Iterable[Rule]) -> None:
        """Upsert configured channels and replace all rules.

        Error markers survive the sync so provider health is not lost on restart.
        """

        channels = list(channels)
        with self._connect() as conn:
            for channel in channels:
                conn.execute(
                    """
                    INSERT INTO channels (id, provider, data)
                    VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        provider = excluded.provider,
                        data = excluded.data
                    """,
                    (channel.id, channel.provider_id, json.dumps(dict(channel.data))),
                )
            configured = [channel.id for channel in channels]
            placeholders = ",".join("?" for _ in configured)
            if configured:
                conn.execute(f"DELETE FROM channels WHERE id NOT IN ({placeholders})", configured)
            else:
                conn.execute("DELETE FROM channels")

            conn.execute("DELETE FROM rules")
            conn.executemany(
                """
                INSERT INTO rules (id, channel_id, family, filter, category_id, group_id, tags)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        rule.id,
                        rule.channel_id,
                        rule.family.value,
                        rule.filter.value,
                        rule.category_id,
                        rule.group_id,
                        json.dumps(sorted(rule.tags)),
                    )
                    for rule in rules
                ],
            )

    @staticmethod
    def _row_to_channel(row: sqlite3.Row) -> Channel:
        return Channel(
            id=int(row["id"]),
            provider_id=row["provider"],
            data=json.loads(row["data"] or "{}"),
            error_key=row["error_key"],
            error_info=row["error_info"],
        )

    def get_channel(self, channel_id: int) -> Optional[Channel]:
        """Return one channel with its current error marker."""

        with self._connect() as conn:
            row = conn.execute("SELECT * FROM channels WHERE id = ?", (channel_id,)).fetchone()
        return self._row_to_channel(row) if row else None

    def list_channels(self) -> List[Channel]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM channels ORDER BY id").fetchall()
        return [self._row_to_channel(row) for row in rows]

    def rules_for_family(self, family: Family) -> List[Rule]:
        """Return all rules of one family, oldest first."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM rules WHERE family = ? ORDER BY id",
                (family.value,),
            ).fetchall()
        return [
            Rule(
                id=int(row["id"]),
                channel_id=int(row["channel_id"]),
                family=Family(row["family"]),
                filter=Filter(row["filter"]),
                category_id=row["category_id"],
                group_id=row["group_id"],
                tags=frozenset(json.loads(row["tags"] or "[]")),
            )
            for row in rows
        ]

    def set_error_state(self, channel_id: int, error_key: Optional[str], error_info: Optional[str]) -> None:
        """Overwrite the error marker of a single channel row."""

        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE channels
                SET error_key = ?, error_info = ?, updated_at = ?
                WHERE id = ?
                """,
                (error_key, error_info, now.isoformat(), channel_id),
            )

    def get_thread(self, channel_id: int, topic_id: int) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT message_ref FROM topic_threads WHERE channel_id = ? AND topic_id = ?",
                (channel_id, topic_id),
            ).fetchone()
        return row["message_ref"] if row else None

    def set_thread(self, channel_id: int, topic_id: int, message_ref: str) -> None:
        """Remember the first message for a topic; later calls keep the original."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO topic_threads (channel_id, topic_id, message_ref)
                VALUES (?, ?, ?)
                """,
                (channel_id, topic_id, message_ref),
            )
