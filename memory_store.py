"""Conversation memory store: messages as vector points."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable

from config import CONFIG, Config
from embeddings import Embedder
from errors import InvalidArgument, NotFound
from models import (
    MESSAGE_TYPE,
    PROJECT_FILE_TYPE,
    HistoryFilter,
    MemoryStats,
    Message,
    Role,
)
from utils import as_utc, log, truncate, utc_now
from vector_store import Filter, QdrantStore, match, match_any, value_range

PROJECT_FILES_ONLY = Filter(must=[match("type", PROJECT_FILE_TYPE)])


class MemoryStore:
    """Add, search, filter and delete conversation messages.

    Messages and project files share one collection; the ``type`` payload
    field keeps the two apart for clearing and history.
    """

    def __init__(
        self,
        store: QdrantStore,
        embedder: Embedder,
        config: Config = CONFIG,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config
        self.clock = clock

    def _clamp(self, limit: int | None, default: int) -> int:
        if limit is None or limit <= 0:
            return default
        return min(limit, self.config.max_limit)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def add_message(self, message: Message, cancel: threading.Event | None = None) -> str:
        """Embed and store ``message``. Returns its ID."""
        if not isinstance(message.role, Role):
            raise InvalidArgument(f"Invalid role '{message.role}'")
        if not message.content.strip():
            raise InvalidArgument("content is required")

        vector = self.embedder.embed(message.content)
        self.store.upsert(message.id, vector, message.to_payload(), cancel=cancel)
        log(f"Added {message.role.value} message {message.id[:8]}: {truncate(message.content)}")
        return message.id

    def delete_message(self, message_id: str) -> None:
        if not self.store.delete_ids([message_id]):
            raise NotFound(f"Message {message_id} not found")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def search_messages(self, query: str, limit: int | None = None) -> list[Message]:
        """Similarity search over the whole collection, highest score first."""
        if not query or not query.strip():
            raise InvalidArgument("query is required")
        limit = self._clamp(limit, self.config.default_limit)
        vector = self.embedder.embed(query)
        points = self.store.query(vector, limit)
        return [Message.from_point(p.id, p.payload, score=p.score) for p in points]

    def get_conversation_history(self, limit: int | None = None, filter: HistoryFilter | None = None) -> list[Message]:
        """Messages newest-first, narrowed by role, tags and time range.

        Role, tag membership and time range are filtered by the backend;
        messages must then carry every requested tag.
        """
        limit = self._clamp(limit, self.config.history_limit)
        filter = filter or HistoryFilter()

        conditions = [match("type", MESSAGE_TYPE)]
        if filter.role is not None:
            conditions.append(match("role", filter.role.value))
        if filter.tags:
            conditions.append(match_any("tags", filter.tags))
        if filter.start_time or filter.end_time:
            conditions.append(
                value_range(
                    "unix_time",
                    gte=as_utc(filter.start_time).timestamp() if filter.start_time else None,
                    lte=as_utc(filter.end_time).timestamp() if filter.end_time else None,
                )
            )

        points = self.store.scroll(Filter(must=conditions))
        messages = [Message.from_point(p.id, p.payload) for p in points]
        if filter.tags:
            wanted = set(filter.tags)
            messages = [m for m in messages if wanted.issubset(m.tags)]
        messages.sort(key=lambda m: m.timestamp, reverse=True)
        return messages[:limit]

    def get_messages_by_tag(self, tag: str, limit: int | None = None) -> list[Message]:
        if not tag:
            raise InvalidArgument("tag is required")
        return self.get_conversation_history(limit, HistoryFilter(tags=[tag]))

    # -------------------------------------------------------------------------
    # Deletion by time range
    # -------------------------------------------------------------------------

    def delete_messages_by_time_range(self, start: datetime, end: datetime) -> int:
        """Delete messages with ``start <= timestamp < end``. Returns the count removed."""
        start, end = as_utc(start), as_utc(end)
        if start >= end:
            raise InvalidArgument("start_time must be before end_time")
        removed = self.store.delete(
            Filter(
                must=[value_range("unix_time", gte=start.timestamp(), lt=end.timestamp())],
                must_not=[match("type", PROJECT_FILE_TYPE)],
            )
        )
        log(f"Deleted {removed} messages from {start.isoformat()} to {end.isoformat()}")
        return removed

    def _local_now(self) -> datetime:
        return as_utc(self.clock()).astimezone(self.config.tz)

    def current_day_window(self) -> tuple[datetime, datetime]:
        now = self._local_now()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, _add_days(start, 1)

    def current_week_window(self) -> tuple[datetime, datetime]:
        """Week starting Sunday 00:00 local time."""
        day_start, _ = self.current_day_window()
        days_since_sunday = (day_start.weekday() + 1) % 7
        start = _add_days(day_start, -days_since_sunday)
        return start, _add_days(start, 7)

    def current_month_window(self) -> tuple[datetime, datetime]:
        start = self._local_now().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end

    def delete_messages_for_current_day(self) -> int:
        return self.delete_messages_by_time_range(*self.current_day_window())

    def delete_messages_for_current_week(self) -> int:
        return self.delete_messages_by_time_range(*self.current_week_window())

    def delete_messages_for_current_month(self) -> int:
        return self.delete_messages_by_time_range(*self.current_month_window())

    # -------------------------------------------------------------------------
    # Clearing
    # -------------------------------------------------------------------------

    def clear_all_memories(self) -> int:
        return self.store.delete(Filter())

    def clear_messages(self) -> int:
        """Everything that is not a project file."""
        return self.store.delete(Filter(must_not=[match("type", PROJECT_FILE_TYPE)]))

    def clear_project_files(self) -> int:
        return self.store.delete(PROJECT_FILES_ONLY)

    def purge(self) -> None:
        """Drop and recreate the collection."""
        self.store.drop_collection()
        self.store.ensure_collection()
        log(f"Purged collection '{self.store.collection}'")

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_memory_stats(self) -> MemoryStats:
        total = self.store.count()
        message_count = {
            role.value: self.store.count(Filter(must=[match("type", MESSAGE_TYPE), match("role", role.value)]))
            for role in Role
        }
        return MemoryStats(
            total_vectors=total,
            message_count=message_count,
            project_file_count=self.store.count(PROJECT_FILES_ONLY),
            timestamp=self.clock(),
        )


def _add_days(moment: datetime, days: int) -> datetime:
    """Calendar-day arithmetic in the moment's own zone (DST-safe)."""
    return (moment.replace(tzinfo=None) + timedelta(days=days)).replace(tzinfo=moment.tzinfo)
