"""Tests for the conversation memory store.

Run with: pytest test_memory_store.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from config import Config
from conftest import FIXED_NOW
from errors import InvalidArgument, NotFound
from memory_store import MemoryStore
from models import MESSAGE_TYPE, PROJECT_FILE_TYPE, HistoryFilter, Message, ProjectFile, Role


def add(memory, content, role=Role.USER, tags=None, at=None):
    message = Message(role=role, content=content, tags=tags or [], timestamp=at or FIXED_NOW)
    memory.add_message(message)
    return message


def add_project_file(store, embedder, path="README.md", content="project readme", tag=""):
    project_file = ProjectFile(id=f"file-{path}", path=path, project_root="/proj", content=content, tag=tag)
    store.upsert(project_file.id, embedder.embed(content), project_file.to_payload())
    return project_file


# =============================================================================
# Add & History
# =============================================================================


class TestAddMessage:
    def test_add_then_history_round_trip(self, memory):
        message = add(memory, "How do I reset the cache?", tags=["cache"])
        history = memory.get_conversation_history(10)
        assert len(history) == 1
        stored = history[0]
        assert stored.id == message.id
        assert stored.role == Role.USER
        assert stored.content == "How do I reset the cache?"
        assert stored.tags == ["cache"]
        assert stored.timestamp == FIXED_NOW

    def test_payload_layout(self, memory, store):
        message = add(memory, "payload check", role=Role.ASSISTANT, tags=["a"])
        _, payload = store.points[message.id]
        assert payload["type"] == MESSAGE_TYPE
        assert payload["role"] == "assistant"
        assert payload["unix_time"] == FIXED_NOW.timestamp()
        assert payload["timestamp"].startswith("2025-03-12T15:30:00")

    def test_blank_content_rejected_before_embedding(self, memory, embedder, store):
        with pytest.raises(InvalidArgument):
            memory.add_message(Message(role=Role.USER, content="   \n\t "))
        assert embedder.calls == 0
        assert "upsert" not in store.calls

    def test_embedding_failure_propagates_without_write(self, memory, embedder, store):
        embedder.fail_on.add("refuse me")
        with pytest.raises(Exception, match="provider refused"):
            memory.add_message(Message(role=Role.USER, content="refuse me"))
        assert store.points == {}

    def test_messages_get_distinct_ids(self, memory):
        first = add(memory, "same text")
        second = add(memory, "same text")
        assert first.id != second.id
        assert len(memory.get_conversation_history(10)) == 2


class TestConversationHistory:
    def test_newest_first_and_limit(self, memory):
        for minutes in range(5):
            add(memory, f"message {minutes}", at=FIXED_NOW - timedelta(minutes=minutes))
        history = memory.get_conversation_history(3)
        assert [m.content for m in history] == ["message 0", "message 1", "message 2"]

    def test_non_positive_limit_uses_default(self, memory, config):
        for i in range(config.history_limit + 2):
            add(memory, f"message {i}", at=FIXED_NOW - timedelta(seconds=i))
        assert len(memory.get_conversation_history(0)) == config.history_limit
        assert len(memory.get_conversation_history(-3)) == config.history_limit

    def test_role_filter(self, memory):
        add(memory, "question", role=Role.USER)
        add(memory, "answer", role=Role.ASSISTANT)
        history = memory.get_conversation_history(10, HistoryFilter(role=Role.ASSISTANT))
        assert [m.content for m in history] == ["answer"]

    def test_tags_require_every_tag(self, memory):
        add(memory, "both", tags=["a", "b"])
        add(memory, "only a", tags=["a"])
        add(memory, "only b", tags=["b"])
        history = memory.get_conversation_history(10, HistoryFilter(tags=["a", "b"]))
        assert [m.content for m in history] == ["both"]

    def test_time_range_filter(self, memory):
        add(memory, "old", at=FIXED_NOW - timedelta(days=3))
        add(memory, "recent", at=FIXED_NOW - timedelta(hours=1))
        history = memory.get_conversation_history(
            10, HistoryFilter(start_time=FIXED_NOW - timedelta(days=1), end_time=FIXED_NOW)
        )
        assert [m.content for m in history] == ["recent"]

    def test_project_files_excluded(self, memory, store, embedder):
        add(memory, "a message")
        add_project_file(store, embedder)
        history = memory.get_conversation_history(10)
        assert [m.content for m in history] == ["a message"]

    def test_messages_by_tag(self, memory):
        add(memory, "tagged", tags=["proj1"])
        add(memory, "untagged")
        assert [m.content for m in memory.get_messages_by_tag("proj1")] == ["tagged"]

    def test_messages_by_tag_requires_tag(self, memory):
        with pytest.raises(InvalidArgument):
            memory.get_messages_by_tag("")


# =============================================================================
# Search
# =============================================================================


class TestSearch:
    def test_related_text_ranks_first(self, memory):
        add(memory, "hello world")
        add(memory, "unrelated gibberish xyz")
        results = memory.search_messages("hello", 2)
        assert results[0].content == "hello world"
        assert results[0].score > results[1].score

    def test_blank_query_rejected(self, memory):
        with pytest.raises(InvalidArgument):
            memory.search_messages("  ")

    def test_limit_clamped(self, memory, config):
        for i in range(config.default_limit + 3):
            add(memory, f"note number {i}")
        assert len(memory.search_messages("note", 0)) == config.default_limit
        assert len(memory.search_messages("note", 10_000)) == config.default_limit + 3

    def test_project_file_hits_map_to_project_role(self, memory, store, embedder):
        add_project_file(store, embedder, path="docs/guide.md", content="deployment guide", tag="proj1")
        result = memory.search_messages("deployment guide", 1)[0]
        assert result.role == Role.PROJECT
        assert result.metadata["path"] == "docs/guide.md"
        assert result.tags == ["proj1"]


# =============================================================================
# Deletion
# =============================================================================


class TestDeletion:
    def test_delete_message(self, memory):
        message = add(memory, "to delete")
        memory.delete_message(message.id)
        assert memory.get_conversation_history(10) == []

    def test_delete_missing_message(self, memory):
        with pytest.raises(NotFound):
            memory.delete_message("00000000-0000-0000-0000-000000000000")

    def test_time_range_is_half_open(self, memory):
        start = datetime(2025, 3, 10, tzinfo=timezone.utc)
        end = datetime(2025, 3, 11, tzinfo=timezone.utc)
        add(memory, "at start", at=start)
        add(memory, "inside", at=start + timedelta(hours=12))
        add(memory, "at end", at=end)
        assert memory.delete_messages_by_time_range(start, end) == 2
        assert [m.content for m in memory.get_conversation_history(10)] == ["at end"]

    def test_time_range_keeps_project_files(self, memory, store, embedder):
        add_project_file(store, embedder)
        removed = memory.delete_messages_by_time_range(FIXED_NOW - timedelta(days=365), FIXED_NOW + timedelta(days=1))
        assert removed == 0
        assert len(store.points) == 1

    def test_time_range_rejects_empty_window(self, memory):
        with pytest.raises(InvalidArgument):
            memory.delete_messages_by_time_range(FIXED_NOW, FIXED_NOW)

    def test_current_day_deletes_exactly_today(self, memory):
        midnight = datetime(2025, 3, 12, tzinfo=timezone.utc)
        add(memory, "midnight", at=midnight)
        add(memory, "afternoon", at=FIXED_NOW)
        add(memory, "yesterday", at=midnight - timedelta(microseconds=1))
        add(memory, "tomorrow", at=midnight + timedelta(days=1))
        assert memory.delete_messages_for_current_day() == 2
        remaining = {m.content for m in memory.get_conversation_history(10)}
        assert remaining == {"yesterday", "tomorrow"}

    def test_current_week_and_month(self, memory):
        add(memory, "sunday", at=datetime(2025, 3, 9, 0, 0, tzinfo=timezone.utc))
        add(memory, "saturday before", at=datetime(2025, 3, 8, 23, 59, tzinfo=timezone.utc))
        add(memory, "first of month", at=datetime(2025, 3, 1, tzinfo=timezone.utc))
        add(memory, "february", at=datetime(2025, 2, 28, 12, tzinfo=timezone.utc))
        assert memory.delete_messages_for_current_week() == 1
        assert memory.delete_messages_for_current_month() == 2
        assert [m.content for m in memory.get_conversation_history(10)] == ["february"]


class TestTimeWindows:
    def test_week_starts_sunday(self, memory):
        start, end = memory.current_week_window()
        assert start == datetime(2025, 3, 9, tzinfo=timezone.utc)
        assert start.weekday() == 6
        assert end - start == timedelta(days=7)

    def test_month_window_rolls_over_year(self, store, embedder, config):
        memory = MemoryStore(store, embedder, config, clock=lambda: datetime(2024, 12, 31, 23, tzinfo=timezone.utc))
        start, end = memory.current_month_window()
        assert start == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_day_window_uses_configured_timezone(self, store, embedder):
        config = Config(timezone="America/New_York")
        memory = MemoryStore(store, embedder, config, clock=lambda: FIXED_NOW)
        start, end = memory.current_day_window()
        assert start.astimezone(timezone.utc) == datetime(2025, 3, 12, 4, tzinfo=timezone.utc)
        assert end - start == timedelta(days=1)


# =============================================================================
# Clearing & Stats
# =============================================================================


class TestClearing:
    def test_clears_commute_to_clear_all(self, memory, store, embedder):
        add(memory, "message")
        add_project_file(store, embedder)
        assert memory.clear_messages() == 1
        assert memory.clear_project_files() == 1
        assert store.points == {}

    def test_clear_all(self, memory, store, embedder):
        add(memory, "message")
        add_project_file(store, embedder)
        assert memory.clear_all_memories() == 2
        assert memory.clear_all_memories() == 0

    def test_purge_recreates_collection(self, memory, store):
        store.exists = True
        add(memory, "message")
        memory.purge()
        assert store.points == {}
        assert store.exists
        assert store.calls[-2:] == ["drop_collection", "ensure_collection"]


class TestStats:
    def test_counts_by_role_and_type(self, memory, store, embedder):
        add(memory, "q1")
        add(memory, "q2")
        add(memory, "a1", role=Role.ASSISTANT)
        add_project_file(store, embedder)
        stats = memory.get_memory_stats()
        assert stats.total_vectors == 4
        assert stats.message_count["user"] == 2
        assert stats.message_count["assistant"] == 1
        assert stats.message_count["system"] == 0
        assert stats.project_file_count == 1
        assert stats.timestamp == FIXED_NOW

    def test_project_type_constant(self, memory, store, embedder):
        project_file = add_project_file(store, embedder)
        assert store.points[project_file.id][1]["type"] == PROJECT_FILE_TYPE
