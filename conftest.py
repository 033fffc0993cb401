"""Shared fixtures: an in-memory vector store and deterministic components."""

from __future__ import annotations

import operator
import threading
from datetime import datetime, timezone
from typing import Any

import numpy as np
import pytest

from config import Config
from dispatcher import ToolDispatcher
from embeddings import Embedder
from errors import BackendUnavailable, EmbeddingError, InvalidArgument, OperationCancelled
from indexer import ProjectIndexer
from memory_store import MemoryStore
from session import SessionState
from stats import ActivityLog
from vector_store import Filter, Point

# Wednesday
FIXED_NOW = datetime(2025, 3, 12, 15, 30, tzinfo=timezone.utc)

RANGE_OPS = {"gt": operator.gt, "gte": operator.ge, "lt": operator.lt, "lte": operator.le}


def _condition_matches(payload: dict[str, Any], condition: dict[str, Any]) -> bool:
    value = payload.get(condition["key"])
    if "match" in condition:
        values = value if isinstance(value, list) else [value]
        wanted = condition["match"]
        if "value" in wanted:
            return wanted["value"] in values
        return any(v in values for v in wanted["any"])
    if value is None:
        return False
    return all(op(value, condition["range"][k]) for k, op in RANGE_OPS.items() if k in condition["range"])


def filter_accepts(filter: Filter | None, payload: dict[str, Any]) -> bool:
    if filter is None:
        return True
    return all(_condition_matches(payload, c) for c in filter.must) and not any(
        _condition_matches(payload, c) for c in filter.must_not
    )


class InMemoryStore:
    """Test double with the QdrantStore contract, evaluating the same filter JSON."""

    def __init__(self, config: Config):
        self.collection = config.collection_name
        self.dimension = config.embedding_dim
        self.points: dict[str, tuple[list[float], dict[str, Any]]] = {}
        self.calls: list[str] = []
        self.exists = False
        self.fail = False
        self._lock = threading.Lock()

    def _enter(self, name: str, cancel: threading.Event | None = None) -> None:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"{name} cancelled")
        if self.fail:
            raise BackendUnavailable("Vector store unreachable at http://qdrant.test:6333")
        self.calls.append(name)

    def collection_exists(self, name=None, cancel=None) -> bool:
        self._enter("collection_exists", cancel)
        return self.exists

    def ensure_collection(self, name=None, dimension=None, cancel=None) -> bool:
        self._enter("ensure_collection", cancel)
        created, self.exists = not self.exists, True
        return created

    def drop_collection(self, cancel=None) -> None:
        self._enter("drop_collection", cancel)
        with self._lock:
            self.points.clear()
        self.exists = False

    def collection_info(self, cancel=None) -> dict[str, Any]:
        self._enter("collection_info", cancel)
        return {"points_count": len(self.points)}

    def upsert(self, point_id, vector, payload, cancel=None) -> None:
        self._enter("upsert", cancel)
        if len(vector) != self.dimension:
            raise InvalidArgument("dimension mismatch")
        with self._lock:
            self.points[point_id] = (list(vector), dict(payload))

    def _select(self, filter: Filter | None) -> list[tuple[str, list[float], dict[str, Any]]]:
        with self._lock:
            return [(pid, vec, payload) for pid, (vec, payload) in self.points.items() if filter_accepts(filter, payload)]

    def query(self, vector, limit, filter=None, cancel=None) -> list[Point]:
        self._enter("query", cancel)
        query = np.array(vector)
        scored = [
            Point(id=pid, payload=dict(payload), score=float(np.dot(query, np.array(vec))))
            for pid, vec, payload in self._select(filter)
        ]
        scored.sort(key=lambda p: p.score, reverse=True)
        return scored[:limit]

    def scroll(self, filter=None, limit=None, cancel=None) -> list[Point]:
        self._enter("scroll", cancel)
        points = [Point(id=pid, payload=dict(payload)) for pid, _, payload in self._select(filter)]
        return points if limit is None else points[:limit]

    def count(self, filter=None, cancel=None) -> int:
        self._enter("count", cancel)
        return len(self._select(filter))

    def retrieve(self, ids, cancel=None) -> list[Point]:
        self._enter("retrieve", cancel)
        with self._lock:
            return [Point(id=i, payload=dict(self.points[i][1])) for i in ids if i in self.points]

    def delete(self, filter, cancel=None) -> int:
        self._enter("delete", cancel)
        doomed = [pid for pid, _, _ in self._select(filter)]
        with self._lock:
            for pid in doomed:
                del self.points[pid]
        return len(doomed)

    def delete_ids(self, ids, cancel=None) -> int:
        self._enter("delete_ids", cancel)
        with self._lock:
            doomed = [i for i in dict.fromkeys(ids) if i in self.points]
            for pid in doomed:
                del self.points[pid]
        return len(doomed)


class CountingEmbedder(Embedder):
    """Hash embedder that counts how often ``embed`` is called."""

    def __init__(self, config: Config):
        super().__init__(config)
        self.calls = 0
        self.fail_on: set[str] = set()

    def embed(self, text: str) -> list[float]:
        self.calls += 1
        if text in self.fail_on:
            raise EmbeddingError("provider refused the text")
        return super().embed(text)


@pytest.fixture
def config():
    return Config(
        qdrant_url="http://qdrant.test:6333",
        collection_name="test_memory",
        embedding_dim=384,
        embedding_provider="hash",
        timezone="UTC",
        max_file_size=4096,
        watch_interval=0.01,
        stats_interval=0.01,
        stats_history_size=60,
    )


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def store(config):
    return InMemoryStore(config)


@pytest.fixture
def embedder(config):
    return CountingEmbedder(config)


@pytest.fixture
def memory(store, embedder, config, clock):
    return MemoryStore(store, embedder, config, clock=clock)


@pytest.fixture
def indexer(store, embedder, config):
    return ProjectIndexer(store, embedder, config)


@pytest.fixture
def dispatcher(memory, indexer, config):
    return ToolDispatcher(memory, indexer, SessionState(), ActivityLog(config.activity_log_size), config)
