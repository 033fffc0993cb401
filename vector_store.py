"""Vector store adapter for the Qdrant REST API.

All calls are synchronous HTTP with a bounded timeout. A caller-supplied
``threading.Event`` is checked before each request is sent.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

import requests

from config import CONFIG, Config
from errors import BackendUnavailable, InvalidArgument, NotFound, OperationCancelled
from utils import log

SCROLL_PAGE_SIZE = 256


# =============================================================================
# Filters
# =============================================================================


def match(key: str, value: Any) -> dict[str, Any]:
    """Equality condition. On array fields, matches if any element equals."""
    return {"key": key, "match": {"value": value}}


def match_any(key: str, values: list[Any]) -> dict[str, Any]:
    return {"key": key, "match": {"any": list(values)}}


def value_range(key: str, **bounds: float | None) -> dict[str, Any]:
    """Range condition; accepted bounds are gt, gte, lt, lte."""
    return {"key": key, "range": {k: v for k, v in bounds.items() if v is not None}}


@dataclass
class Filter:
    """Conjunction of payload conditions."""

    must: list[dict[str, Any]] = field(default_factory=list)
    must_not: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.must:
            body["must"] = self.must
        if self.must_not:
            body["must_not"] = self.must_not
        return body


@dataclass
class Point:
    id: str
    payload: dict[str, Any]
    score: float | None = None
    vector: list[float] | None = None


# =============================================================================
# Adapter
# =============================================================================


class QdrantStore:
    """Narrow upsert/query/scroll/delete contract over one collection."""

    def __init__(self, config: Config = CONFIG, session: requests.Session | None = None):
        self.base_url = config.qdrant_url.rstrip("/")
        self.collection = config.collection_name
        self.dimension = config.embedding_dim
        self.timeout = config.request_timeout
        self._http = session or requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        cancel: threading.Event | None = None,
        allow_404: bool = False,
    ) -> dict[str, Any] | None:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"{method} {path} cancelled")
        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(method, url, json=body, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise BackendUnavailable(f"Vector store unreachable at {self.base_url}: {e}") from e

        if response.status_code == 404 and allow_404:
            return None
        if response.status_code in (400, 422):
            raise InvalidArgument(f"Vector store rejected request: {response.text}")
        if response.status_code == 404:
            raise NotFound(f"{method} {path}: {response.text}")
        if response.status_code >= 300:
            raise BackendUnavailable(
                f"{method} {path} failed: {response.status_code} - {response.text}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise BackendUnavailable(f"Vector store returned invalid JSON for {method} {path}") from e

    def _points_path(self, suffix: str = "") -> str:
        return f"/collections/{self.collection}/points{suffix}"

    # -------------------------------------------------------------------------
    # Collection management
    # -------------------------------------------------------------------------

    def collection_exists(self, name: str | None = None, cancel: threading.Event | None = None) -> bool:
        result = self._request("GET", f"/collections/{name or self.collection}", cancel=cancel, allow_404=True)
        return result is not None

    def ensure_collection(
        self, name: str | None = None, dimension: int | None = None, cancel: threading.Event | None = None
    ) -> bool:
        """Create the collection if absent. Returns True when it was created."""
        name = name or self.collection
        if self.collection_exists(name, cancel=cancel):
            return False
        self._request(
            "PUT",
            f"/collections/{name}",
            {"vectors": {"size": dimension or self.dimension, "distance": "Cosine"}},
            cancel=cancel,
        )
        log(f"Created collection '{name}' ({dimension or self.dimension}-dim, cosine)")
        return True

    def drop_collection(self, cancel: threading.Event | None = None) -> None:
        self._request("DELETE", f"/collections/{self.collection}", cancel=cancel, allow_404=True)

    def collection_info(self, cancel: threading.Event | None = None) -> dict[str, Any]:
        result = self._request("GET", f"/collections/{self.collection}", cancel=cancel)
        return result.get("result") or {}

    # -------------------------------------------------------------------------
    # Points
    # -------------------------------------------------------------------------

    def upsert(
        self,
        point_id: str,
        vector: list[float],
        payload: dict[str, Any],
        cancel: threading.Event | None = None,
    ) -> None:
        """Insert or replace one point.

        The body carries both ``points`` and ``ids``: the backend rejects
        writes without the ids list ("missing field `ids`").
        """
        if len(vector) != self.dimension:
            raise InvalidArgument(
                f"Vector dimension {len(vector)} does not match collection dimension {self.dimension}"
            )
        body = {
            "points": [{"id": point_id, "vector": vector, "payload": payload}],
            "ids": [point_id],
        }
        self._request("PUT", self._points_path(), body, params={"wait": "true"}, cancel=cancel)

    def query(
        self,
        vector: list[float],
        limit: int,
        filter: Filter | None = None,
        cancel: threading.Event | None = None,
    ) -> list[Point]:
        """Up to ``limit`` points by descending similarity."""
        body: dict[str, Any] = {
            "vector": vector,
            "limit": limit,
            "with_payload": True,
            "with_vector": False,
        }
        if filter is not None:
            body["filter"] = filter.to_dict()
        result = self._request("POST", self._points_path("/search"), body, cancel=cancel)
        points = [
            Point(id=str(item["id"]), payload=item.get("payload") or {}, score=item.get("score"))
            for item in result.get("result") or []
        ]
        return sorted(points, key=lambda p: p.score or 0.0, reverse=True)

    def scroll(
        self,
        filter: Filter | None = None,
        limit: int | None = None,
        cancel: threading.Event | None = None,
    ) -> list[Point]:
        """Points matching ``filter`` without a query vector. ``limit=None`` reads all pages."""
        points: list[Point] = []
        offset: Any = None
        while limit is None or len(points) < limit:
            page_size = SCROLL_PAGE_SIZE if limit is None else min(SCROLL_PAGE_SIZE, limit - len(points))
            body: dict[str, Any] = {"limit": page_size, "with_payload": True, "with_vector": False}
            if filter is not None:
                body["filter"] = filter.to_dict()
            if offset is not None:
                body["offset"] = offset
            result = (self._request("POST", self._points_path("/scroll"), body, cancel=cancel) or {}).get(
                "result"
            ) or {}
            points.extend(
                Point(id=str(item["id"]), payload=item.get("payload") or {})
                for item in result.get("points") or []
            )
            offset = result.get("next_page_offset")
            if offset is None:
                break
        return points

    def count(self, filter: Filter | None = None, cancel: threading.Event | None = None) -> int:
        body: dict[str, Any] = {"exact": True}
        if filter is not None:
            body["filter"] = filter.to_dict()
        result = self._request("POST", self._points_path("/count"), body, cancel=cancel)
        return int((result.get("result") or {}).get("count", 0))

    def retrieve(self, ids: list[str], cancel: threading.Event | None = None) -> list[Point]:
        body = {"ids": list(ids), "with_payload": True, "with_vector": False}
        result = self._request("POST", self._points_path(), body, cancel=cancel)
        return [
            Point(id=str(item["id"]), payload=item.get("payload") or {})
            for item in result.get("result") or []
        ]

    def delete(self, filter: Filter, cancel: threading.Event | None = None) -> int:
        """Remove all points matching ``filter``. An empty filter matches everything."""
        removed = self.count(filter, cancel=cancel)
        if removed == 0:
            return 0
        self._request(
            "POST",
            self._points_path("/delete"),
            {"filter": filter.to_dict()},
            params={"wait": "true"},
            cancel=cancel,
        )
        return removed

    def delete_ids(self, ids: list[str], cancel: threading.Event | None = None) -> int:
        existing = self.retrieve(ids, cancel=cancel)
        if not existing:
            return 0
        self._request(
            "POST",
            self._points_path("/delete"),
            {"points": [p.id for p in existing]},
            params={"wait": "true"},
            cancel=cancel,
        )
        return len(existing)
