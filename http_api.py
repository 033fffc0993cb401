"""HTTP API for editor integrations and status polling."""

from __future__ import annotations

import time
from typing import Any

from flask import Flask, jsonify, request

from dispatcher import ToolDispatcher
from errors import (
    BackendUnavailable,
    EmbeddingError,
    InvalidArgument,
    MemoryClientError,
    NotFound,
    OperationCancelled,
    UnsupportedOperation,
)
from stats import StatsCollector

STATUS_BY_KIND = {
    cls.kind: cls.http_status
    for cls in (
        InvalidArgument,
        UnsupportedOperation,
        NotFound,
        BackendUnavailable,
        EmbeddingError,
        OperationCancelled,
    )
}


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidArgument("Request body must be a JSON object")
    return body


def create_app(dispatcher: ToolDispatcher, collector: StatsCollector | None = None) -> Flask:
    """Build the Flask app around a shared dispatcher."""
    app = Flask(__name__)
    started_at = time.monotonic()

    def run(name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            result = dispatcher.call(name, arguments)
        except MemoryClientError as e:
            dispatcher.activity.record(name, f"http: {e}", success=False)
            raise
        dispatcher.activity.record(name, "http")
        return result

    @app.errorhandler(MemoryClientError)
    def handle_error(error: MemoryClientError):
        return jsonify({"status": "error", "error": str(error), "error_type": error.kind}), error.http_status

    @app.post("/api/message")
    def add_message():
        body = _json_body()
        arguments = {k: body[k] for k in ("role", "content", "tags", "metadata") if k in body}
        result = run("add_message", arguments)
        return jsonify({"status": "ok", **result})

    @app.post("/api/set-conversation-tag")
    def set_conversation_tag():
        body = _json_body()
        if "tag" not in body:
            raise InvalidArgument("Invalid argument 'tag': Field required")
        return jsonify({"status": "ok", **run("set_conversation_tag", {"tag": body["tag"]})})

    @app.get("/api/get-conversation-tag")
    def get_conversation_tag():
        return jsonify({"status": "ok", **run("get_conversation_tag")})

    @app.post("/api/set-tagging-mode")
    def set_tagging_mode():
        body = _json_body()
        return jsonify({"status": "ok", **run("set_tagging_mode", {"mode": body.get("mode")})})

    @app.get("/api/get-tagging-mode")
    def get_tagging_mode():
        return jsonify({"status": "ok", **run("get_tagging_mode")})

    @app.post("/api/mcp")
    def mcp_envelope():
        body = request.get_json(silent=True)
        if body is None:
            raise InvalidArgument("Request body must be JSON")
        response = dispatcher.dispatch(body)
        status = 200 if response["status"] == "ok" else STATUS_BY_KIND.get(response["error_type"], 500)
        return jsonify(response), status

    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    @app.get("/api/status")
    def status():
        latest = collector.latest() if collector is not None else None
        return jsonify(
            {
                "status": "running",
                "uptime_seconds": round(time.monotonic() - started_at, 1),
                "collection": dispatcher.config.collection_name,
                "requests": dispatcher.activity.request_count,
                "session": dispatcher.session.snapshot(),
                "stats": latest.model_dump(mode="json") if latest is not None else None,
                "recent_activity": dispatcher.activity.recent(),
            }
        )

    @app.get("/api/memory/stats")
    def memory_stats():
        return jsonify(run("get_memory_stats"))

    @app.get("/api/memory/stats/history")
    def memory_stats_history():
        history = collector.history() if collector is not None else []
        return jsonify({"history": [s.model_dump(mode="json") for s in history]})

    return app
