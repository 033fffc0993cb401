"""Tool-call dispatcher and the line-delimited JSON stdio transport.

Request envelope:   {"id": ..., "type": "tool_call", "data": {"name": ..., "arguments": {...}}}
Response envelope:  {"id": ..., "status": "ok", "result": ...}
                    {"id": ..., "status": "error", "error": ..., "error_type": ...}
"""

from __future__ import annotations

import asyncio
import json
import sys
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Annotated, Any, Callable, Literal

from pydantic import AfterValidator, BaseModel, Field, ValidationError

from config import CONFIG, Config
from errors import InvalidArgument, MemoryClientError, NotFound, UnsupportedOperation
from indexer import ProjectIndexer
from memory_store import MemoryStore
from models import HistoryFilter, Message, Role, TaggingMode
from session import SessionState
from stats import ActivityLog
from utils import log, truncate

TOOL_CALL = "tool_call"
LIST_TOOLS_REQUEST = "list_tools_request"
RESOURCE_ACCESS = "resource_access"

CONVERSATION_HISTORY_URI = "memory:///conversation_history"
PROJECT_FILES_URI = "memory:///project_files"


# =============================================================================
# Argument models
# =============================================================================


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be empty")
    return value


NonBlank = Annotated[str, AfterValidator(_not_blank)]


class NoArgs(BaseModel):
    pass


class AddMessageArgs(BaseModel):
    role: Role
    content: NonBlank
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchArgs(BaseModel):
    query: NonBlank
    limit: int | None = None


class HistoryArgs(BaseModel):
    limit: int | None = None
    role: Role | None = None
    tags: list[str] = Field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None


class TagArgs(BaseModel):
    tag: NonBlank


class MessageIdArgs(BaseModel):
    id: NonBlank


class TimeRangeArgs(BaseModel):
    start_time: datetime
    end_time: datetime


class ClearMessagesArgs(BaseModel):
    period: Literal["day", "week", "month", "all"]


class ProjectArgs(BaseModel):
    path: NonBlank
    tag: str | None = None


class ListFilesArgs(BaseModel):
    limit: int | None = None
    tag: str | None = None


class FilePathArgs(BaseModel):
    path: NonBlank


class OptionalTagArgs(BaseModel):
    tag: str | None = None


class SetTagArgs(BaseModel):
    tag: str


class SetModeArgs(BaseModel):
    mode: TaggingMode


@dataclass(frozen=True)
class Tool:
    name: str
    args: type[BaseModel]
    handler: Callable[[Any], Any]
    description: str


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or "arguments"
    return f"Invalid argument '{field}': {first['msg']}"


def error_envelope(request_id: str, error: Exception) -> dict[str, Any]:
    kind = error.kind if isinstance(error, MemoryClientError) else "InternalError"
    return {"id": request_id, "status": "error", "error": str(error) or kind, "error_type": kind}


# =============================================================================
# Dispatcher
# =============================================================================


class ToolDispatcher:
    """Routes request envelopes to memory and indexer operations.

    ``dispatch`` is synchronous and never raises; ``handle`` runs it in a
    worker thread so independent requests proceed concurrently.
    """

    def __init__(
        self,
        memory: MemoryStore,
        indexer: ProjectIndexer,
        session: SessionState | None = None,
        activity: ActivityLog | None = None,
        config: Config = CONFIG,
    ):
        self.memory = memory
        self.indexer = indexer
        self.session = session or SessionState()
        self.activity = activity or ActivityLog(config.activity_log_size)
        self.config = config
        self.cancel = threading.Event()  # set on shutdown
        self.tools: dict[str, Tool] = {
            tool.name: tool
            for tool in [
                Tool("add_message", AddMessageArgs, self._add_message, "Store a conversation message"),
                Tool("search_similar_messages", SearchArgs, self._search_messages, "Similarity search over stored memory"),
                Tool("get_conversation_history", HistoryArgs, self._history, "Recent messages, newest first, with optional filters"),
                Tool("get_messages_by_tag", TagArgs, self._messages_by_tag, "Messages carrying a tag"),
                Tool("delete_message", MessageIdArgs, self._delete_message, "Delete one message by ID"),
                Tool("delete_messages_by_time_range", TimeRangeArgs, self._delete_time_range, "Delete messages in [start_time, end_time)"),
                Tool("clear_messages", ClearMessagesArgs, self._clear_messages, "Delete messages for the current day, week, month, or all"),
                Tool("delete_all_messages", NoArgs, self._delete_all_messages, "Delete every message, keeping project files"),
                Tool("index_project", ProjectArgs, self._index_project, "Index files not yet stored"),
                Tool("update_project", ProjectArgs, self._update_project, "Index new files and re-index modified ones"),
                Tool("search_project_files", SearchArgs, self._search_files, "Similarity search over project files"),
                Tool("list_project_files", ListFilesArgs, self._list_files, "List indexed project files"),
                Tool("delete_project_file", FilePathArgs, self._delete_file, "Delete one project file by path or ID"),
                Tool("delete_all_project_files", OptionalTagArgs, self._delete_all_files, "Delete all project files, or those with a tag"),
                Tool("clear_all_memories", NoArgs, self._clear_all, "Delete every point in the collection"),
                Tool("get_memory_stats", NoArgs, self._stats, "Collection counts by role and type"),
                Tool("set_conversation_tag", SetTagArgs, self._set_tag, "Set the tag applied to new messages"),
                Tool("get_conversation_tag", NoArgs, self._get_tag, "Current conversation tag"),
                Tool("set_tagging_mode", SetModeArgs, self._set_mode, "Set tagging mode: automatic or manual"),
                Tool("get_tagging_mode", NoArgs, self._get_mode, "Current tagging mode"),
            ]
        }

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def dispatch(self, request: Any) -> dict[str, Any]:
        """Handle one request envelope and return the response envelope."""
        request_id = ""
        operation = "request"
        try:
            if not isinstance(request, dict):
                raise InvalidArgument("Request must be a JSON object")
            request_id = "" if request.get("id") is None else str(request["id"])
            request_type = request.get("type")
            data = request.get("data") or {}
            if not isinstance(data, dict):
                raise InvalidArgument("Request data must be an object")
            operation = str(data.get("name") or request_type)
            result = self._route(request_type, data)
        except MemoryClientError as e:
            self.activity.record(operation, str(e), success=False)
            return error_envelope(request_id, e)
        except Exception as e:
            log(f"Unexpected error in {operation}: {e!r}")
            self.activity.record(operation, repr(e), success=False)
            return error_envelope(request_id, e)

        self.activity.record(operation, truncate(json.dumps(data.get("arguments") or {}, default=str), 100))
        return {"id": request_id, "status": "ok", "result": result}

    async def handle(self, request: Any) -> dict[str, Any]:
        return await asyncio.to_thread(self.dispatch, request)

    def call(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """Invoke a tool directly. Raises MemoryClientError on failure."""
        tool = self.tools.get(name)
        if tool is None:
            raise UnsupportedOperation(f"Unknown tool '{name}'")
        if arguments is not None and not isinstance(arguments, dict):
            raise InvalidArgument("Tool arguments must be an object")
        try:
            args = tool.args.model_validate(arguments or {})
        except ValidationError as e:
            raise InvalidArgument(_validation_message(e)) from None
        return tool.handler(args)

    def _route(self, request_type: Any, data: dict[str, Any]) -> Any:
        if request_type == TOOL_CALL:
            name = data.get("name")
            if not name:
                raise InvalidArgument("Tool name is required")
            return self.call(name, data.get("arguments"))
        if request_type == LIST_TOOLS_REQUEST:
            return {"tools": self.list_tools()}
        if request_type == RESOURCE_ACCESS:
            return self._read_resource(data.get("uri") or "")
        raise UnsupportedOperation(f"Unsupported request type '{request_type}'")

    def list_tools(self) -> list[dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.args.model_json_schema()}
            for t in self.tools.values()
        ]

    def _read_resource(self, uri: str) -> dict[str, Any]:
        if uri == CONVERSATION_HISTORY_URI:
            return {"uri": uri, "messages": [m.summary() for m in self.memory.get_conversation_history()]}
        if uri == PROJECT_FILES_URI:
            return {"uri": uri, "files": [f.summary() for f in self.indexer.list_project_files()]}
        raise NotFound(f"Unknown resource '{uri}'")

    # -------------------------------------------------------------------------
    # Conversation handlers
    # -------------------------------------------------------------------------

    def _add_message(self, args: AddMessageArgs) -> dict[str, Any]:
        tags = list(args.tags)
        session_tag = self.session.auto_tag()
        if session_tag:
            tags.append(session_tag)
        message = Message(
            role=args.role,
            content=args.content,
            tags=tags,
            metadata=args.metadata,
            timestamp=self.memory.clock(),
        )
        message_id = self.memory.add_message(message, cancel=self.cancel)
        return {"id": message_id, "tags": message.tags}

    def _search_messages(self, args: SearchArgs) -> dict[str, Any]:
        return {"messages": [m.summary() for m in self.memory.search_messages(args.query, args.limit)]}

    def _history(self, args: HistoryArgs) -> dict[str, Any]:
        history_filter = HistoryFilter(
            role=args.role, tags=args.tags, start_time=args.start_time, end_time=args.end_time
        )
        messages = self.memory.get_conversation_history(args.limit, history_filter)
        return {"messages": [m.summary() for m in messages]}

    def _messages_by_tag(self, args: TagArgs) -> dict[str, Any]:
        return {"messages": [m.summary() for m in self.memory.get_messages_by_tag(args.tag)]}

    def _delete_message(self, args: MessageIdArgs) -> dict[str, Any]:
        self.memory.delete_message(args.id)
        return {"deleted": args.id}

    def _delete_time_range(self, args: TimeRangeArgs) -> dict[str, Any]:
        return {"deleted": self.memory.delete_messages_by_time_range(args.start_time, args.end_time)}

    def _clear_messages(self, args: ClearMessagesArgs) -> dict[str, Any]:
        clear = {
            "day": self.memory.delete_messages_for_current_day,
            "week": self.memory.delete_messages_for_current_week,
            "month": self.memory.delete_messages_for_current_month,
            "all": self.memory.clear_messages,
        }[args.period]
        return {"period": args.period, "deleted": clear()}

    def _delete_all_messages(self, args: NoArgs) -> dict[str, Any]:
        return {"deleted": self.memory.clear_messages()}

    def _clear_all(self, args: NoArgs) -> dict[str, Any]:
        return {"deleted": self.memory.clear_all_memories()}

    def _stats(self, args: NoArgs) -> dict[str, Any]:
        return self.memory.get_memory_stats().model_dump(mode="json")

    # -------------------------------------------------------------------------
    # Project file handlers
    # -------------------------------------------------------------------------

    def _index_project(self, args: ProjectArgs) -> dict[str, Any]:
        report = self.indexer.index_project(args.path, tag=args.tag, cancel=self.cancel)
        return {"path": args.path, **report.as_dict()}

    def _update_project(self, args: ProjectArgs) -> dict[str, Any]:
        report = self.indexer.update_project_files(args.path, tag=args.tag, cancel=self.cancel)
        return {"path": args.path, **report.as_dict()}

    def _search_files(self, args: SearchArgs) -> dict[str, Any]:
        files = self.indexer.search_project_files(args.query, args.limit)
        return {"files": [f.summary(with_content=True) for f in files]}

    def _list_files(self, args: ListFilesArgs) -> dict[str, Any]:
        return {"files": [f.summary() for f in self.indexer.list_project_files(args.limit, args.tag)]}

    def _delete_file(self, args: FilePathArgs) -> dict[str, Any]:
        self.indexer.delete_project_file(args.path)
        return {"deleted": args.path}

    def _delete_all_files(self, args: OptionalTagArgs) -> dict[str, Any]:
        if args.tag:
            return {"tag": args.tag, "deleted": self.indexer.delete_project_files_by_tag(args.tag)}
        return {"deleted": self.memory.clear_project_files()}

    # -------------------------------------------------------------------------
    # Session handlers
    # -------------------------------------------------------------------------

    def _set_tag(self, args: SetTagArgs) -> dict[str, Any]:
        self.session.set_tag(args.tag)
        return {"tag": self.session.get_tag()}

    def _get_tag(self, args: NoArgs) -> dict[str, Any]:
        return {"tag": self.session.get_tag()}

    def _set_mode(self, args: SetModeArgs) -> dict[str, Any]:
        self.session.set_mode(args.mode)
        return {"mode": self.session.get_mode().value}

    def _get_mode(self, args: NoArgs) -> dict[str, Any]:
        return {"mode": self.session.get_mode().value}

    # -------------------------------------------------------------------------
    # Stdio transport
    # -------------------------------------------------------------------------

    async def serve_stdio(self, stdin: IO[str] | None = None, stdout: IO[str] | None = None) -> None:
        """Read one JSON request per line; answer each as soon as it completes.

        Responses may be written out of order; callers correlate by ``id``.
        """
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout
        write_lock = asyncio.Lock()
        pending: set[asyncio.Task] = set()

        async def respond(line: str) -> None:
            try:
                request = json.loads(line)
            except json.JSONDecodeError as e:
                response = error_envelope("", InvalidArgument(f"Invalid JSON request: {e}"))
            else:
                response = await self.handle(request)
            async with write_lock:
                stdout.write(json.dumps(response) + "\n")
                stdout.flush()

        while True:
            line = await asyncio.to_thread(stdin.readline)
            if not line:
                break
            if not line.strip():
                continue
            task = asyncio.create_task(respond(line))
            pending.add(task)
            task.add_done_callback(pending.discard)

        if pending:
            await asyncio.gather(*pending)
