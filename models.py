"""Shared data models for memory-client.

IMPORTANT: the payload layout written by ``to_payload`` is what is stored in
the collection. Changing a field name requires migrating existing points.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from utils import as_utc, new_id, parse_iso, to_iso, utc_now

MESSAGE_TYPE = "message"
PROJECT_FILE_TYPE = "project_file"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    PROJECT = "project"  # Project files share the collection


class TaggingMode(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


# Extensions never indexed: media, archives, office documents, compiled objects
EXCLUDED_EXTENSIONS = frozenset(
    {
        ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".svg", ".ico", ".webp", ".tiff", ".tif",
        ".mp3", ".wav", ".ogg", ".flac", ".aac",
        ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv", ".m4v", ".3gp",
        ".zip", ".tar", ".gz", ".rar", ".7z",
        ".exe", ".dll", ".so", ".dylib", ".bin", ".dat", ".db", ".sqlite", ".mdb",
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        ".o", ".a", ".lib", ".obj", ".class", ".pyc", ".pyo", ".pyd",
    }
)

LANGUAGE_MAP = {
    ".go": "Go",
    ".py": "Python",
    ".js": "JavaScript",
    ".ts": "TypeScript",
    ".jsx": "JavaScript (React)",
    ".tsx": "TypeScript (React)",
    ".html": "HTML",
    ".css": "CSS",
    ".scss": "SCSS",
    ".less": "LESS",
    ".json": "JSON",
    ".xml": "XML",
    ".yaml": "YAML",
    ".yml": "YAML",
    ".md": "Markdown",
    ".txt": "Text",
    ".sh": "Shell",
    ".bat": "Batch",
    ".ps1": "PowerShell",
    ".c": "C",
    ".cpp": "C++",
    ".h": "C/C++ Header",
    ".hpp": "C++ Header",
    ".cs": "C#",
    ".java": "Java",
    ".rb": "Ruby",
    ".php": "PHP",
    ".swift": "Swift",
    ".kt": "Kotlin",
    ".rs": "Rust",
    ".sql": "SQL",
    ".r": "R",
    ".dart": "Dart",
    ".lua": "Lua",
    ".scala": "Scala",
    ".pl": "Perl",
    ".groovy": "Groovy",
    ".elm": "Elm",
    ".ex": "Elixir",
    ".exs": "Elixir",
    ".erl": "Erlang",
    ".hs": "Haskell",
    ".fs": "F#",
    ".fsx": "F#",
    ".clj": "Clojure",
    ".toml": "TOML",
    ".ini": "INI",
    ".cfg": "Configuration",
    ".conf": "Configuration",
}


def detect_language(suffix: str) -> str:
    return LANGUAGE_MAP.get(suffix.lower(), "Text")


class Message(BaseModel):
    """A stored conversational turn. Never updated in place."""

    id: str = Field(default_factory=new_id)
    role: Role
    content: str
    embedding: list[float] | None = None
    tags: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: dict[str, str] = Field(default_factory=dict)
    score: float | None = None  # search results only

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(t for t in value if t))

    @field_validator("metadata", mode="before")
    @classmethod
    def _stringify_metadata(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): v if isinstance(v, str) else str(v) for k, v in value.items()}
        return value

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": MESSAGE_TYPE,
            "role": self.role.value,
            "content": self.content,
            "timestamp": to_iso(self.timestamp),
            "unix_time": self.timestamp.timestamp(),
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_point(cls, point_id: str, payload: dict[str, Any], score: float | None = None) -> Message:
        """Build a Message from a stored point. Project files map to role=project."""
        if payload.get("type") == PROJECT_FILE_TYPE:
            tag = payload.get("tag") or ""
            return cls(
                id=str(point_id),
                role=Role.PROJECT,
                content=payload.get("content") or "",
                tags=[tag] if tag else [],
                timestamp=parse_iso(payload.get("timestamp")) or utc_now(),
                metadata={
                    "path": payload.get("path", ""),
                    "language": payload.get("language", ""),
                },
                score=score,
            )
        return cls(
            id=str(point_id),
            role=payload.get("role", Role.USER.value),
            content=payload.get("content") or "",
            tags=payload.get("tags") or [],
            timestamp=parse_iso(payload.get("timestamp")) or utc_now(),
            metadata=payload.get("metadata") or {},
            score=score,
        )

    def summary(self) -> dict[str, Any]:
        """JSON-friendly view without the embedding."""
        data = self.model_dump(mode="json", exclude={"embedding"})
        if self.score is None:
            data.pop("score")
        return data


class ProjectFile(BaseModel):
    """An indexed source file. ``id`` is derived from the absolute path."""

    id: str
    path: str
    project_root: str = ""
    content: str = ""
    language: str = "Text"
    mod_time: float = 0.0
    tag: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    score: float | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": PROJECT_FILE_TYPE,
            "role": Role.PROJECT.value,
            "path": self.path,
            "project_root": self.project_root,
            "content": self.content,
            "language": self.language,
            "mod_time": self.mod_time,
            "tag": self.tag,
            "timestamp": to_iso(self.timestamp),
            "unix_time": as_utc(self.timestamp).timestamp(),
        }

    @classmethod
    def from_point(cls, point_id: str, payload: dict[str, Any], score: float | None = None) -> ProjectFile:
        return cls(
            id=str(point_id),
            path=payload.get("path", ""),
            project_root=payload.get("project_root", ""),
            content=payload.get("content", ""),
            language=payload.get("language") or "Text",
            mod_time=float(payload.get("mod_time") or 0.0),
            tag=payload.get("tag") or "",
            timestamp=parse_iso(payload.get("timestamp")) or utc_now(),
            score=score,
        )

    def summary(self, with_content: bool = False) -> dict[str, Any]:
        exclude = set() if with_content else {"content"}
        data = self.model_dump(mode="json", exclude=exclude)
        if self.score is None:
            data.pop("score")
        return data


class HistoryFilter(BaseModel):
    role: Role | None = None
    tags: list[str] = Field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None


class MemoryStats(BaseModel):
    """A point-in-time sample of collection counts."""

    total_vectors: int
    message_count: dict[str, int]
    project_file_count: int
    timestamp: datetime = Field(default_factory=utc_now)


@dataclass
class IndexReport:
    """Outcome of one indexing pass.

    Per-file failures do not fail the pass; they are counted here.
    """

    added: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def partial(self) -> bool:
        return self.failed > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": dict(self.errors),
            "cancelled": self.cancelled,
            "partial_failure": self.partial,
        }
