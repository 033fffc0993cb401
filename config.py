"""Configuration for memory-client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo


def _env(name: str, default: str) -> str:
    return os.environ.get(name, default)


@dataclass(frozen=True, slots=True)
class Config:
    """Client configuration with sensible defaults.

    Defaults are read from the environment when the instance is created,
    so tests can construct a Config after adjusting os.environ.
    """

    qdrant_url: str = field(default_factory=lambda: _env("QDRANT_URL", "http://localhost:6333"))
    collection_name: str = field(default_factory=lambda: _env("COLLECTION_NAME", "conversation_memory"))
    embedding_dim: int = field(default_factory=lambda: int(_env("EMBEDDING_DIM", "384")))
    embedding_provider: str = field(default_factory=lambda: _env("EMBEDDING_PROVIDER", "hash"))  # hash | ollama | google
    embedding_model: str = field(default_factory=lambda: _env("EMBEDDING_MODEL", "nomic-embed-text"))
    ollama_base_url: str = field(default_factory=lambda: _env("OLLAMA_BASE_URL", "http://localhost:11434"))
    embedding_cache_size: int = 128
    request_timeout: float = field(default_factory=lambda: float(_env("MEMORY_REQUEST_TIMEOUT", "10")))
    timezone: str = field(default_factory=lambda: _env("MEMORY_TIMEZONE", "UTC"))
    default_limit: int = 5
    history_limit: int = 10
    max_limit: int = 100
    max_file_size: int = field(default_factory=lambda: int(_env("MEMORY_MAX_FILE_SIZE", str(1024 * 1024))))
    watch_interval: float = field(default_factory=lambda: float(_env("MEMORY_WATCH_INTERVAL", "5")))
    stats_interval: float = field(default_factory=lambda: float(_env("MEMORY_STATS_INTERVAL", "15")))
    stats_history_size: int = 60
    activity_log_size: int = 50
    api_host: str = field(default_factory=lambda: _env("MEMORY_API_HOST", "127.0.0.1"))
    api_port: int = field(default_factory=lambda: int(_env("MEMORY_API_PORT", "10010")))

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


CONFIG = Config()
