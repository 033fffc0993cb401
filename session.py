"""Process-lifetime conversation tag and tagging mode."""

from __future__ import annotations

import threading

from errors import InvalidArgument
from models import TaggingMode


class SessionState:
    """Active conversation tag and tagging mode, safe to share across workers."""

    def __init__(self, tag: str = "", mode: TaggingMode = TaggingMode.AUTOMATIC):
        self._tag = tag
        self._mode = mode
        self._lock = threading.Lock()

    def get_tag(self) -> str:
        with self._lock:
            return self._tag

    def set_tag(self, tag: str) -> None:
        """Set the tag applied to new messages. An empty string clears it."""
        with self._lock:
            self._tag = tag.strip()

    def get_mode(self) -> TaggingMode:
        with self._lock:
            return self._mode

    def set_mode(self, mode: str | TaggingMode) -> None:
        try:
            value = TaggingMode(mode)
        except ValueError:
            raise InvalidArgument(
                f"Invalid tagging mode '{mode}'. Valid: {[m.value for m in TaggingMode]}"
            ) from None
        with self._lock:
            self._mode = value

    def auto_tag(self) -> str:
        """Tag to attach to a new message, or an empty string."""
        with self._lock:
            return self._tag if self._mode is TaggingMode.AUTOMATIC else ""

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return {"tag": self._tag, "mode": self._mode.value}
