"""Request/response log of vertex calls, for operators inspecting a session.

Each vertex call is mirrored here after it completes. Recording is advisory:
callers swallow sink failures so that a broken sink never blocks a protocol
run.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol


@dataclass
class ApiLogEntry:
    """One vertex request and its outcome."""

    provider: str
    vertex_index: int
    method: str
    path: str
    request: Any = None
    status: int | None = None
    response: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ApiLogSink(Protocol):
    def record(self, entry: ApiLogEntry) -> None: ...


class ApiLogBuffer:
    """Bounded in-memory sink keeping the most recent entries."""

    def __init__(self, max_entries: int = 500) -> None:
        self._entries: deque[ApiLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(self, entry: ApiLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self, limit: int | None = None) -> list[ApiLogEntry]:
        """Most recent entries, oldest first."""
        with self._lock:
            items = list(self._entries)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
