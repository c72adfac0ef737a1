"""Time-bounded cache for article status responses."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from ytarticle.models import GenerationRequest

TERMINAL_TTL_SECONDS = 3600.0
PENDING_TTL_SECONDS = 60.0


class StatusCache:
    """Per-request status cache; terminal results live longer than in-flight ones.

    Safe to share between concurrent polling callers, including callers on
    other threads.
    """

    def __init__(
        self,
        *,
        terminal_ttl: float = TERMINAL_TTL_SECONDS,
        pending_ttl: float = PENDING_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._terminal_ttl = terminal_ttl
        self._pending_ttl = pending_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, GenerationRequest]] = {}

    def get(self, request_id: str) -> GenerationRequest | None:
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[request_id]
                return None
            return value

    def set(self, value: GenerationRequest) -> None:
        ttl = self._terminal_ttl if value.is_terminal else self._pending_ttl
        with self._lock:
            self._entries[value.request_id] = (self._clock() + ttl, value)

    def invalidate(self, request_id: str) -> None:
        with self._lock:
            self._entries.pop(request_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
