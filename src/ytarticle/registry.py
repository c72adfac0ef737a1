"""In-process registry of in-flight generation requests."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from ytarticle.config import RegistrySettings
from ytarticle.locks import KeyedLock
from ytarticle.models import ChannelNotice, GenerationRequest, GenerationStatus

logger = logging.getLogger(__name__)


class ChannelHandle(Protocol):
    """What the registry needs from a realtime channel."""

    @property
    def is_open(self) -> bool: ...

    async def notify(self, notice: ChannelNotice) -> None: ...

    async def close(self) -> None: ...


@dataclass
class RegistryEntry:
    """Tracking state for one request id."""

    request: GenerationRequest
    submitted_at: float
    updated_at: float
    status: GenerationStatus = GenerationStatus.PENDING
    channel: ChannelHandle | None = None
    finalized_at: float | None = None
    finalized_by: str | None = None

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def finalized(self) -> bool:
        return self.finalized_at is not None


class RequestRegistry:
    """Maps request ids to their channel and status; every mutation holds that id's lock.

    Terminal status is recorded once: the first ``finalize`` call wins and
    later ones (a webhook after the socket reported completion, or the
    reverse) are no-ops.
    """

    def __init__(
        self,
        settings: RegistrySettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or RegistrySettings()
        self._clock = clock
        self._entries: dict[str, RegistryEntry] = {}
        self._locks = KeyedLock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def get(self, request_id: str) -> RegistryEntry | None:
        return self._entries.get(request_id)

    def entries(self) -> list[RegistryEntry]:
        return list(self._entries.values())

    async def register(self, request: GenerationRequest) -> RegistryEntry:
        async with self._locks.hold(request.request_id):
            existing = self._entries.get(request.request_id)
            if existing is not None:
                return existing

            now = self._clock()
            entry = RegistryEntry(request=request, submitted_at=now, updated_at=now, status=request.status)
            self._entries[request.request_id] = entry
            logger.debug(f"Registered request {request.request_id}")
            return entry

    async def attach_channel(self, request_id: str, channel: ChannelHandle) -> bool:
        async with self._locks.hold(request_id):
            entry = self._entries.get(request_id)
            if entry is None:
                return False
            entry.channel = channel
            return True

    async def update_status(self, request_id: str, status: GenerationStatus) -> bool:
        """Record a non-terminal status; terminal statuses must go through finalize."""

        if status.is_terminal:
            raise ValueError("Use finalize() for terminal statuses")

        async with self._locks.hold(request_id):
            entry = self._entries.get(request_id)
            if entry is None or entry.finalized:
                return False
            entry.status = status
            entry.updated_at = self._clock()
            return True

    async def finalize(self, request_id: str, status: GenerationStatus, source: str) -> bool:
        """Mark a request terminal. Returns True only for the first caller."""

        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")

        async with self._locks.hold(request_id):
            entry = self._entries.get(request_id)
            if entry is None:
                logger.debug(f"Finalize from {source} for untracked request {request_id}")
                return False
            if entry.finalized:
                logger.info(
                    f"Ignoring {status.value} from {source} for request {request_id}; "
                    f"already finalized by {entry.finalized_by}"
                )
                return False

            now = self._clock()
            entry.status = status
            entry.updated_at = now
            entry.finalized_at = now
            entry.finalized_by = source
            logger.info(f"Request {request_id} finalized as {status.value} by {source}")
            return True

    async def remove(self, request_id: str) -> RegistryEntry | None:
        async with self._locks.hold(request_id):
            return self._entries.pop(request_id, None)

    async def evict_expired(self, now: float | None = None) -> list[RegistryEntry]:
        """Drop finalized entries past the grace period and any entry past its max lifetime."""

        current = self._clock() if now is None else now
        evicted: list[RegistryEntry] = []

        for request_id in list(self._entries):
            async with self._locks.hold(request_id):
                entry = self._entries.get(request_id)
                if entry is None:
                    continue

                finished = entry.finalized and current - entry.finalized_at >= self._settings.grace_seconds
                expired = current - entry.submitted_at >= self._settings.max_lifetime_seconds
                if finished or expired:
                    del self._entries[request_id]
                    evicted.append(entry)

        if evicted:
            logger.info(f"Evicted {len(evicted)} request(s) from registry")
        return evicted
