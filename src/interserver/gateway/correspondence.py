"""Relay correspondence table: delivered copy -> origin message, with TTL."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import NamedTuple

from cachetools import TTLCache
from loguru import logger

from interserver.core.constants import DEFAULT_CORRESPONDENCE_TTL


class Correspondence(NamedTuple):
    """Links one delivered copy to the message it was relayed from."""

    delivered_id: str
    delivered_channel_id: str
    origin_id: str
    origin_channel_id: str
    created_at: float


class CorrespondenceTable:
    """Bounded TTL map keyed by delivered message id.

    Reads never return an expired entry (TTLCache checks expiry on access);
    ``expire()`` is housekeeping only. When full, the least recently used
    entry is evicted first.
    """

    def __init__(
        self,
        *,
        ttl: float = DEFAULT_CORRESPONDENCE_TTL,
        maxsize: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._ttl = ttl
        self._entries: TTLCache[str, Correspondence] = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock)
        # origin id -> delivered ids, for fanning reactions out from an origin
        self._by_origin: TTLCache[str, tuple[str, ...]] = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock)

    @property
    def ttl(self) -> float:
        return self._ttl

    def record(
        self,
        delivered_id: str,
        origin_id: str,
        origin_channel_id: str,
        delivered_channel_id: str = "",
    ) -> Correspondence:
        """Insert an entry stamped with the current time. Overwrites an existing key."""
        entry = Correspondence(
            delivered_id=str(delivered_id),
            delivered_channel_id=str(delivered_channel_id),
            origin_id=str(origin_id),
            origin_channel_id=str(origin_channel_id),
            created_at=self._clock(),
        )
        self._entries[entry.delivered_id] = entry
        copies = self._by_origin.get(entry.origin_id, ())
        if entry.delivered_id not in copies:
            self._by_origin[entry.origin_id] = (*copies, entry.delivered_id)
        return entry

    def lookup(self, message_id: str | None) -> Correspondence | None:
        """Origin of a delivered message, or None when absent or expired."""
        if not message_id:
            return None
        return self._entries.get(str(message_id))

    def copies_of(self, origin_id: str) -> list[Correspondence]:
        """Live delivered copies of an origin message."""
        found: list[Correspondence] = []
        for delivered_id in self._by_origin.get(str(origin_id), ()):
            entry = self._entries.get(delivered_id)
            if entry is not None and entry.origin_id == str(origin_id):
                found.append(entry)
        return found

    def expire(self) -> int:
        """Drop expired entries now. Returns how many were removed."""
        removed = len(self._entries.expire() or ())
        self._by_origin.expire()
        if removed:
            logger.debug("Correspondence sweep removed {} entries", removed)
        return removed

    def __len__(self) -> int:
        return len(self._entries)
