"""Debounced, periodic persistence of the group registry."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from loguru import logger

from interserver.core.errors import StorageFailure
from interserver.events import BanChanged, ChannelLinked, ChannelUnlinked, GroupCreated, GroupDeleted

if TYPE_CHECKING:
    from interserver.gateway.registry import GroupRegistry
    from interserver.store.json_store import JsonGroupStore

_REGISTRY_EVENTS = (GroupCreated, ChannelLinked, ChannelUnlinked, GroupDeleted, BanChanged)

Sleep = Callable[[float], Awaitable[Any]]


class PersistScheduler:
    """Bus target that turns registry changes into store writes.

    Every change marks the state dirty. The first change in a quiet period
    schedules a single write after ``debounce`` seconds; changes inside that
    window ride along with it. A failed write leaves the state dirty for the
    periodic loop to retry.
    """

    def __init__(
        self,
        registry: GroupRegistry,
        store: JsonGroupStore,
        *,
        debounce: float = 2.0,
        interval: float = 300.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._store = store
        self._debounce = debounce
        self._interval = interval
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._pending: asyncio.Task[None] | None = None
        self.dirty = False
        self.writes = 0

    def accept_event(self, source: str, evt: object) -> bool:
        return source == "registry" and isinstance(evt, _REGISTRY_EVENTS)

    def push_event(self, source: str, evt: object) -> None:
        self.mark_dirty()

    def mark_dirty(self) -> None:
        self.dirty = True
        if self._pending is None or self._pending.done():
            self._pending = asyncio.create_task(self._debounced())

    async def _debounced(self) -> None:
        await self._sleep(self._debounce)
        await self.flush()

    async def flush(self) -> bool:
        """Write now if dirty. Returns True when a write happened."""
        async with self._lock:
            if not self.dirty:
                return False
            # Cleared before the write so changes made meanwhile mark it again
            self.dirty = False
            state = self._registry.snapshot()
            try:
                await self._store.save_all(state)
            except StorageFailure as exc:
                self.dirty = True
                logger.error("Persist: save failed, will retry: {}", exc)
                return False
            except BaseException:
                # Interrupted mid-write (cancelled at shutdown); nothing was persisted
                self.dirty = True
                raise
            self.writes += 1
            return True

    async def run_periodic(self) -> None:
        """Background save loop; runs until cancelled."""
        while True:
            await self._sleep(self._interval)
            await self.flush()

    async def wait_idle(self) -> None:
        """Wait for a scheduled debounced write to finish."""
        if self._pending is not None:
            await self._pending

    async def close(self) -> None:
        """Cancel the pending debounce and write whatever is outstanding."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            try:
                await self._pending
            except asyncio.CancelledError:
                pass
        await self.flush()

    def save_sync(self) -> None:
        """Last-resort blocking flush (unhandled exception at exit)."""
        try:
            self._store.save_sync(self._registry.snapshot())
            self.dirty = False
        except StorageFailure as exc:
            logger.error("Persist: emergency save failed: {}", exc)
