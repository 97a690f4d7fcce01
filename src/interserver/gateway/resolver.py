"""Delivery channel resolver: channel id -> cached webhook delivery handle."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from cachetools import TTLCache
from loguru import logger

from interserver.core.constants import DELIVERY_PERMISSIONS
from interserver.gateway.ports import ChannelSource, DeliveryChannel, FilePayload, Sendable


@dataclass
class DeliveryHandle:
    """Reusable send endpoint for one channel."""

    channel_id: str
    channel: DeliveryChannel
    endpoint: Sendable
    last_used: float

    async def send(
        self,
        content: str,
        *,
        username: str,
        avatar_url: str | None = None,
        files: Sequence[FilePayload] = (),
    ) -> str:
        return await self.endpoint.send(content, username=username, avatar_url=avatar_url, files=files)


class DeliveryResolver:
    """Best-effort cache of webhook handles. Not a source of truth.

    Positive entries slide on use; failures are remembered in a separate,
    much shorter cache so a broken channel is not hammered on every message.
    Permission denials are not cached: the check is local and permissions
    can be granted at any time.
    """

    def __init__(
        self,
        source: ChannelSource,
        *,
        ttl: float = 86_400,
        maxsize: int = 500,
        negative_ttl: float = 60,
        required: Sequence[str] = DELIVERY_PERMISSIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._required = tuple(required)
        self._clock = clock
        self._handles: TTLCache[str, DeliveryHandle] = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock)
        self._failures: TTLCache[str, str] = TTLCache(maxsize=maxsize, ttl=negative_ttl, timer=clock)
        self._pending: dict[str, asyncio.Future[DeliveryHandle | None]] = {}

    async def resolve(self, channel_id: str) -> DeliveryHandle | None:
        """Handle for the channel, or None when it cannot be delivered to right now."""
        channel_id = str(channel_id)
        handle = self._handles.get(channel_id)
        if handle is not None:
            missing = handle.channel.missing_permissions(self._required)
            if missing:
                logger.warning("Resolver: lost {} in channel {}; evicting handle", ", ".join(missing), channel_id)
                self._handles.pop(channel_id, None)
                return None
            handle.last_used = self._clock()
            self._handles[channel_id] = handle
            return handle

        reason = self._failures.get(channel_id)
        if reason is not None:
            logger.debug("Resolver: channel {} recently failed ({}); skipping", channel_id, reason)
            return None

        # Concurrent callers share one provisioning task per channel
        pending = self._pending.get(channel_id)
        if pending is None:
            pending = asyncio.ensure_future(self._provision(channel_id))
            self._pending[channel_id] = pending

            def _clear(fut: asyncio.Future[DeliveryHandle | None]) -> None:
                if self._pending.get(channel_id) is fut:
                    del self._pending[channel_id]

            pending.add_done_callback(_clear)
        return await asyncio.shield(pending)

    async def _provision(self, channel_id: str) -> DeliveryHandle | None:
        try:
            channel = await self._source.fetch_channel(channel_id)
        except Exception as exc:
            logger.warning("Resolver: could not fetch channel {}: {}", channel_id, exc)
            self._failures[channel_id] = "fetch_failed"
            return None
        if channel is None:
            logger.warning("Resolver: channel {} not found or not a text channel", channel_id)
            self._failures[channel_id] = "not_found"
            return None

        missing = channel.missing_permissions(self._required)
        if missing:
            logger.warning("Resolver: missing {} in channel {}; skipping", ", ".join(missing), channel_id)
            return None

        try:
            endpoint = await channel.find_or_create_webhook()
        except Exception as exc:
            logger.warning("Resolver: failed to get/create webhook for channel {}: {}", channel_id, exc)
            self._failures[channel_id] = "webhook_failed"
            return None
        if endpoint is None:
            logger.warning("Resolver: no webhook slot available in channel {}", channel_id)
            self._failures[channel_id] = "webhook_limit"
            return None

        handle = DeliveryHandle(channel_id=channel_id, channel=channel, endpoint=endpoint, last_used=self._clock())
        self._handles[channel_id] = handle
        logger.debug("Resolver: cached webhook handle for channel {}", channel_id)
        return handle

    def invalidate(self, channel_id: str) -> None:
        """Forget the cached handle (webhook deleted or misbehaving)."""
        self._handles.pop(str(channel_id), None)

    def expire(self) -> None:
        self._handles.expire()
        self._failures.expire()

    def __contains__(self, channel_id: object) -> bool:
        return str(channel_id) in self._handles
