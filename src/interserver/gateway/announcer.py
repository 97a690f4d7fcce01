"""Join/leave notices to the members of a frequency."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from loguru import logger

from interserver.events import ChannelLinked, ChannelUnlinked
from interserver.formatting.normalize import escape_mentions

if TYPE_CHECKING:
    from interserver.gateway.ports import Platform
    from interserver.gateway.registry import GroupRegistry

STARTUP_NOTICE = "📡 Relay online. Messages on this frequency are being relayed again."


def _where(guild_name: str, channel_name: str) -> str:
    place = f"{guild_name} (#{channel_name})" if channel_name else guild_name or "a channel"
    return escape_mentions(place)


def join_notice(evt: ChannelLinked) -> str:
    return f"📢 New channel connected to frequency **{evt.group_key}**: {_where(evt.guild_name, evt.channel_name)}"


def leave_notice(evt: ChannelUnlinked) -> str:
    suffix = " (banned)" if evt.reason == "banned" else ""
    return f"📢 {_where(evt.guild_name, evt.channel_name)} left frequency **{evt.group_key}**{suffix}"


class Announcer:
    """Bus target: tells the other members when a channel joins or leaves.

    Best effort. Notices go out in background tasks so a slow or broken
    channel never holds up the command that changed the registry.
    """

    def __init__(self, platform: Platform) -> None:
        self._platform = platform
        self._tasks: set[asyncio.Task[Any]] = set()

    def accept_event(self, source: str, evt: object) -> bool:
        return isinstance(evt, (ChannelLinked, ChannelUnlinked))

    def push_event(self, source: str, evt: object) -> None:
        if isinstance(evt, ChannelLinked):
            text = join_notice(evt)
        elif isinstance(evt, ChannelUnlinked):
            text = leave_notice(evt)
        else:
            return
        targets = [c for c in evt.member_ids if c != evt.channel_id]
        if not targets:
            return
        task = asyncio.create_task(self.broadcast(targets, text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def broadcast(self, channel_ids: Iterable[str], text: str) -> int:
        """Send text to each channel; returns how many succeeded."""
        results = await asyncio.gather(*(self._send(c, text) for c in channel_ids))
        return sum(results)

    async def _send(self, channel_id: str, text: str) -> bool:
        try:
            await self._platform.send_notice(channel_id, text)
            return True
        except Exception as exc:
            logger.debug("Announcer: notice to channel {} failed: {}", channel_id, exc)
            return False

    async def announce_startup(self, registry: GroupRegistry) -> int:
        """One notice per frequency, to its owner channel."""
        owners = [g.owner_channel_id for g in (registry.get_group(s.key) for s in registry.list_groups()) if g]
        sent = await self.broadcast(owners, STARTUP_NOTICE)
        logger.info("Announcer: startup notice sent to {}/{} frequencies", sent, len(owners))
        return sent

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
