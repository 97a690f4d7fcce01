"""Ports the relay core talks to. The Discord adapter implements them; tests use fakes."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class FilePayload:
    """Downloaded attachment, re-usable across every target of one relay."""

    filename: str
    data: bytes


@dataclass(frozen=True)
class MessageSnapshot:
    """The parts of a fetched message a quoted reply needs."""

    message_id: str
    channel_id: str
    author_display: str
    content: str


class Sendable(Protocol):
    """Impersonated send endpoint (a webhook)."""

    async def send(
        self,
        content: str,
        *,
        username: str,
        avatar_url: str | None = None,
        files: Sequence[FilePayload] = (),
    ) -> str:
        """Send and return the delivered message id.

        Raises DeliveryHandleGone, PermissionDenied or TransientDeliveryFailure.
        """
        ...


class DeliveryChannel(Protocol):
    """Live target channel: permission oracle plus webhook provisioning."""

    @property
    def channel_id(self) -> str: ...

    def missing_permissions(self, capabilities: Iterable[str]) -> list[str]:
        """Capabilities the bot lacks on this channel (empty when all held)."""
        ...

    async def find_or_create_webhook(self) -> Sendable | None:
        """Existing bot-owned webhook, or a new one. None when the channel is full."""
        ...


class ChannelSource(Protocol):
    async def fetch_channel(self, channel_id: str) -> DeliveryChannel | None:
        """Live channel by id, None when it is gone or not a text channel."""
        ...


class Platform(Protocol):
    """Direct (non-webhook) platform operations used by the dispatcher and announcer."""

    async def fetch_message(self, channel_id: str, message_id: str) -> MessageSnapshot | None: ...

    async def delete_message(self, channel_id: str, message_id: str) -> None: ...

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None: ...

    async def remove_reaction(self, channel_id: str, message_id: str, emoji: str) -> None: ...

    async def send_notice(self, channel_id: str, content: str) -> None: ...

    async def download(self, url: str) -> bytes | None: ...
