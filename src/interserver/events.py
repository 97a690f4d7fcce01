"""Event types and dispatcher (typed events, central dispatcher)."""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class Attachment:
    """File attached to an inbound message."""

    url: str
    filename: str
    size: int


@dataclass
class MessageCreated:
    """Inbound message event, platform-agnostic."""

    channel_id: str
    guild_id: str
    guild_name: str
    message_id: str
    author_id: str
    author_display: str
    content: str
    author_is_bot: bool = False  # bots and webhooks, including our own relay output
    avatar_url: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    embed_image_urls: list[str] = field(default_factory=list)
    has_stickers: bool = False
    reply_to_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReactionChanged:
    """Reaction added to or removed from a message."""

    channel_id: str
    message_id: str
    emoji: str
    user_id: str
    is_remove: bool = False
    is_self: bool = False  # the bot's own reaction (mirrored earlier)
    guild_id: str = ""


@dataclass
class GuildJoined:
    """Bot was added to a guild."""

    guild_id: str
    guild_name: str


@dataclass
class GuildLeft:
    """Bot was removed from a guild (kicked, guild deleted or unavailable)."""

    guild_id: str


# Registry change events. Published after the in-memory mutation completes.


@dataclass
class GroupCreated:
    group_key: str
    owner_channel_id: str
    private: bool = False


@dataclass
class ChannelLinked:
    """Channel joined a group; member_ids are the other members to notify."""

    group_key: str
    channel_id: str
    guild_name: str
    channel_name: str
    member_ids: list[str] = field(default_factory=list)


@dataclass
class ChannelUnlinked:
    """Channel left a group; member_ids are the remaining members."""

    group_key: str
    channel_id: str
    guild_name: str
    channel_name: str
    member_ids: list[str] = field(default_factory=list)
    reason: str | None = None


@dataclass
class GroupDeleted:
    group_key: str


@dataclass
class BanChanged:
    group_key: str
    identity: str
    banned: bool


class EventTarget(Protocol):
    """Bus target interface: accept_event + push_event."""

    def accept_event(self, source: str, evt: object) -> bool:
        """Return True if this target wants the event."""
        ...

    def push_event(self, source: str, evt: object) -> None:
        """Handle the event (may be async via task)."""
        ...


def event(type_name: str):
    """Decorator to mark a factory as producing an event with a given type."""

    def decorator(f: Any) -> Any:
        @functools.wraps(f)
        def wrapper(*args: Any, **kwargs: Any) -> tuple[str, object]:
            evt = f(*args, **kwargs)
            return (type_name, evt)

        wrapper.TYPE = type_name  # type: ignore[attr-defined]
        return wrapper

    return decorator


@event("message_created")
def message_created(
    channel_id: str,
    guild_id: str,
    guild_name: str,
    message_id: str,
    author_id: str,
    author_display: str,
    content: str,
    *,
    author_is_bot: bool = False,
    avatar_url: str | None = None,
    attachments: list[Attachment] | None = None,
    embed_image_urls: list[str] | None = None,
    has_stickers: bool = False,
    reply_to_id: str | None = None,
    raw: dict[str, Any] | None = None,
) -> MessageCreated:
    return MessageCreated(
        channel_id=channel_id,
        guild_id=guild_id,
        guild_name=guild_name,
        message_id=message_id,
        author_id=author_id,
        author_display=author_display,
        content=content,
        author_is_bot=author_is_bot,
        avatar_url=avatar_url,
        attachments=list(attachments or []),
        embed_image_urls=list(embed_image_urls or []),
        has_stickers=has_stickers,
        reply_to_id=reply_to_id,
        raw=raw or {},
    )


@event("reaction_changed")
def reaction_changed(
    channel_id: str,
    message_id: str,
    emoji: str,
    user_id: str,
    *,
    is_remove: bool = False,
    is_self: bool = False,
    guild_id: str = "",
) -> ReactionChanged:
    return ReactionChanged(
        channel_id=channel_id,
        message_id=message_id,
        emoji=emoji,
        user_id=user_id,
        is_remove=is_remove,
        is_self=is_self,
        guild_id=guild_id,
    )


@event("guild_joined")
def guild_joined(guild_id: str, guild_name: str) -> GuildJoined:
    return GuildJoined(guild_id=guild_id, guild_name=guild_name)


@event("guild_left")
def guild_left(guild_id: str) -> GuildLeft:
    return GuildLeft(guild_id=guild_id)


class Dispatcher:
    """Central event dispatcher; targets filter by type and receive events."""

    def __init__(self) -> None:
        self._targets: list[EventTarget] = []

    def register(self, target: EventTarget) -> None:
        """Register an event target."""
        self._targets.append(target)

    def unregister(self, target: EventTarget) -> None:
        """Unregister an event target."""
        if target in self._targets:
            self._targets.remove(target)

    def dispatch(self, source: str, evt: object) -> None:
        """Dispatch event to all targets that accept it."""
        from loguru import logger

        for target in list(self._targets):
            try:
                if target.accept_event(source, evt):
                    target.push_event(source, evt)
            except Exception as exc:
                logger.exception("Failed to pass event to target {}: {}", target, exc)
