"""Relay dispatcher: inbound platform events -> deliveries, reactions, deletions.

``decide()`` is the pure transition function. It reads the registry and the
correspondence table but performs no I/O and mutates nothing; it returns the
actions the event calls for. ``RelayDispatcher`` is the imperative shell that
executes them against the platform ports.

Per message: Received -> Filtered -> {Dropped | ReplyRelay | BroadcastRelay}
-> Recorded -> Done.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cachetools import TTLCache
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from interserver.core.constants import (
    DEFAULT_CORRESPONDENCE_TTL,
    DEFAULT_MAX_ATTACHMENT_BYTES,
    BanScope,
    MentionMode,
    ReactionMirror,
)
from interserver.core.errors import DeliveryHandleGone, RelayError, TransientDeliveryFailure
from interserver.events import Attachment, GuildJoined, GuildLeft, MessageCreated, ReactionChanged
from interserver.formatting.normalize import escape_mentions, normalize
from interserver.formatting.render import render_quoted_reply, render_relay_username, truncate
from interserver.gateway.ports import FilePayload, Platform

if TYPE_CHECKING:
    from interserver.config import Config
    from interserver.gateway.correspondence import CorrespondenceTable
    from interserver.gateway.registry import GroupRegistry
    from interserver.gateway.resolver import DeliveryResolver


@dataclass(frozen=True)
class RelaySettings:
    ban_scope: BanScope = "user"
    reaction_mirror: ReactionMirror = "origin"
    mention_mode: MentionMode = "escape"
    max_mention_substitutions: int = 10
    max_attachment_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES

    @classmethod
    def from_config(cls, config: Config) -> RelaySettings:
        return cls(
            ban_scope=config.ban_scope,
            reaction_mirror=config.reaction_mirror,
            mention_mode=config.mention_mode,
            max_mention_substitutions=config.max_mention_substitutions,
            max_attachment_bytes=config.max_attachment_bytes,
        )


@dataclass
class RelayState:
    """Read-only view decide() works from."""

    registry: GroupRegistry
    table: CorrespondenceTable
    settings: RelaySettings = field(default_factory=RelaySettings)
    # (channel_id, message_id, emoji) -> users whose reactions the bot mirrors there
    reactors: TTLCache[tuple[str, str, str], frozenset[str]] = field(
        default_factory=lambda: TTLCache(maxsize=50_000, ttl=DEFAULT_CORRESPONDENCE_TTL)
    )


# -- actions -----------------------------------------------------------------


@dataclass(frozen=True)
class RelayPayload:
    """What every target of one relay receives. Content is already normalized."""

    content: str
    username: str
    avatar_url: str | None = None
    attachments: tuple[Attachment, ...] = ()
    image_urls: tuple[str, ...] = ()


@dataclass(frozen=True)
class Deliver:
    """Broadcast delivery to one target channel."""

    group_key: str
    target_channel_id: str
    payload: RelayPayload
    origin_id: str
    origin_channel_id: str


@dataclass(frozen=True)
class DeliverReply(Deliver):
    """Point-to-point delivery of a reply back to the channel the quoted message came from."""

    quoted_message_id: str = ""


@dataclass(frozen=True)
class DeleteMessage:
    channel_id: str
    message_id: str
    reason: str


@dataclass(frozen=True)
class MirrorReaction:
    channel_id: str
    message_id: str
    emoji: str
    remove: bool = False


@dataclass(frozen=True)
class TrackReactor:
    """Record that user_id now does (or no longer does) react with emoji behind a mirrored reaction."""

    channel_id: str
    message_id: str
    emoji: str
    user_id: str
    remove: bool = False


@dataclass(frozen=True)
class ForgetGuild:
    guild_id: str


@dataclass(frozen=True)
class Dropped:
    reason: str


Action = Deliver | DeleteMessage | MirrorReaction | TrackReactor | ForgetGuild | Dropped


# -- pure core ---------------------------------------------------------------


def _build_payload(evt: MessageCreated, settings: RelaySettings) -> RelayPayload:
    content = normalize(
        evt.content,
        evt.raw.get("guild"),
        resolve=settings.mention_mode == "resolve",
        max_substitutions=settings.max_mention_substitutions,
    )
    attachments = tuple(a for a in evt.attachments if a.size <= settings.max_attachment_bytes)
    return RelayPayload(
        content=content,
        username=render_relay_username(evt.author_display, evt.guild_name),
        avatar_url=evt.avatar_url,
        attachments=attachments,
        image_urls=tuple(evt.embed_image_urls),
    )


def _decide_message(evt: MessageCreated, state: RelayState) -> list[Action]:
    if evt.author_is_bot:
        return [Dropped("bot_author")]
    group = state.registry.group_for_channel(evt.channel_id)
    if group is None:
        return [Dropped("unlinked_channel")]
    identity = evt.guild_id if state.settings.ban_scope == "guild" else evt.author_id
    if group.is_banned(identity):
        return [Dropped("banned")]
    if evt.has_stickers:
        # Stickers cannot be re-sent through a webhook; refuse them outright
        return [DeleteMessage(evt.channel_id, evt.message_id, reason="sticker")]

    payload = _build_payload(evt, state.settings)
    if not (payload.content or payload.attachments or payload.image_urls):
        return [Dropped("empty")]

    corr = state.table.lookup(evt.reply_to_id)
    if corr is not None and corr.origin_channel_id != evt.channel_id and corr.origin_channel_id in group.members:
        return [
            DeliverReply(
                group_key=group.key,
                target_channel_id=corr.origin_channel_id,
                payload=payload,
                origin_id=evt.message_id,
                origin_channel_id=evt.channel_id,
                quoted_message_id=corr.origin_id,
            )
        ]

    targets = [c for c in group.member_ids if c != evt.channel_id]
    if not targets:
        return [Dropped("no_targets")]
    return [
        Deliver(
            group_key=group.key,
            target_channel_id=target,
            payload=payload,
            origin_id=evt.message_id,
            origin_channel_id=evt.channel_id,
        )
        for target in targets
    ]


def _mirror_targets(evt: ReactionChanged, state: RelayState, members: dict) -> list[tuple[str, str]]:
    """(channel_id, message_id) pairs that should carry a mirror of this reaction."""
    both = state.settings.reaction_mirror == "both"
    targets: list[tuple[str, str]] = []
    corr = state.table.lookup(evt.message_id)
    if corr is not None:
        if corr.origin_channel_id in members:
            targets.append((corr.origin_channel_id, corr.origin_id))
        if both:
            targets.extend(
                (c.delivered_channel_id, c.delivered_id)
                for c in state.table.copies_of(corr.origin_id)
                if c.delivered_id != evt.message_id and c.delivered_channel_id in members
            )
    elif both:
        targets.extend(
            (c.delivered_channel_id, c.delivered_id)
            for c in state.table.copies_of(evt.message_id)
            if c.delivered_channel_id in members
        )
    return targets


def _decide_reaction(evt: ReactionChanged, state: RelayState) -> list[Action]:
    if evt.is_self:
        return [Dropped("own_reaction")]
    group = state.registry.group_for_channel(evt.channel_id)
    if group is None:
        return [Dropped("unlinked_channel")]
    identity = evt.guild_id if state.settings.ban_scope == "guild" else evt.user_id
    # Removals still go through so a banned user cannot strand a mirrored reaction
    if not evt.is_remove and group.is_banned(identity):
        return [Dropped("banned")]

    targets = _mirror_targets(evt, state, group.members)
    if not targets:
        return [Dropped("not_relayed")]

    tracking: list[Action] = []
    mirrors: list[Action] = []
    for channel_id, message_id in targets:
        reactors = state.reactors.get((channel_id, message_id, evt.emoji), frozenset())
        tracking.append(TrackReactor(channel_id, message_id, evt.emoji, evt.user_id, evt.is_remove))
        # The bot holds one reaction per target; it comes off only when its last reactor leaves
        if evt.is_remove:
            if not reactors - {evt.user_id}:
                mirrors.append(MirrorReaction(channel_id, message_id, evt.emoji, True))
        elif not reactors:
            mirrors.append(MirrorReaction(channel_id, message_id, evt.emoji, False))
    return tracking + mirrors


def decide(evt: object, state: RelayState) -> list[Action]:
    """Actions an inbound event calls for, given the current state. No side effects."""
    if isinstance(evt, MessageCreated):
        return _decide_message(evt, state)
    if isinstance(evt, ReactionChanged):
        return _decide_reaction(evt, state)
    if isinstance(evt, GuildLeft):
        return [ForgetGuild(evt.guild_id)]
    if isinstance(evt, GuildJoined):
        return [Dropped("guild_joined")]
    return [Dropped("unsupported_event")]


# -- imperative shell --------------------------------------------------------


class RelayDispatcher:
    """Bus target that executes decide() results against the platform."""

    def __init__(
        self,
        registry: GroupRegistry,
        table: CorrespondenceTable,
        resolver: DeliveryResolver,
        platform: Platform,
        *,
        settings: RelaySettings | None = None,
        delivery_timeout: float = 15.0,
        delivery_retries: int = 1,
        retry_wait: float = 0.5,
    ) -> None:
        self._registry = registry
        self._table = table
        self._resolver = resolver
        self._platform = platform
        self._state = RelayState(
            registry,
            table,
            settings or RelaySettings(),
            reactors=TTLCache(maxsize=50_000, ttl=table.ttl),
        )
        self._timeout = delivery_timeout
        self._retries = delivery_retries
        self._retry_wait = retry_wait
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> RelayState:
        return self._state

    def update_settings(self, settings: RelaySettings) -> None:
        self._state.settings = settings

    def accept_event(self, source: str, evt: object) -> bool:
        return isinstance(evt, (MessageCreated, ReactionChanged, GuildJoined, GuildLeft))

    def push_event(self, source: str, evt: object) -> None:
        task = asyncio.create_task(self.handle(evt))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight event handlers (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def handle(self, evt: object) -> list[Action]:
        """Decide, then execute. Returns the actions taken."""
        actions = decide(evt, self._state)
        try:
            await self._execute(evt, actions)
        except Exception as exc:
            logger.exception("Dispatcher: failed to handle {}: {}", type(evt).__name__, exc)
        return actions

    async def _execute(self, evt: object, actions: Sequence[Action]) -> None:
        deliveries = [a for a in actions if isinstance(a, Deliver)]
        for action in actions:
            if isinstance(action, Dropped):
                logger.debug("Dispatcher: dropped {} ({})", type(evt).__name__, action.reason)
            elif isinstance(action, DeleteMessage):
                await self._delete(action)
            elif isinstance(action, TrackReactor):
                self._track_reactor(action)
            elif isinstance(action, MirrorReaction):
                await self._mirror_reaction(action)
            elif isinstance(action, ForgetGuild):
                self._registry.remove_guild(action.guild_id)
        if deliveries:
            await self._fan_out(deliveries)

    async def _fan_out(self, deliveries: Sequence[Deliver]) -> None:
        # All targets share one payload; download its attachments once
        files = await self._download_all(deliveries[0].payload.attachments)
        results = await asyncio.gather(*(self._deliver_safely(d, files) for d in deliveries))
        delivered = sum(1 for r in results if r)
        first = deliveries[0]
        logger.info(
            "Relay: message {} from channel {} delivered to {}/{} channels of {}",
            first.origin_id,
            first.origin_channel_id,
            delivered,
            len(deliveries),
            first.group_key,
        )

    async def _download_all(self, attachments: Sequence[Attachment]) -> list[FilePayload]:
        async def fetch(att: Attachment) -> FilePayload | None:
            try:
                data = await asyncio.wait_for(self._platform.download(att.url), timeout=self._timeout)
            except Exception as exc:
                logger.warning("Relay: could not download attachment {}: {}", att.filename, exc)
                return None
            if data is None:
                return None
            if len(data) > self._state.settings.max_attachment_bytes:
                logger.debug("Relay: attachment {} over size ceiling after download; dropped", att.filename)
                return None
            return FilePayload(filename=att.filename, data=data)

        fetched = await asyncio.gather(*(fetch(a) for a in attachments))
        return [f for f in fetched if f is not None]

    async def _deliver_safely(self, action: Deliver, files: Sequence[FilePayload]) -> bool:
        """One target; any failure here is logged and contained."""
        try:
            return await asyncio.wait_for(self._deliver(action, files), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Relay: delivery to channel {} timed out", action.target_channel_id)
        except RelayError as exc:
            logger.warning("Relay: delivery to channel {} failed: {}", action.target_channel_id, exc)
        except Exception as exc:
            logger.exception("Relay: unexpected error delivering to channel {}: {}", action.target_channel_id, exc)
        return False

    def _still_member(self, action: Deliver) -> bool:
        return self._registry.resolve_group_for_channel(action.target_channel_id) == action.group_key

    async def _deliver(self, action: Deliver, files: Sequence[FilePayload]) -> bool:
        payload = action.payload
        content = payload.content
        if isinstance(action, DeliverReply):
            content = await self._quote(action, content)

        delivered = False
        if content or files:
            message_id = await self._send(action, truncate(content), files)
            if message_id is None:
                return False
            self._table.record(message_id, action.origin_id, action.origin_channel_id, action.target_channel_id)
            delivered = True

        # Embedded images follow the primary send, one by one, in order
        for url in payload.image_urls:
            try:
                image_id = await self._send(action, url, ())
            except RelayError as exc:
                logger.warning("Relay: image follow-up to channel {} failed: {}", action.target_channel_id, exc)
                break
            if image_id is None:
                break
            self._table.record(image_id, action.origin_id, action.origin_channel_id, action.target_channel_id)
            delivered = True
        return delivered

    async def _quote(self, action: DeliverReply, content: str) -> str:
        try:
            # The quoted message lives in the channel the reply is headed to
            quoted = await self._platform.fetch_message(action.target_channel_id, action.quoted_message_id)
        except Exception as exc:
            logger.debug("Relay: could not fetch quoted message {}: {}", action.quoted_message_id, exc)
            quoted = None
        if quoted is None:
            return content
        return render_quoted_reply(escape_mentions(quoted.author_display), escape_mentions(quoted.content), content)

    async def _send(self, action: Deliver, content: str, files: Sequence[FilePayload]) -> str | None:
        """Send through the channel's handle; recreate the webhook once if it vanished."""
        channel_id = action.target_channel_id
        for _ in range(2):
            handle = await self._resolver.resolve(channel_id)
            if handle is None:
                return None
            if not self._still_member(action):
                logger.debug("Relay: channel {} left {} mid-delivery; skipping", channel_id, action.group_key)
                return None
            try:
                return await self._send_with_retry(handle, content, action.payload, files)
            except DeliveryHandleGone:
                logger.info("Relay: webhook for channel {} is gone; recreating", channel_id)
                self._resolver.invalidate(channel_id)
        return None

    async def _send_with_retry(self, handle, content: str, payload: RelayPayload, files: Sequence[FilePayload]) -> str:
        message_id = ""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retries + 1),
            wait=wait_exponential(multiplier=self._retry_wait, max=5),
            retry=retry_if_exception_type(TransientDeliveryFailure),
            reraise=True,
        ):
            with attempt:
                message_id = await handle.send(
                    content,
                    username=payload.username,
                    avatar_url=payload.avatar_url,
                    files=files,
                )
        return message_id

    def _track_reactor(self, action: TrackReactor) -> None:
        key = (action.channel_id, action.message_id, action.emoji)
        reactors = set(self._state.reactors.get(key, ()))
        if action.remove:
            reactors.discard(action.user_id)
        else:
            reactors.add(action.user_id)
        if reactors:
            self._state.reactors[key] = frozenset(reactors)
        else:
            self._state.reactors.pop(key, None)

    async def _delete(self, action: DeleteMessage) -> None:
        try:
            await self._platform.delete_message(action.channel_id, action.message_id)
            logger.info("Relay: deleted message {} in channel {} ({})", action.message_id, action.channel_id, action.reason)
        except Exception as exc:
            logger.warning("Relay: could not delete message {}: {}", action.message_id, exc)

    async def _mirror_reaction(self, action: MirrorReaction) -> None:
        try:
            if action.remove:
                await self._platform.remove_reaction(action.channel_id, action.message_id, action.emoji)
            else:
                await self._platform.add_reaction(action.channel_id, action.message_id, action.emoji)
        except Exception as exc:
            logger.debug(
                "Relay: could not {} reaction {} on {}: {}",
                "remove" if action.remove else "add",
                action.emoji,
                action.message_id,
                exc,
            )

    def sweep(self) -> int:
        """Housekeeping: drop expired correspondences and cache entries."""
        removed = self._table.expire()
        self._resolver.expire()
        self._state.reactors.expire()
        return removed

    async def run_sweeps(self, interval: float) -> None:
        """Background timer for sweep(); independent of in-flight dispatches."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as exc:
                logger.exception("Sweep failed: {}", exc)
