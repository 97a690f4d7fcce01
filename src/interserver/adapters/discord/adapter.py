"""Discord adapter: gateway events in, platform operations out."""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
from collections.abc import Callable
from typing import TYPE_CHECKING

import aiohttp
import discord
from discord import AllowedMentions, Intents, Message, TextChannel
from discord.ext import commands
from loguru import logger

from interserver.adapters.base import AdapterBase
from interserver.adapters.discord.commands import RelayCommands
from interserver.adapters.discord.webhook import DiscordDeliveryChannel
from interserver.events import (
    Attachment,
    MessageCreated,
    ReactionChanged,
    guild_joined,
    guild_left,
    message_created,
    reaction_changed,
)
from interserver.gateway.ports import MessageSnapshot

if TYPE_CHECKING:
    from interserver.gateway.announcer import Announcer
    from interserver.gateway.bus import Bus
    from interserver.gateway.registry import GroupRegistry

_NOTICE_MENTIONS = AllowedMentions.none()


def message_to_event(message: Message) -> MessageCreated | None:
    """Translate a discord.py message into a MessageCreated, or None outside guilds."""
    if message.guild is None:
        return None
    author = message.author
    avatar = getattr(author, "display_avatar", None)
    attachments = [Attachment(url=a.url, filename=a.filename, size=a.size) for a in message.attachments]
    image_urls = [
        url for url in (getattr(getattr(e, "image", None), "url", None) for e in message.embeds) if url
    ]
    reply_to_id = None
    if message.reference and message.reference.message_id:
        reply_to_id = str(message.reference.message_id)
    _, evt = message_created(
        channel_id=str(message.channel.id),
        guild_id=str(message.guild.id),
        guild_name=message.guild.name,
        message_id=str(message.id),
        author_id=str(author.id),
        author_display=author.display_name or author.name,
        content=message.content or "",
        author_is_bot=bool(author.bot or message.webhook_id),
        avatar_url=str(avatar.url) if avatar else None,
        attachments=attachments,
        embed_image_urls=image_urls,
        has_stickers=bool(message.stickers),
        reply_to_id=reply_to_id,
        raw={"guild": message.guild},
    )
    return evt


def reaction_to_event(payload, bot_user_id: int | None, *, is_remove: bool) -> ReactionChanged | None:
    """Translate a raw reaction payload. Custom emoji are skipped (not portable across guilds)."""
    if not payload.emoji.is_unicode_emoji():
        return None
    _, evt = reaction_changed(
        channel_id=str(payload.channel_id),
        message_id=str(payload.message_id),
        emoji=str(payload.emoji),
        user_id=str(payload.user_id),
        is_remove=is_remove,
        is_self=bot_user_id is not None and payload.user_id == bot_user_id,
        guild_id=str(payload.guild_id or ""),
    )
    return evt


class DiscordAdapter(AdapterBase):
    """Discord adapter. Publishes platform events; implements ChannelSource and Platform."""

    def __init__(
        self,
        bus: Bus,
        registry: GroupRegistry,
        *,
        announcer: Announcer | None = None,
        command_prefix: str = "!",
        announce_startup: bool = False,
        token: str | None = None,
        on_stopped: Callable[[BaseException | None], None] | None = None,
    ) -> None:
        self._bus = bus
        self._registry = registry
        self.announcer = announcer
        self._prefix = command_prefix
        self._command = re.compile(rf"{re.escape(command_prefix)}relay(?:\s|$)")
        self._announce_startup = announce_startup
        self._token = token
        self._on_stopped = on_stopped
        self._bot: commands.Bot | None = None
        self._session: aiohttp.ClientSession | None = None
        self._bot_task: asyncio.Task | None = None
        self._announced = False
        self._stopping = False

    @property
    def name(self) -> str:
        return "discord"

    @property
    def bot(self) -> commands.Bot | None:
        return self._bot

    # -- ChannelSource -----------------------------------------------------

    async def _text_channel(self, channel_id: str) -> TextChannel | None:
        if not self._bot:
            return None
        channel = self._bot.get_channel(int(channel_id))
        if channel is None:
            try:
                channel = await self._bot.fetch_channel(int(channel_id))
            except (discord.NotFound, discord.Forbidden):
                return None
        return channel if isinstance(channel, TextChannel) else None

    async def fetch_channel(self, channel_id: str) -> DiscordDeliveryChannel | None:
        channel = await self._text_channel(channel_id)
        if channel is None:
            return None
        app_id = str(getattr(self._bot, "application_id", None) or "")
        return DiscordDeliveryChannel(channel, app_id)

    # -- Platform ----------------------------------------------------------

    async def _fetch(self, channel_id: str, message_id: str) -> Message | None:
        channel = await self._text_channel(channel_id)
        if channel is None:
            return None
        try:
            return await channel.fetch_message(int(message_id))
        except discord.NotFound:
            return None

    async def fetch_message(self, channel_id: str, message_id: str) -> MessageSnapshot | None:
        msg = await self._fetch(channel_id, message_id)
        if msg is None:
            return None
        return MessageSnapshot(
            message_id=str(msg.id),
            channel_id=str(channel_id),
            author_display=msg.author.display_name or msg.author.name,
            content=msg.content or "",
        )

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        msg = await self._fetch(channel_id, message_id)
        if msg is not None:
            await msg.delete()

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        msg = await self._fetch(channel_id, message_id)
        if msg is not None:
            await msg.add_reaction(emoji)

    async def remove_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        msg = await self._fetch(channel_id, message_id)
        if msg is not None and self._bot and self._bot.user:
            await msg.remove_reaction(emoji, self._bot.user)

    async def send_notice(self, channel_id: str, content: str) -> None:
        channel = await self._text_channel(channel_id)
        if channel is None:
            raise LookupError(f"Channel {channel_id} unavailable")
        await channel.send(content, allowed_mentions=_NOTICE_MENTIONS)

    async def download(self, url: str) -> bytes | None:
        if not self._session:
            return None
        async with self._session.get(url) as resp:
            if resp.status != 200:
                logger.warning("Attachment download failed ({}): {}", resp.status, url)
                return None
            return await resp.read()

    # -- gateway events ----------------------------------------------------

    async def _on_message(self, message: Message) -> None:
        if message.content and self._command.match(message.content):
            if self._bot:
                await self._bot.process_commands(message)
            return
        evt = message_to_event(message)
        if evt is None:
            return
        if evt.author_is_bot:
            return
        if self._registry.resolve_group_for_channel(evt.channel_id) is None:
            return
        self._bus.publish("discord", evt)

    def _on_reaction(self, payload, *, is_remove: bool) -> None:
        bot_user_id = self._bot.user.id if self._bot and self._bot.user else None
        evt = reaction_to_event(payload, bot_user_id, is_remove=is_remove)
        if evt is None:
            logger.debug("Skipping custom Discord emoji: {}", payload.emoji.name)
            return
        if self._registry.resolve_group_for_channel(evt.channel_id) is None:
            return
        self._bus.publish("discord", evt)

    async def _on_ready(self) -> None:
        if not self._bot:
            return
        logger.info("Discord bot ready: {} ({} guilds)", self._bot.user, len(self._bot.guilds))
        if self._announce_startup and self.announcer and not self._announced:
            # on_ready fires again after reconnects; announce once per process
            self._announced = True
            await self.announcer.announce_startup(self._registry)

    def _build_bot(self) -> commands.Bot:
        intents = Intents.default()
        intents.message_content = True
        intents.messages = True
        intents.guilds = True
        intents.members = True
        intents.reactions = True

        bot = commands.Bot(command_prefix=self._prefix, intents=intents, help_command=None)

        @bot.event
        async def on_ready() -> None:
            await self._on_ready()

        @bot.event
        async def on_message(message: Message) -> None:
            await self._on_message(message)

        @bot.event
        async def on_raw_reaction_add(payload) -> None:
            self._on_reaction(payload, is_remove=False)

        @bot.event
        async def on_raw_reaction_remove(payload) -> None:
            self._on_reaction(payload, is_remove=True)

        @bot.event
        async def on_guild_join(guild) -> None:
            logger.info("Joined guild {} ({})", guild.name, guild.id)
            _, evt = guild_joined(str(guild.id), guild.name)
            self._bus.publish("discord", evt)

        @bot.event
        async def on_guild_remove(guild) -> None:
            logger.info("Removed from guild {} ({})", guild.name, guild.id)
            _, evt = guild_left(str(guild.id))
            self._bus.publish("discord", evt)

        return bot

    async def start(self) -> None:
        """Start the bot in the background."""
        token = self._token or os.environ.get("RELAY_DISCORD_TOKEN")
        if not token:
            logger.warning("RELAY_DISCORD_TOKEN not set; Discord adapter disabled")
            return

        bot = self._build_bot()
        await bot.add_cog(RelayCommands(self._registry))
        self._bot = bot
        self._session = aiohttp.ClientSession()
        self._stopping = False
        self._bot_task = asyncio.create_task(bot.start(token))
        self._bot_task.add_done_callback(self._bot_finished)
        self._bus.register(self)

    def _bot_finished(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._stopping:
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Discord bot stopped: {}", exc)
        else:
            logger.warning("Discord bot exited")
        if self._on_stopped:
            self._on_stopped(exc)

    async def stop(self) -> None:
        self._stopping = True
        self._bus.unregister(self)
        if self._bot:
            await self._bot.close()
        if self._bot_task and not self._bot_task.done():
            self._bot_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._bot_task
        if self._session:
            await self._session.close()
        self._bot = None
        self._session = None
        self._bot_task = None
