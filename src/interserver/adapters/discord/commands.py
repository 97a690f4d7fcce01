"""``!relay`` command group: frequency management from inside a channel."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import discord
from discord.ext import commands
from loguru import logger

from interserver.core.errors import RelayError
from interserver.gateway.registry import ChannelRef

if TYPE_CHECKING:
    from interserver.gateway.registry import GroupRegistry

USAGE = (
    "Usage: `relay generate [private]` · `relay link <key> [secret]` · `relay unlink` · "
    "`relay info` · `relay list` · `relay ban <id>` · `relay unban <id>`"
)
LIST_LIMIT = 20
_SNOWFLAKE = re.compile(r"\d{15,21}")


def _channel_ref(ctx: commands.Context) -> ChannelRef:
    return ChannelRef(
        channel_id=str(ctx.channel.id),
        guild_id=str(ctx.guild.id),
        guild_name=ctx.guild.name,
        channel_name=getattr(ctx.channel, "name", "") or "",
    )


def parse_identity(text: str) -> str | None:
    """User, guild or channel id from a raw id or a mention."""
    match = _SNOWFLAKE.search(text or "")
    return match.group(0) if match else None


class RelayCommands(commands.Cog):
    """Frequency commands. Mutations need Manage Channels; bans need the owner channel."""

    def __init__(self, registry: GroupRegistry) -> None:
        self.registry = registry

    async def _dm(self, ctx: commands.Context, text: str) -> bool:
        try:
            await ctx.author.send(text)
            return True
        except discord.HTTPException as exc:
            logger.debug("Could not DM {}: {}", ctx.author.id, exc)
            return False

    @commands.guild_only()
    @commands.group(name="relay", invoke_without_command=True)
    async def relay(self, ctx: commands.Context) -> None:
        await ctx.reply(USAGE)

    @relay.command(name="generate")
    @commands.has_permissions(manage_channels=True)
    async def generate(self, ctx: commands.Context, mode: str = "") -> None:
        private = mode.lower() == "private"
        group = self.registry.create_group(_channel_ref(ctx), private=private)
        await ctx.reply(f"📡 Frequency generated: **{group.key}**")
        if group.secret:
            sent = await self._dm(
                ctx,
                f"🔒 Secret for private frequency **{group.key}**: `{group.secret}`\n"
                f"Other channels join with `relay link {group.key} <secret>`.",
            )
            if not sent:
                await ctx.reply("⚠️ Could not DM you the secret. Enable DMs and run `relay info` here.")

    @relay.command(name="link")
    @commands.has_permissions(manage_channels=True)
    async def link(self, ctx: commands.Context, key: str, secret: str | None = None) -> None:
        if secret:
            # Keep the secret out of the channel history
            try:
                await ctx.message.delete()
            except discord.HTTPException as exc:
                logger.debug("Could not delete link message {}: {}", ctx.message.id, exc)
        self.registry.link_channel(key, _channel_ref(ctx), secret, actor_id=str(ctx.author.id))
        await ctx.send(f"🔗 Channel linked to frequency **{key}**. Messages will now be relayed.")

    @relay.command(name="unlink")
    @commands.has_permissions(manage_channels=True)
    async def unlink(self, ctx: commands.Context) -> None:
        group = self.registry.group_for_channel(str(ctx.channel.id))
        if group is None:
            await ctx.reply("⚠️ This channel is not linked to any frequency.")
            return
        self.registry.unlink_channel(group.key, str(ctx.channel.id))
        await ctx.reply(f"🔌 Channel unlinked from frequency **{group.key}**")

    @relay.command(name="info")
    async def info(self, ctx: commands.Context) -> None:
        group = self.registry.group_for_channel(str(ctx.channel.id))
        if group is None:
            await ctx.reply("⚠️ This channel is not linked to any frequency.")
            return
        is_owner = group.owner_channel_id == str(ctx.channel.id)
        lines = [
            f"📡 Frequency **{group.key}** · {len(group.members)} channel(s)"
            + (" · private" if group.private else ""),
            "This channel owns the frequency." if is_owner else f"Owned by {group.owner_guild_name or 'another server'}.",
        ]
        if is_owner and group.banned:
            lines.append(f"Banned: {len(group.banned)}")
        await ctx.reply("\n".join(lines))
        if is_owner and group.secret:
            await self._dm(ctx, f"🔒 Secret for **{group.key}**: `{group.secret}`")

    @relay.command(name="list")
    async def list_(self, ctx: commands.Context) -> None:
        summaries = self.registry.list_groups()
        if not summaries:
            await ctx.reply("No frequencies yet.")
            return
        lines = [
            f"`{s.key}` · {s.member_count} channel(s) · {s.owner_display_name or 'unknown'}"
            for s in summaries[:LIST_LIMIT]
        ]
        if len(summaries) > LIST_LIMIT:
            lines.append(f"… and {len(summaries) - LIST_LIMIT} more")
        await ctx.reply("\n".join(lines))

    async def _owned_group_key(self, ctx: commands.Context) -> str | None:
        group = self.registry.group_owned_by_channel(str(ctx.channel.id))
        if group is None:
            await ctx.reply("⛔ Only the channel that owns the frequency can manage bans.")
            return None
        return group.key

    @relay.command(name="ban")
    @commands.has_permissions(manage_channels=True)
    async def ban(self, ctx: commands.Context, target: str) -> None:
        identity = parse_identity(target)
        if identity is None:
            await ctx.reply("❌ Give a user, server or channel id.")
            return
        key = await self._owned_group_key(ctx)
        if key is None:
            return
        evicted = self.registry.ban(key, identity)
        suffix = f" ({len(evicted)} channel(s) removed)" if evicted else ""
        await ctx.reply(f"⛔ `{identity}` banned from **{key}**{suffix}")

    @relay.command(name="unban")
    @commands.has_permissions(manage_channels=True)
    async def unban(self, ctx: commands.Context, target: str) -> None:
        identity = parse_identity(target)
        if identity is None:
            await ctx.reply("❌ Give a user, server or channel id.")
            return
        key = await self._owned_group_key(ctx)
        if key is None:
            return
        if self.registry.unban(key, identity):
            await ctx.reply(f"✅ `{identity}` unbanned from **{key}**")
        else:
            await ctx.reply(f"⚠️ `{identity}` was not banned from **{key}**")

    async def cog_command_error(self, ctx: commands.Context, error: commands.CommandError) -> None:
        original = getattr(error, "original", error)
        if isinstance(original, RelayError):
            await ctx.send(f"❌ {original}")
        elif isinstance(error, commands.MissingPermissions):
            await ctx.send("❌ You need the Manage Channels permission for this.")
        elif isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
            await ctx.send(USAGE)
        elif isinstance(error, commands.CheckFailure):
            return
        else:
            logger.exception("Relay command {} failed: {}", ctx.command, original)
            await ctx.send("❌ Something went wrong running that command.")
