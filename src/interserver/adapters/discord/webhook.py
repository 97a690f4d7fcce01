"""Discord webhooks: find/create one per channel, send with error mapping."""

from __future__ import annotations

import asyncio
import io
from collections.abc import Iterable, Sequence

import aiohttp
import discord
from discord import AllowedMentions, TextChannel
from discord.webhook import Webhook
from loguru import logger

from interserver.core.constants import MAX_CONTENT_LEN, WEBHOOKS_PER_CHANNEL
from interserver.core.errors import DeliveryHandleGone, PermissionDenied, RelayError, TransientDeliveryFailure
from interserver.formatting.render import ensure_valid_username
from interserver.gateway.ports import FilePayload

WEBHOOK_NAME = "Interserver Relay"
_ALLOWED_MENTIONS = AllowedMentions.none()


async def find_or_create_webhook(channel: TextChannel, app_id: str = "") -> Webhook | None:
    """Reuse the relay's webhook in the channel or create one.

    Lookup order: by name, then (when the channel is at the webhook limit) any
    webhook owned by this application. Returns None when the channel is full.
    Platform errors propagate to the caller.
    """
    webhooks = await channel.webhooks()
    for wh in webhooks:
        if wh.name == WEBHOOK_NAME:
            logger.debug("Reusing webhook '{}' for channel {}", wh.name, channel.id)
            return wh
    if len(webhooks) >= WEBHOOKS_PER_CHANNEL:
        if app_id:
            for wh in webhooks:
                if str(getattr(wh, "application_id", None) or "") == app_id:
                    logger.info("Reusing app-owned webhook for channel {} (limit reached)", channel.id)
                    return wh
        logger.warning(
            "No webhook available for channel {}: Discord allows {} webhooks/channel.",
            channel.id,
            WEBHOOKS_PER_CHANNEL,
        )
        return None
    webhook = await channel.create_webhook(name=WEBHOOK_NAME, reason="Interserver relay")
    logger.info("Created webhook for channel {}", channel.id)
    return webhook


class WebhookSendable:
    """Sendable over a discord.py Webhook; maps HTTP failures onto relay errors."""

    def __init__(self, webhook: Webhook) -> None:
        self._webhook = webhook

    async def send(
        self,
        content: str,
        *,
        username: str,
        avatar_url: str | None = None,
        files: Sequence[FilePayload] = (),
    ) -> str:
        send_kw: dict = {
            "username": ensure_valid_username(username),
            "avatar_url": avatar_url,
            "allowed_mentions": _ALLOWED_MENTIONS,
            "wait": True,
        }
        if content:
            send_kw["content"] = content[:MAX_CONTENT_LEN]
        if files:
            send_kw["files"] = [discord.File(io.BytesIO(f.data), filename=f.filename) for f in files]
        try:
            msg = await self._webhook.send(**send_kw)
        except discord.NotFound as exc:
            raise DeliveryHandleGone("Webhook no longer exists", code="webhook_gone", original_error=exc) from exc
        except discord.Forbidden as exc:
            raise PermissionDenied("Webhook send forbidden", code="forbidden", original_error=exc) from exc
        except discord.HTTPException as exc:
            if exc.status == 429 or exc.status >= 500:
                raise TransientDeliveryFailure(
                    f"Webhook send failed ({exc.status})", code="http_error", original_error=exc
                ) from exc
            raise RelayError(f"Webhook send rejected ({exc.status})", code="rejected", original_error=exc) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientDeliveryFailure("Webhook send failed", code="network", original_error=exc) from exc
        return str(msg.id)


class DiscordDeliveryChannel:
    """DeliveryChannel over a discord.py TextChannel."""

    def __init__(self, channel: TextChannel, app_id: str = "") -> None:
        self._channel = channel
        self._app_id = app_id

    @property
    def channel_id(self) -> str:
        return str(self._channel.id)

    def missing_permissions(self, capabilities: Iterable[str]) -> list[str]:
        me = self._channel.guild.me
        if me is None:
            return list(capabilities)
        perms = self._channel.permissions_for(me)
        return [c for c in capabilities if not getattr(perms, c, False)]

    async def find_or_create_webhook(self) -> WebhookSendable | None:
        webhook = await find_or_create_webhook(self._channel, self._app_id)
        return WebhookSendable(webhook) if webhook else None
