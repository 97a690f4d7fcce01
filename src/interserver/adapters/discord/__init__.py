"""Discord adapter package."""

from interserver.adapters.discord.adapter import DiscordAdapter, message_to_event, reaction_to_event
from interserver.adapters.discord.commands import RelayCommands
from interserver.adapters.discord.webhook import DiscordDeliveryChannel, WebhookSendable, find_or_create_webhook

__all__ = [
    "DiscordAdapter",
    "DiscordDeliveryChannel",
    "RelayCommands",
    "WebhookSendable",
    "find_or_create_webhook",
    "message_to_event",
    "reaction_to_event",
]
