"""Platform limits and relay defaults."""

from __future__ import annotations

from typing import Literal

BanScope = Literal["user", "guild"]
ReactionMirror = Literal["origin", "both"]
MentionMode = Literal["escape", "resolve"]

# Zero-width space: breaks mention syntax without changing what readers see
ZWSP = "\u200b"

# Discord limits
MAX_CONTENT_LEN = 2000
MIN_WEBHOOK_USERNAME_LEN = 1
MAX_WEBHOOK_USERNAME_LEN = 80
WEBHOOKS_PER_CHANNEL = 10

DEFAULT_CORRESPONDENCE_TTL = 24 * 60 * 60
DEFAULT_MAX_ATTACHMENT_BYTES = 8 * 1024 * 1024
GROUP_KEY_BYTES = 4  # 8 hex chars

# Capabilities the resolver needs on a target channel
DELIVERY_PERMISSIONS: tuple[str, ...] = (
    "view_channel",
    "send_messages",
    "manage_webhooks",
    "embed_links",
    "attach_files",
)
