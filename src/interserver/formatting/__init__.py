"""Message formatting for cross-guild relaying."""

from interserver.formatting.normalize import escape_mentions, normalize
from interserver.formatting.render import (
    ensure_valid_username,
    render_quoted_reply,
    render_relay_username,
    truncate,
)

__all__ = [
    "ensure_valid_username",
    "escape_mentions",
    "normalize",
    "render_quoted_reply",
    "render_relay_username",
    "truncate",
]
