"""Relay presentation: webhook display names, quoted replies, length limits."""

from __future__ import annotations

import re

from interserver.core.constants import MAX_CONTENT_LEN, MAX_WEBHOOK_USERNAME_LEN, MIN_WEBHOOK_USERNAME_LEN, ZWSP

QUOTE_MAX_LEN = 200
# Discord rejects webhook usernames containing these
_FORBIDDEN_USERNAME = re.compile(r"(discord|clyde)", re.IGNORECASE)


def truncate(text: str, limit: int = MAX_CONTENT_LEN) -> str:
    """Cut text to limit, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def ensure_valid_username(name: str) -> str:
    """Fit a display name into Discord webhook username rules."""
    name = _FORBIDDEN_USERNAME.sub(lambda m: m.group(1)[0] + ZWSP + m.group(1)[1:], str(name).strip())
    name = name[:MAX_WEBHOOK_USERNAME_LEN]
    if len(name) < MIN_WEBHOOK_USERNAME_LEN:
        name = "relay"
    return name


def render_relay_username(author: str, guild_name: str) -> str:
    """Webhook display name: author plus the guild the message came from."""
    author = (author or "unknown").strip() or "unknown"
    if not guild_name:
        return ensure_valid_username(author)
    suffix = f" · {guild_name.strip()}"
    # Keep the author readable; trim the guild part first
    room = MAX_WEBHOOK_USERNAME_LEN - len(author)
    if room < 4:
        return ensure_valid_username(author)
    if len(suffix) > room:
        suffix = suffix[: room - 1] + "…"
    return ensure_valid_username(author + suffix)


def render_quoted_reply(origin_author: str | None, origin_text: str | None, new_text: str) -> str:
    """Quoted-reply body: ``> author: quoted\\nnew text``. Quote collapsed to one line."""
    quoted = " ".join((origin_text or "").split())
    quoted = truncate(quoted, QUOTE_MAX_LEN)
    author = origin_author or "unknown"
    header = f"> {author}: {quoted}" if quoted else f"> {author}"
    if not new_text:
        return header
    return f"{header}\n{new_text}"
