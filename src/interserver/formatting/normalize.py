"""Make message text safe to re-send into foreign guilds.

Broad mentions (``@everyone``/``@here``) and ID mentions (``<@id>``, ``<@!id>``,
``<@&id>``, ``<#id>``) are defused by inserting a zero-width space after the
sigil, so they render as plain text and never ping. In resolve mode the first
few ID mentions are replaced by the names they point at in the origin guild.

Both passes are idempotent: escaped text no longer matches either pattern.
"""

from __future__ import annotations

import re
from typing import Any

from interserver.core.constants import ZWSP

_BROAD_MENTION = re.compile(r"@(everyone|here)")
_ID_MENTION = re.compile(r"<(@[!&]?|#)(\d+)>")


def _escape_id(match: re.Match[str]) -> str:
    return f"<{match.group(1)}{ZWSP}{match.group(2)}>"


def escape_mentions(text: str) -> str:
    """Defuse every broad and ID mention in text."""
    text = _ID_MENTION.sub(_escape_id, text)
    return _BROAD_MENTION.sub(lambda m: f"@{ZWSP}{m.group(1)}", text)


def _lookup_name(guild: Any, sigil: str, object_id: int) -> str | None:
    """Resolve an ID mention through the guild cache. No network calls."""
    if sigil in ("@", "@!"):
        member = guild.get_member(object_id)
        return f"@{member.display_name}" if member else None
    if sigil == "@&":
        role = guild.get_role(object_id)
        return f"@{role.name}" if role else None
    channel = guild.get_channel(object_id)
    return f"#{channel.name}" if channel else None


def _resolve_ids(text: str, guild: Any, max_substitutions: int) -> str:
    count = 0

    def substitute(match: re.Match[str]) -> str:
        nonlocal count
        if count >= max_substitutions:
            return match.group(0)
        name = _lookup_name(guild, match.group(1), int(match.group(2)))
        if name is None:
            return match.group(0)
        count += 1
        return name

    return _ID_MENTION.sub(substitute, text)


def normalize(
    raw_text: str | None,
    guild: Any = None,
    *,
    resolve: bool = False,
    max_substitutions: int = 10,
) -> str:
    """Return broadcast-safe text. None or empty input gives ""."""
    if not raw_text:
        return ""
    text = raw_text
    if resolve and guild is not None:
        text = _resolve_ids(text, guild, max_substitutions)
    # Substituted names are escaped too: a member may be called "everyone"
    return escape_mentions(text)
