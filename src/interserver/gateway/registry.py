"""Group registry: frequencies, their member channels and bans.

All mutations are synchronous map operations, so none spans a suspension
point. Every mutation publishes a change event on the bus; the persistence
scheduler and the announcer react to those.
"""

from __future__ import annotations

import hmac
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from interserver.core.constants import GROUP_KEY_BYTES
from interserver.core.errors import (
    AlreadyLinked,
    AuthRequired,
    Forbidden,
    GroupAlreadyOwned,
    InvalidGroup,
    NotLinked,
)
from interserver.events import BanChanged, ChannelLinked, ChannelUnlinked, GroupCreated, GroupDeleted

if TYPE_CHECKING:
    from interserver.gateway.bus import Bus

STATE_VERSION = 1


def _new_key() -> str:
    return secrets.token_hex(GROUP_KEY_BYTES)


def _new_secret() -> str:
    return secrets.token_urlsafe(12)


@dataclass(frozen=True)
class ChannelRef:
    """A channel as seen by the registry."""

    channel_id: str
    guild_id: str
    guild_name: str = ""
    channel_name: str = ""


@dataclass
class Membership:
    channel_id: str
    guild_id: str
    guild_name: str = ""
    channel_name: str = ""
    joined_at: float = 0.0

    def as_ref(self) -> ChannelRef:
        return ChannelRef(self.channel_id, self.guild_id, self.guild_name, self.channel_name)


@dataclass
class Group:
    """One frequency. Members keep link order; the first is the owner after handover."""

    key: str
    owner_channel_id: str
    owner_guild_id: str
    owner_guild_name: str = ""
    secret: str | None = None
    members: dict[str, Membership] = field(default_factory=dict)
    banned: set[str] = field(default_factory=set)
    created_at: float = 0.0

    @property
    def private(self) -> bool:
        return self.secret is not None

    @property
    def member_ids(self) -> list[str]:
        return list(self.members)

    def is_banned(self, *identities: str | None) -> bool:
        return any(i and i in self.banned for i in identities)


@dataclass(frozen=True)
class GroupSummary:
    key: str
    member_count: int
    owner_display_name: str


class GroupRegistry:
    """In-memory authority for groups, indexed by channel for the hot path."""

    def __init__(
        self,
        bus: Bus | None = None,
        *,
        single_group_per_guild: bool = False,
        clock: Callable[[], float] = time.time,
        key_factory: Callable[[], str] = _new_key,
        secret_factory: Callable[[], str] = _new_secret,
    ) -> None:
        self._bus = bus
        self._single_group_per_guild = single_group_per_guild
        self._clock = clock
        self._key_factory = key_factory
        self._secret_factory = secret_factory
        self._groups: dict[str, Group] = {}
        self._by_channel: dict[str, str] = {}

    def _publish(self, evt: object) -> None:
        if self._bus:
            self._bus.publish("registry", evt)

    def _require(self, group_key: str) -> Group:
        group = self._groups.get(group_key)
        if group is None:
            raise InvalidGroup(f"Unknown frequency {group_key}", code="invalid_group", details={"key": group_key})
        return group

    # -- queries ---------------------------------------------------------

    def resolve_group_for_channel(self, channel_id: str) -> str | None:
        """Group key the channel belongs to, or None."""
        return self._by_channel.get(str(channel_id))

    def get_group(self, group_key: str) -> Group | None:
        return self._groups.get(group_key)

    def group_for_channel(self, channel_id: str) -> Group | None:
        key = self._by_channel.get(str(channel_id))
        return self._groups.get(key) if key else None

    def group_owned_by_channel(self, channel_id: str) -> Group | None:
        group = self.group_for_channel(channel_id)
        if group and group.owner_channel_id == str(channel_id):
            return group
        return None

    def list_groups(self) -> list[GroupSummary]:
        """Summaries by member count, largest first; ties keep creation order."""
        summaries = [
            GroupSummary(key=g.key, member_count=len(g.members), owner_display_name=g.owner_guild_name)
            for g in self._groups.values()
        ]
        return sorted(summaries, key=lambda s: -s.member_count)

    def __len__(self) -> int:
        return len(self._groups)

    def __contains__(self, group_key: object) -> bool:
        return group_key in self._groups

    # -- mutations -------------------------------------------------------

    def create_group(self, owner: ChannelRef, *, private: bool = False) -> Group:
        """Create a frequency owned by the channel; the owner is its first member."""
        existing = self._by_channel.get(owner.channel_id)
        if existing:
            raise AlreadyLinked(
                f"Channel already linked to {existing}",
                code="already_linked",
                details={"key": existing},
            )
        if self._single_group_per_guild:
            for g in self._groups.values():
                if g.owner_guild_id == owner.guild_id:
                    raise GroupAlreadyOwned(
                        f"Guild already owns frequency {g.key}",
                        code="group_already_owned",
                        details={"key": g.key},
                    )

        key = self._key_factory()
        while key in self._groups:
            key = self._key_factory()
        now = self._clock()
        group = Group(
            key=key,
            owner_channel_id=owner.channel_id,
            owner_guild_id=owner.guild_id,
            owner_guild_name=owner.guild_name,
            secret=self._secret_factory() if private else None,
            created_at=now,
        )
        group.members[owner.channel_id] = Membership(
            owner.channel_id, owner.guild_id, owner.guild_name, owner.channel_name, now
        )
        self._groups[key] = group
        self._by_channel[owner.channel_id] = key
        logger.info("Registry: frequency {} created by channel {} (private={})", key, owner.channel_id, private)
        self._publish(GroupCreated(group_key=key, owner_channel_id=owner.channel_id, private=private))
        return group

    def link_channel(
        self,
        group_key: str,
        channel: ChannelRef,
        secret: str | None = None,
        *,
        actor_id: str | None = None,
    ) -> Group:
        """Add channel to the group. Raises on unknown key, ban, bad secret or existing link."""
        group = self._require(group_key)
        if group.is_banned(channel.channel_id, channel.guild_id, actor_id):
            raise Forbidden(f"Banned from frequency {group_key}", code="forbidden", details={"key": group_key})
        if group.private and not (secret and hmac.compare_digest(secret, group.secret or "")):
            raise AuthRequired(
                f"Frequency {group_key} is private", code="auth_required", details={"key": group_key}
            )
        current = self._by_channel.get(channel.channel_id)
        if current:
            raise AlreadyLinked(
                f"Channel already linked to {current}",
                code="already_linked",
                details={"key": current},
            )

        others = group.member_ids
        group.members[channel.channel_id] = Membership(
            channel.channel_id, channel.guild_id, channel.guild_name, channel.channel_name, self._clock()
        )
        self._by_channel[channel.channel_id] = group_key
        logger.info("Registry: channel {} linked to {}", channel.channel_id, group_key)
        self._publish(
            ChannelLinked(
                group_key=group_key,
                channel_id=channel.channel_id,
                guild_name=channel.guild_name,
                channel_name=channel.channel_name,
                member_ids=others,
            )
        )
        return group

    def unlink_channel(self, group_key: str, channel_id: str, *, reason: str | None = None) -> Group:
        """Remove channel from the group; deletes the group when it empties."""
        group = self._require(group_key)
        member = group.members.pop(str(channel_id), None)
        if member is None:
            raise NotLinked(
                f"Channel {channel_id} is not linked to {group_key}",
                code="not_linked",
                details={"key": group_key},
            )
        self._by_channel.pop(member.channel_id, None)
        if group.owner_channel_id == member.channel_id and group.members:
            heir = next(iter(group.members.values()))
            group.owner_channel_id = heir.channel_id
            group.owner_guild_id = heir.guild_id
            group.owner_guild_name = heir.guild_name
            logger.info("Registry: ownership of {} passed to channel {}", group_key, heir.channel_id)
        logger.info("Registry: channel {} unlinked from {}", member.channel_id, group_key)
        self._publish(
            ChannelUnlinked(
                group_key=group_key,
                channel_id=member.channel_id,
                guild_name=member.guild_name,
                channel_name=member.channel_name,
                member_ids=group.member_ids,
                reason=reason,
            )
        )
        if not group.members:
            del self._groups[group_key]
            logger.info("Registry: frequency {} deleted (no members left)", group_key)
            self._publish(GroupDeleted(group_key=group_key))
        return group

    def ban(self, group_key: str, identity: str) -> list[str]:
        """Ban a user, guild or channel id. Returns channels force-unlinked by the ban."""
        group = self._require(group_key)
        identity = str(identity)
        if identity in (group.owner_channel_id, group.owner_guild_id):
            raise Forbidden("The owner cannot be banned", code="ban_owner", details={"key": group_key})
        group.banned.add(identity)
        logger.info("Registry: {} banned from {}", identity, group_key)
        self._publish(BanChanged(group_key=group_key, identity=identity, banned=True))
        evicted = [m.channel_id for m in group.members.values() if identity in (m.channel_id, m.guild_id)]
        for channel_id in evicted:
            self.unlink_channel(group_key, channel_id, reason="banned")
        return evicted

    def unban(self, group_key: str, identity: str) -> bool:
        """Lift a ban. Returns False if the identity was not banned."""
        group = self._require(group_key)
        identity = str(identity)
        if identity not in group.banned:
            return False
        group.banned.discard(identity)
        logger.info("Registry: {} unbanned from {}", identity, group_key)
        self._publish(BanChanged(group_key=group_key, identity=identity, banned=False))
        return True

    def remove_guild(self, guild_id: str) -> int:
        """Drop every membership belonging to a guild the bot can no longer reach."""
        guild_id = str(guild_id)
        removed = 0
        for group in list(self._groups.values()):
            for member in [m for m in group.members.values() if m.guild_id == guild_id]:
                self.unlink_channel(group.key, member.channel_id, reason="guild_left")
                removed += 1
        if removed:
            logger.info("Registry: removed {} channels of departed guild {}", removed, guild_id)
        return removed

    # -- persistence -----------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Serializable copy of the registry state."""
        return {
            "version": STATE_VERSION,
            "groups": {
                g.key: {
                    "owner_channel_id": g.owner_channel_id,
                    "owner_guild_id": g.owner_guild_id,
                    "owner_guild_name": g.owner_guild_name,
                    "secret": g.secret,
                    "created_at": g.created_at,
                    "banned": sorted(g.banned),
                    "members": [
                        {
                            "channel_id": m.channel_id,
                            "guild_id": m.guild_id,
                            "guild_name": m.guild_name,
                            "channel_name": m.channel_name,
                            "joined_at": m.joined_at,
                        }
                        for m in g.members.values()
                    ],
                }
                for g in self._groups.values()
            },
        }

    def restore(self, state: dict[str, Any] | None) -> None:
        """Replace in-memory state from a snapshot. Accepts the legacy channels.json layout."""
        self._groups.clear()
        self._by_channel.clear()
        if not state:
            return
        raw_groups = state.get("groups") if "version" in state else _from_legacy(state)
        if not isinstance(raw_groups, dict):
            logger.warning("Registry: state has no groups mapping; starting empty")
            return
        skipped = 0
        for key, data in raw_groups.items():
            members = [m for m in data.get("members", []) if m.get("channel_id")]
            if not members:
                skipped += 1
                continue
            group = Group(
                key=str(key),
                owner_channel_id=str(data.get("owner_channel_id") or members[0]["channel_id"]),
                owner_guild_id=str(data.get("owner_guild_id") or members[0].get("guild_id", "")),
                owner_guild_name=str(data.get("owner_guild_name") or members[0].get("guild_name", "")),
                secret=data.get("secret"),
                banned={str(b) for b in data.get("banned", [])},
                created_at=float(data.get("created_at", 0.0)),
            )
            for m in members:
                channel_id = str(m["channel_id"])
                if channel_id in self._by_channel:
                    skipped += 1
                    continue
                group.members[channel_id] = Membership(
                    channel_id=channel_id,
                    guild_id=str(m.get("guild_id", "")),
                    guild_name=str(m.get("guild_name", "")),
                    channel_name=str(m.get("channel_name", "")),
                    joined_at=float(m.get("joined_at", 0.0)),
                )
                self._by_channel[channel_id] = group.key
            if not group.members:
                continue
            if group.owner_channel_id not in group.members:
                group.owner_channel_id = next(iter(group.members))
            self._groups[group.key] = group
        logger.info(
            "Registry: restored {} frequencies, {} channels{}",
            len(self._groups),
            len(self._by_channel),
            f", skipped {skipped}" if skipped else "",
        )


def _from_legacy(state: dict[str, Any]) -> dict[str, Any]:
    """``{key: {"frequency": key, "channels": [ids]}}`` -> current groups mapping."""
    groups: dict[str, Any] = {}
    for key, value in state.items():
        if not isinstance(value, dict):
            continue
        channels = value.get("channels")
        if not isinstance(channels, list):
            continue
        groups[str(key)] = {"members": [{"channel_id": str(c)} for c in channels]}
    return groups
