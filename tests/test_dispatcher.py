"""Tests for the relay dispatcher: pure decisions and the delivery shell."""

from __future__ import annotations

import asyncio

import pytest

from interserver.core.constants import ZWSP
from interserver.core.errors import DeliveryHandleGone, PermissionDenied, TransientDeliveryFailure
from interserver.events import Attachment, guild_left, message_created, reaction_changed
from interserver.gateway.correspondence import CorrespondenceTable
from interserver.gateway.dispatcher import (
    DeleteMessage,
    Deliver,
    DeliverReply,
    Dropped,
    ForgetGuild,
    MirrorReaction,
    RelayDispatcher,
    RelaySettings,
    RelayState,
    TrackReactor,
    decide,
)
from interserver.gateway.registry import ChannelRef, GroupRegistry
from interserver.gateway.resolver import DeliveryResolver
from tests.fakes import FakeChannelSource, FakeClock, FakePlatform

A = ChannelRef("100", "g1", "Guild One", "general")
B = ChannelRef("200", "g2", "Guild Two", "lobby")
C = ChannelRef("300", "g3", "Guild Three", "chat")
GUILDS = {"100": ("g1", "Guild One"), "200": ("g2", "Guild Two"), "300": ("g3", "Guild Three")}


def _msg(channel: str = "100", content: str = "hello", *, message_id: str = "m1", author: str = "u1", **kwargs):
    guild_id, guild_name = GUILDS.get(channel, ("g9", "Elsewhere"))
    _, evt = message_created(channel, guild_id, guild_name, message_id, author, "Alice", content, **kwargs)
    return evt


def _registry(*members: ChannelRef) -> GroupRegistry:
    keys = iter(["a1b2c3d4", "e5f6a7b8"])
    registry = GroupRegistry(key_factory=lambda: next(keys))
    owner, *rest = members or (A, B)
    registry.create_group(owner)
    for ref in rest:
        registry.link_channel("a1b2c3d4", ref)
    return registry


class Relay:
    """Dispatcher wired to in-memory fakes."""

    def __init__(
        self,
        *members: ChannelRef,
        source: FakeChannelSource | None = None,
        platform: FakePlatform | None = None,
        **settings,
    ):
        self.clock = FakeClock()
        self.registry = _registry(*members)
        self.table = CorrespondenceTable(ttl=86400, clock=self.clock)
        self.source = source or FakeChannelSource("100", "200", "300")
        self.resolver = DeliveryResolver(self.source, clock=self.clock)
        self.platform = platform or FakePlatform()
        timeout = settings.pop("delivery_timeout", 15.0)
        self.dispatcher = RelayDispatcher(
            self.registry,
            self.table,
            self.resolver,
            self.platform,
            settings=RelaySettings(**settings),
            delivery_timeout=timeout,
            delivery_retries=1,
            retry_wait=0,
        )

    def sent(self, channel_id: str) -> list[dict]:
        return self.source.sent(channel_id)


# ---------------------------------------------------------------------------
# decide()
# ---------------------------------------------------------------------------


class TestDecide:
    def _state(self, *members: ChannelRef, **settings) -> RelayState:
        return RelayState(_registry(*members), CorrespondenceTable(ttl=60, clock=FakeClock()), RelaySettings(**settings))

    def test_broadcast_to_every_other_member(self):
        state = self._state(A, B, C)

        actions = decide(_msg("100"), state)

        assert [type(a) for a in actions] == [Deliver, Deliver]
        assert [a.target_channel_id for a in actions] == ["200", "300"]
        assert actions[0].payload.username == "Alice · Guild One"
        assert actions[0].origin_id == "m1"

    def test_bot_author_dropped(self):
        assert decide(_msg(author_is_bot=True), self._state()) == [Dropped("bot_author")]

    def test_unlinked_channel_dropped(self):
        assert decide(_msg("999"), self._state()) == [Dropped("unlinked_channel")]

    def test_banned_user_dropped(self):
        state = self._state()
        state.registry.ban("a1b2c3d4", "u-troll")
        assert decide(_msg("100", author="u-troll"), state) == [Dropped("banned")]

    def test_guild_scope_bans_by_guild(self):
        state = self._state(A, B, C, ban_scope="guild")
        state.registry.get_group("a1b2c3d4").banned.add("g3")
        assert decide(_msg("300"), state) == [Dropped("banned")]

    def test_user_scope_ignores_guild_bans(self):
        state = self._state(A, B, C)
        state.registry.get_group("a1b2c3d4").banned.add("g3")
        assert decide(_msg("300"), state) != [Dropped("banned")]

    def test_stickers_deleted_not_relayed(self):
        actions = decide(_msg("100", has_stickers=True), self._state())
        assert actions == [DeleteMessage("100", "m1", reason="sticker")]

    def test_empty_message_dropped(self):
        assert decide(_msg("100", ""), self._state()) == [Dropped("empty")]

    def test_single_member_group_has_no_targets(self):
        assert decide(_msg("100"), self._state(A)) == [Dropped("no_targets")]

    def test_reply_to_copy_goes_to_origin_only(self):
        state = self._state(A, B, C)
        state.table.record("copy-in-b", "m1", "100", "200")

        actions = decide(_msg("200", "pong", message_id="m2", reply_to_id="copy-in-b"), state)

        assert len(actions) == 1
        assert isinstance(actions[0], DeliverReply)
        assert actions[0].target_channel_id == "100"
        assert actions[0].quoted_message_id == "m1"

    def test_reply_falls_back_to_broadcast_when_origin_left(self):
        state = self._state(A, B, C)
        state.table.record("copy-in-b", "m1", "100", "200")
        state.registry.unlink_channel("a1b2c3d4", "100")

        actions = decide(_msg("200", "pong", message_id="m2", reply_to_id="copy-in-b"), state)

        assert [a.target_channel_id for a in actions] == ["300"]
        assert not any(isinstance(a, DeliverReply) for a in actions)

    def test_reply_to_unknown_message_broadcasts(self):
        actions = decide(_msg("200", "pong", reply_to_id="never-relayed"), self._state(A, B, C))
        assert [a.target_channel_id for a in actions] == ["100", "300"]

    def test_oversize_attachments_filtered_from_payload(self):
        state = self._state(max_attachment_bytes=10)
        attachments = [Attachment("u/a", "a.png", 10), Attachment("u/b", "b.png", 11)]

        (action,) = decide(_msg("100", "", attachments=attachments), state)

        assert [a.filename for a in action.payload.attachments] == ["a.png"]

    def test_content_is_normalized(self):
        (action,) = decide(_msg("100", "@everyone look"), self._state())
        assert action.payload.content == f"@{ZWSP}everyone look"

    def test_reaction_on_copy_mirrors_to_origin(self):
        state = self._state(A, B)
        state.table.record("copy-in-b", "m1", "100", "200")
        _, evt = reaction_changed("200", "copy-in-b", "👍", "u2")

        assert decide(evt, state) == [
            TrackReactor("100", "m1", "👍", "u2"),
            MirrorReaction("100", "m1", "👍", False),
        ]

    def test_own_reaction_ignored(self):
        _, evt = reaction_changed("200", "copy-in-b", "👍", "bot", is_self=True)
        assert decide(evt, self._state()) == [Dropped("own_reaction")]

    def test_reaction_on_origin_ignored_by_default(self):
        state = self._state(A, B)
        state.table.record("copy-in-b", "m1", "100", "200")
        _, evt = reaction_changed("100", "m1", "👍", "u2")
        assert decide(evt, state) == [Dropped("not_relayed")]

    def test_reaction_on_origin_fans_out_when_mirroring_both_ways(self):
        state = self._state(A, B, C, reaction_mirror="both")
        state.table.record("copy-in-b", "m1", "100", "200")
        state.table.record("copy-in-c", "m1", "100", "300")
        _, evt = reaction_changed("100", "m1", "🔥", "u2", is_remove=True)

        actions = [a for a in decide(evt, state) if isinstance(a, MirrorReaction)]

        assert sorted(actions, key=lambda a: a.channel_id) == [
            MirrorReaction("200", "copy-in-b", "🔥", True),
            MirrorReaction("300", "copy-in-c", "🔥", True),
        ]

    def test_banned_user_reaction_dropped(self):
        state = self._state(A, B)
        state.registry.ban("a1b2c3d4", "u-troll")
        state.table.record("copy-in-b", "m1", "100", "200")
        _, evt = reaction_changed("200", "copy-in-b", "👍", "u-troll", guild_id="g2")

        assert decide(evt, state) == [Dropped("banned")]

    def test_guild_scope_bans_reactions_by_guild(self):
        state = self._state(A, B, ban_scope="guild")
        state.registry.ban("a1b2c3d4", "g9")
        state.table.record("copy-in-b", "m1", "100", "200")
        _, evt = reaction_changed("200", "copy-in-b", "👍", "u2", guild_id="g9")

        assert decide(evt, state) == [Dropped("banned")]

    def test_banned_user_can_still_take_a_reaction_back(self):
        state = self._state(A, B)
        state.registry.ban("a1b2c3d4", "u-troll")
        state.table.record("copy-in-b", "m1", "100", "200")
        _, evt = reaction_changed("200", "copy-in-b", "👍", "u-troll", is_remove=True)

        assert MirrorReaction("100", "m1", "👍", True) in decide(evt, state)

    def test_second_reactor_does_not_add_again(self):
        state = self._state(A, B, C)
        state.table.record("copy-in-b", "m1", "100", "200")
        state.reactors[("100", "m1", "👍")] = frozenset({"u2"})
        _, evt = reaction_changed("200", "copy-in-b", "👍", "u3")

        assert decide(evt, state) == [TrackReactor("100", "m1", "👍", "u3")]

    def test_guild_left_forgets_guild(self):
        _, evt = guild_left("g2")
        assert decide(evt, self._state()) == [ForgetGuild("g2")]

    def test_decide_does_not_mutate(self):
        state = self._state(A, B)
        before = state.registry.snapshot()
        decide(_msg("100"), state)
        assert state.registry.snapshot() == before
        assert len(state.table) == 0


# ---------------------------------------------------------------------------
# RelayDispatcher
# ---------------------------------------------------------------------------


class TestRelayScenarios:
    @pytest.mark.asyncio
    async def test_hello_is_relayed_with_author_and_guild(self):
        # Arrange
        relay = Relay(A, B)

        # Act
        await relay.dispatcher.handle(_msg("100", "hello", avatar_url="https://cdn/a.png"))

        # Assert
        (sent,) = relay.sent("200")
        assert sent["content"] == "hello"
        assert sent["username"] == "Alice · Guild One"
        assert sent["avatar_url"] == "https://cdn/a.png"
        assert relay.sent("100") == []
        entry = relay.table.lookup(sent["id"])
        assert entry.origin_id == "m1"
        assert entry.origin_channel_id == "100"

    @pytest.mark.asyncio
    async def test_no_delivery_outside_the_group(self):
        relay = Relay(A, B)
        await relay.dispatcher.handle(_msg("100"))
        assert relay.sent("300") == []

    @pytest.mark.asyncio
    async def test_reply_returns_only_to_origin(self):
        # Arrange
        relay = Relay(A, B, C)
        relay.platform.store("100", "m1", "Alice", "hello")
        await relay.dispatcher.handle(_msg("100", "hello"))
        copy_in_b = relay.sent("200")[0]["id"]

        # Act
        await relay.dispatcher.handle(_msg("200", "hi Alice", message_id="m2", author="u2", reply_to_id=copy_in_b))

        # Assert
        assert len(relay.sent("100")) == 1
        assert relay.sent("100")[0]["content"] == "> Alice: hello\nhi Alice"
        assert relay.sent("100")[0]["username"] == "Alice · Guild Two"
        assert len(relay.sent("300")) == 1  # only the original broadcast
        assert relay.table.lookup(relay.sent("100")[0]["id"]).origin_id == "m2"

    @pytest.mark.asyncio
    async def test_reply_without_fetchable_quote_sends_plain_text(self):
        relay = Relay(A, B)
        await relay.dispatcher.handle(_msg("100", "hello"))
        copy_in_b = relay.sent("200")[0]["id"]

        await relay.dispatcher.handle(_msg("200", "pong", message_id="m2", reply_to_id=copy_in_b))

        assert relay.sent("100")[0]["content"] == "pong"

    @pytest.mark.asyncio
    async def test_banned_identity_gets_zero_deliveries(self):
        relay = Relay(A, B, C)
        relay.registry.ban("a1b2c3d4", "u-troll")

        await relay.dispatcher.handle(_msg("100", "spam", author="u-troll"))

        assert relay.sent("200") == []
        assert relay.sent("300") == []

    @pytest.mark.asyncio
    async def test_everyone_is_relayed_inert(self):
        relay = Relay(A, B)
        await relay.dispatcher.handle(_msg("100", "@everyone hi"))
        assert relay.sent("200")[0]["content"] == f"@{ZWSP}everyone hi"

    @pytest.mark.asyncio
    async def test_attachment_at_ceiling_forwarded_one_byte_over_dropped(self):
        # Arrange
        relay = Relay(A, B, max_attachment_bytes=10)
        relay.platform.files = {"u/a": b"a" * 10, "u/b": b"b" * 11}
        attachments = [Attachment("u/a", "a.png", 10), Attachment("u/b", "b.png", 11)]

        # Act
        await relay.dispatcher.handle(_msg("100", "files", attachments=attachments))

        # Assert
        (sent,) = relay.sent("200")
        assert sent["content"] == "files"
        assert [f.filename for f in sent["files"]] == ["a.png"]
        assert relay.platform.downloads == 1

    @pytest.mark.asyncio
    async def test_attachments_downloaded_once_for_all_targets(self):
        relay = Relay(A, B, C)
        relay.platform.files = {"u/a": b"a" * 4}

        await relay.dispatcher.handle(_msg("100", "", attachments=[Attachment("u/a", "a.png", 4)]))

        assert relay.platform.downloads == 1
        assert relay.sent("200")[0]["files"][0].data == b"aaaa"
        assert relay.sent("300")[0]["files"][0].data == b"aaaa"

    @pytest.mark.asyncio
    async def test_embed_images_follow_primary_send(self):
        relay = Relay(A, B)

        await relay.dispatcher.handle(_msg("100", "look", embed_image_urls=["https://img/1.png"]))

        sent = relay.sent("200")
        assert [s["content"] for s in sent] == ["look", "https://img/1.png"]
        assert all(relay.table.lookup(s["id"]).origin_id == "m1" for s in sent)

    @pytest.mark.asyncio
    async def test_one_failing_target_does_not_block_others(self):
        relay = Relay(A, B, C)
        relay.source.channels["300"].webhook.failures.append(PermissionDenied("no"))

        await relay.dispatcher.handle(_msg("100"))

        assert len(relay.sent("200")) == 1
        assert relay.sent("300") == []

    @pytest.mark.asyncio
    async def test_target_without_permission_is_skipped(self):
        relay = Relay(A, B, C)
        relay.source.channels["300"].missing.add("manage_webhooks")

        await relay.dispatcher.handle(_msg("100"))

        assert len(relay.sent("200")) == 1
        assert relay.sent("300") == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        relay = Relay(A, B)
        relay.source.channels["200"].webhook.failures.append(TransientDeliveryFailure("503"))

        await relay.dispatcher.handle(_msg("100"))

        assert len(relay.sent("200")) == 1

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        relay = Relay(A, B)
        relay.source.channels["200"].webhook.failures.extend(TransientDeliveryFailure("503") for _ in range(3))

        await relay.dispatcher.handle(_msg("100"))

        assert relay.sent("200") == []
        assert len(relay.source.channels["200"].webhook.failures) == 1

    @pytest.mark.asyncio
    async def test_deleted_webhook_is_recreated_once(self):
        relay = Relay(A, B)
        relay.source.channels["200"].webhook.failures.append(DeliveryHandleGone("gone"))

        await relay.dispatcher.handle(_msg("100"))

        assert len(relay.sent("200")) == 1
        assert relay.source.channels["200"].webhook_calls == 2

    @pytest.mark.asyncio
    async def test_slow_target_times_out_without_blocking_others(self):
        relay = Relay(A, B, C, delivery_timeout=0.05)
        relay.source.channels["200"].webhook.delay = 1.0

        await relay.dispatcher.handle(_msg("100"))

        assert relay.sent("200") == []
        assert len(relay.sent("300")) == 1

    @pytest.mark.asyncio
    async def test_channel_unlinked_mid_delivery_is_skipped(self):
        registry_holder: dict = {}

        class UnlinkingSource(FakeChannelSource):
            async def fetch_channel(self, channel_id):
                if channel_id == "300":
                    registry_holder["registry"].unlink_channel("a1b2c3d4", "300")
                return await super().fetch_channel(channel_id)

        relay = Relay(A, B, C, source=UnlinkingSource("100", "200", "300"))
        registry_holder["registry"] = relay.registry

        await relay.dispatcher.handle(_msg("100"))

        assert len(relay.sent("200")) == 1
        assert relay.sent("300") == []

    @pytest.mark.asyncio
    async def test_sticker_message_deleted(self):
        relay = Relay(A, B)

        await relay.dispatcher.handle(_msg("100", "", has_stickers=True))

        assert relay.platform.deleted == [("100", "m1")]
        assert relay.sent("200") == []

    @pytest.mark.asyncio
    async def test_reaction_on_copy_is_mirrored(self):
        relay = Relay(A, B)
        await relay.dispatcher.handle(_msg("100"))
        copy_in_b = relay.sent("200")[0]["id"]

        _, add = reaction_changed("200", copy_in_b, "👍", "u2")
        _, remove = reaction_changed("200", copy_in_b, "👍", "u2", is_remove=True)
        await relay.dispatcher.handle(add)
        await relay.dispatcher.handle(remove)

        assert relay.platform.reactions == [("add", "100", "m1", "👍"), ("remove", "100", "m1", "👍")]

    @pytest.mark.asyncio
    async def test_mirrored_reaction_stays_while_another_copy_still_reacts(self):
        # Arrange
        relay = Relay(A, B, C)
        await relay.dispatcher.handle(_msg("100"))
        copy_in_b = relay.sent("200")[0]["id"]
        copy_in_c = relay.sent("300")[0]["id"]

        # Act
        for evt in (
            reaction_changed("200", copy_in_b, "👍", "u2")[1],
            reaction_changed("300", copy_in_c, "👍", "u3")[1],
            reaction_changed("200", copy_in_b, "👍", "u2", is_remove=True)[1],
        ):
            await relay.dispatcher.handle(evt)

        # Assert
        assert relay.platform.reactions == [("add", "100", "m1", "👍")]

        await relay.dispatcher.handle(reaction_changed("300", copy_in_c, "👍", "u3", is_remove=True)[1])
        assert relay.platform.reactions[-1] == ("remove", "100", "m1", "👍")

    @pytest.mark.asyncio
    async def test_hung_attachment_download_does_not_hold_back_text(self):
        class StalledDownloads(FakePlatform):
            async def download(self, url):
                await asyncio.Event().wait()

        relay = Relay(A, B, platform=StalledDownloads(), delivery_timeout=0.05)
        attachment = Attachment("https://cdn/a.png", "a.png", 10)

        await asyncio.wait_for(relay.dispatcher.handle(_msg("100", "see attached", attachments=[attachment])), 5)

        (sent,) = relay.sent("200")
        assert sent["content"] == "see attached"
        assert sent["files"] == []

    @pytest.mark.asyncio
    async def test_guild_left_removes_its_channels(self):
        relay = Relay(A, B, C)
        _, evt = guild_left("g2")

        await relay.dispatcher.handle(evt)

        assert relay.registry.resolve_group_for_channel("200") is None
        assert relay.registry.resolve_group_for_channel("300") == "a1b2c3d4"

    @pytest.mark.asyncio
    async def test_push_event_runs_in_background(self):
        relay = Relay(A, B)

        relay.dispatcher.push_event("discord", _msg("100"))
        await relay.dispatcher.drain()

        assert len(relay.sent("200")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_messages_all_delivered(self):
        relay = Relay(A, B)

        await asyncio.gather(*(relay.dispatcher.handle(_msg("100", f"n{i}", message_id=f"m{i}")) for i in range(10)))

        assert sorted(s["content"] for s in relay.sent("200")) == sorted(f"n{i}" for i in range(10))
        assert relay.source.channels["200"].webhook_calls == 1

    def test_sweep_drops_expired_correspondences(self):
        relay = Relay(A, B)
        relay.table.record("d1", "m1", "100", "200")
        relay.clock.advance(86_401)

        assert relay.dispatcher.sweep() == 1
