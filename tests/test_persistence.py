"""Tests for the JSON group store and the persistence scheduler."""

from __future__ import annotations

import asyncio
import json

import pytest

from interserver.core.errors import StorageFailure
from interserver.gateway.bus import Bus
from interserver.gateway.registry import ChannelRef, GroupRegistry
from interserver.store import JsonGroupStore, PersistScheduler

A = ChannelRef("100", "g1", "Guild One", "general")
B = ChannelRef("200", "g2", "Guild Two", "lobby")


class ManualSleep:
    """Injected sleep that only returns once released."""

    def __init__(self) -> None:
        self.calls: list[float] = []
        self._release = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await self._release.wait()

    def release(self) -> None:
        self._release.set()


class CountingStore(JsonGroupStore):
    def __init__(self, path, *, fail: int = 0) -> None:
        super().__init__(path)
        self.saves: list[dict] = []
        self.fail = fail

    async def save_all(self, state):
        if self.fail:
            self.fail -= 1
            raise StorageFailure("disk full", code="write_failed")
        self.saves.append(state)
        await super().save_all(state)


class TestJsonGroupStore:
    @pytest.mark.asyncio
    async def test_missing_file_loads_empty(self, tmp_path):
        store = JsonGroupStore(tmp_path / "groups.json")
        assert await store.load_all() == {}

    @pytest.mark.asyncio
    async def test_save_then_load(self, tmp_path):
        # Arrange
        store = JsonGroupStore(tmp_path / "groups.json")
        registry = GroupRegistry(key_factory=lambda: "a1b2c3d4")
        registry.create_group(A)

        # Act
        await store.save_all(registry.snapshot())
        restored = GroupRegistry()
        restored.restore(await store.load_all())

        # Assert
        assert restored.get_group("a1b2c3d4").member_ids == ["100"]
        assert not (tmp_path / "groups.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "groups.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageFailure):
            await JsonGroupStore(path).load_all()

    @pytest.mark.asyncio
    async def test_legacy_file_loads(self, tmp_path):
        path = tmp_path / "channels.json"
        path.write_text(json.dumps({"k1": {"frequency": "k1", "channels": ["100", "200"]}}), encoding="utf-8")
        registry = GroupRegistry()

        registry.restore(await JsonGroupStore(path).load_all())

        assert registry.get_group("k1").member_ids == ["100", "200"]

    def test_save_sync(self, tmp_path):
        store = JsonGroupStore(tmp_path / "nested" / "groups.json")
        store.save_sync({"version": 1, "groups": {}})
        assert json.loads((tmp_path / "nested" / "groups.json").read_text()) == {"version": 1, "groups": {}}


class TestPersistScheduler:
    @pytest.mark.asyncio
    async def test_burst_of_mutations_produces_one_write(self, tmp_path):
        # Arrange
        bus = Bus()
        keys = iter(["a1b2c3d4"])
        registry = GroupRegistry(bus, key_factory=lambda: next(keys))
        store = CountingStore(tmp_path / "groups.json")
        sleep = ManualSleep()
        scheduler = PersistScheduler(registry, store, debounce=2.0, sleep=sleep)
        bus.register(scheduler)

        # Act
        registry.create_group(A)
        registry.link_channel("a1b2c3d4", B)
        registry.ban("a1b2c3d4", "u-troll")
        registry.unban("a1b2c3d4", "u-troll")
        await asyncio.sleep(0)
        sleep.release()
        await scheduler.wait_idle()

        # Assert
        assert len(store.saves) == 1
        assert sleep.calls == [2.0]
        assert store.saves[0]["groups"]["a1b2c3d4"]["members"][1]["channel_id"] == "200"
        assert not scheduler.dirty

    @pytest.mark.asyncio
    async def test_flush_without_changes_does_not_write(self, tmp_path):
        store = CountingStore(tmp_path / "groups.json")
        scheduler = PersistScheduler(GroupRegistry(), store)
        assert await scheduler.flush() is False
        assert store.saves == []

    @pytest.mark.asyncio
    async def test_failed_write_stays_dirty_and_retries(self, tmp_path):
        store = CountingStore(tmp_path / "groups.json", fail=1)
        scheduler = PersistScheduler(GroupRegistry(), store, sleep=ManualSleep())
        scheduler.dirty = True

        assert await scheduler.flush() is False
        assert scheduler.dirty
        assert await scheduler.flush() is True
        assert len(store.saves) == 1

    @pytest.mark.asyncio
    async def test_close_writes_pending_changes(self, tmp_path):
        bus = Bus()
        registry = GroupRegistry(bus)
        store = CountingStore(tmp_path / "groups.json")
        scheduler = PersistScheduler(registry, store, sleep=ManualSleep())
        bus.register(scheduler)
        registry.create_group(A)

        await scheduler.close()

        assert len(store.saves) == 1
        assert (tmp_path / "groups.json").exists()

    @pytest.mark.asyncio
    async def test_close_rewrites_state_when_pending_write_is_interrupted(self, tmp_path):
        # Arrange
        class StallingStore(CountingStore):
            """First write hangs until cancelled; later writes succeed."""

            def __init__(self, path) -> None:
                super().__init__(path)
                self.started = asyncio.Event()
                self.stalled = False

            async def save_all(self, state):
                if not self.stalled:
                    self.stalled = True
                    self.started.set()
                    await asyncio.Event().wait()
                await super().save_all(state)

        bus = Bus()
        registry = GroupRegistry(bus, key_factory=lambda: "a1b2c3d4")
        store = StallingStore(tmp_path / "groups.json")
        sleep = ManualSleep()
        scheduler = PersistScheduler(registry, store, sleep=sleep)
        bus.register(scheduler)
        registry.create_group(A)
        sleep.release()
        await asyncio.wait_for(store.started.wait(), timeout=5)

        # Act
        await scheduler.close()

        # Assert
        assert len(store.saves) == 1
        assert "a1b2c3d4" in store.saves[0]["groups"]
        assert not scheduler.dirty
        assert scheduler.writes == 1

    def test_ignores_non_registry_sources(self):
        scheduler = PersistScheduler(GroupRegistry(), JsonGroupStore("unused.json"))
        assert not scheduler.accept_event("discord", object())

    def test_save_sync(self, tmp_path):
        registry = GroupRegistry(key_factory=lambda: "a1b2c3d4")
        registry.create_group(A)
        scheduler = PersistScheduler(registry, JsonGroupStore(tmp_path / "groups.json"))
        scheduler.dirty = True

        scheduler.save_sync()

        data = json.loads((tmp_path / "groups.json").read_text())
        assert "a1b2c3d4" in data["groups"]
        assert not scheduler.dirty
