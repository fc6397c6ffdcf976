"""Tests for the JSON store, capped collections, leak log, settings and sessions."""

import asyncio
import json
import threading
from pathlib import Path

import pytest

import tab_watchdog as tw


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _leak(tab_id: int, rate: float = 1.0) -> tw.LeakRecord:
    return tw.LeakRecord(
        tab_id=tab_id,
        title=f"Tab {tab_id}",
        url=f"https://t{tab_id}.example.com/",
        growth_rate=rate,
        memory_history=[1.0, 2.0, 3.0, 4.0, 5.0],
        detected_at=1000.0,
    )


def _blocked_store(tmp_path: Path) -> tw.JsonStore:
    """A store whose parent 'directory' is a regular file, so every write fails."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    return tw.JsonStore(blocker / "store.json")


# ---------------------------------------------------------------------------
# JsonStore
# ---------------------------------------------------------------------------

class TestJsonStore:
    @pytest.mark.asyncio
    async def test_missing_key_returns_default(self, store) -> None:
        assert await store.get("nope", []) == []
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_values_survive_reopen(self, tmp_path) -> None:
        path = tmp_path / "data" / "store.json"
        await tw.JsonStore(path).set("k", {"a": [1, 2]})
        assert await tw.JsonStore(path).get("k") == {"a": [1, 2]}
        assert json.loads(path.read_text()) == {"k": {"a": [1, 2]}}

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, store) -> None:
        await store.set("k", [1])
        value = await store.get("k")
        value.append(2)
        assert await store.get("k") == [1]

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_defaults(self, tmp_path) -> None:
        path = tmp_path / "store.json"
        path.write_text("{invalid json!!")
        assert await tw.JsonStore(path).get("usagePatterns", []) == []

    @pytest.mark.asyncio
    async def test_non_object_root_reads_as_defaults(self, tmp_path) -> None:
        path = tmp_path / "store.json"
        path.write_text("[1, 2, 3]")
        assert await tw.JsonStore(path).get("k", "default") == "default"

    @pytest.mark.asyncio
    async def test_failed_write_raises_and_rolls_back(self, tmp_path) -> None:
        store = _blocked_store(tmp_path)
        with pytest.raises(tw.StorageError):
            await store.set("k", 1)
        assert await store.get("k", "absent") == "absent"

    @pytest.mark.asyncio
    async def test_unserialisable_value_rejected(self, store) -> None:
        with pytest.raises(tw.StorageError):
            await store.set("k", {"when": object()})

    @pytest.mark.asyncio
    async def test_written_compactly(self, tmp_path) -> None:
        path = tmp_path / "store.json"
        await tw.JsonStore(path).set("k", {"a": [1, 2]})
        assert path.read_text() == '{"k":{"a":[1,2]}}'

    @pytest.mark.asyncio
    async def test_file_io_runs_off_event_loop(self, store, monkeypatch) -> None:
        loop_thread = threading.get_ident()
        threads = []
        flush = store._flush

        def recording_flush(data):
            threads.append(threading.get_ident())
            flush(data)

        monkeypatch.setattr(store, "_flush", recording_flush)
        await store.set("k", 1)
        assert threads and loop_thread not in threads

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, store) -> None:
        await store.set("a", 1)
        await store.set("b", 2)
        await store.remove("a")
        assert await store.get("a") is None
        await store.clear()
        assert await store.get("b") is None


# ---------------------------------------------------------------------------
# Capped collections
# ---------------------------------------------------------------------------

class TestCappedCollection:
    @pytest.mark.asyncio
    async def test_append_at_capacity_drops_oldest(self, store) -> None:
        coll = tw.CappedCollection(store, "usagePatterns", 2000)
        await store.set("usagePatterns", [{"n": i} for i in range(2000)])

        await coll.append({"n": "new"})

        items = await coll.items()
        assert len(items) == 2000
        assert {"n": 0} not in items
        assert items[0] == {"n": 1}
        assert items[-1] == {"n": "new"}

    @pytest.mark.asyncio
    async def test_length_never_exceeds_max(self, store) -> None:
        coll = tw.CappedCollection(store, "k", 5)
        for i in range(12):
            await coll.append({"n": i})
            assert await coll.size() <= 5
        assert [e["n"] for e in await coll.items()] == [7, 8, 9, 10, 11]

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_not_lost(self, store) -> None:
        coll = tw.CappedCollection(store, "k", 100)
        await asyncio.gather(*(coll.append({"n": i}) for i in range(20)))
        assert await coll.size() == 20

    @pytest.mark.asyncio
    async def test_recent(self, store) -> None:
        coll = tw.CappedCollection(store, "k", 10)
        for i in range(4):
            await coll.append({"n": i})
        assert [e["n"] for e in await coll.recent(2)] == [2, 3]
        assert await coll.recent(0) == []

    @pytest.mark.asyncio
    async def test_wrong_stored_type_reads_empty(self, store) -> None:
        await store.set("k", {"not": "a list"})
        assert await tw.CappedCollection(store, "k", 10).items() == []

    @pytest.mark.asyncio
    async def test_failed_append_raises(self, tmp_path) -> None:
        coll = tw.CappedCollection(_blocked_store(tmp_path), "k", 10)
        with pytest.raises(tw.StorageError):
            await coll.append({"n": 1})


class TestLeakLog:
    @pytest.mark.asyncio
    async def test_one_record_per_tab(self, storage) -> None:
        await storage.leaks.upsert_leak(_leak(1, rate=1.0))
        await storage.leaks.upsert_leak(_leak(2))
        await storage.leaks.upsert_leak(_leak(1, rate=9.0))

        leaks = await storage.leaks.all()
        assert [leak.tab_id for leak in leaks] == [1, 2]
        assert leaks[0].growth_rate == 9.0

    @pytest.mark.asyncio
    async def test_remove(self, storage) -> None:
        await storage.leaks.upsert_leak(_leak(1))
        assert await storage.leaks.remove(1) is True
        assert await storage.leaks.remove(1) is False
        assert await storage.leaks.all() == []

    @pytest.mark.asyncio
    async def test_record_round_trip_uses_camel_case(self, storage, store) -> None:
        await storage.leaks.upsert_leak(_leak(3))
        (raw,) = await store.get(tw.KEY_LEAKS)
        assert raw["tabId"] == 3
        assert raw["isConfirmed"] is True
        assert (await storage.leaks.all())[0] == _leak(3)

    @pytest.mark.asyncio
    async def test_malformed_record_skipped(self, storage, store) -> None:
        await store.set(tw.KEY_LEAKS, [{"title": "no id"}, _leak(4).to_dict()])
        assert [leak.tab_id for leak in await storage.leaks.all()] == [4]


# ---------------------------------------------------------------------------
# Settings, snapshots and sessions
# ---------------------------------------------------------------------------

class TestSettings:
    @pytest.mark.asyncio
    async def test_defaults(self, storage) -> None:
        assert await storage.get_settings() == tw.AppSettings()

    @pytest.mark.asyncio
    async def test_partial_stored_settings_merge_defaults(self, storage, store) -> None:
        await store.set(tw.KEY_SETTINGS, {"theme": "dark", "notifications": {"leakAlerts": False}})
        settings = await storage.get_settings()
        assert settings.theme == "dark"
        assert settings.notifications.leak_alerts is False
        assert settings.notifications.enabled is True
        assert settings.notifications.high_memory_threshold == 500
        assert settings.auto_hibernate_idle_minutes == 60

    @pytest.mark.asyncio
    async def test_unknown_theme_falls_back(self, storage, store) -> None:
        await store.set(tw.KEY_SETTINGS, {"theme": "neon"})
        assert (await storage.get_settings()).theme == "system"

    @pytest.mark.asyncio
    async def test_garbage_settings_read_as_defaults(self, storage, store) -> None:
        await store.set(tw.KEY_SETTINGS, {"refreshInterval": "soon"})
        assert await storage.get_settings() == tw.AppSettings()

    @pytest.mark.asyncio
    async def test_update_persists(self, storage, store) -> None:
        updated = await storage.update_settings({"autoHibernateIdleMinutes": 15, "notifications": {"enabled": False}})
        assert updated.auto_hibernate_idle_minutes == 15
        assert updated.notifications.enabled is False
        assert updated.notifications.leak_alerts is True
        assert (await store.get(tw.KEY_SETTINGS))["autoHibernateIdleMinutes"] == 15


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_save_snapshot_is_capped(self, store) -> None:
        storage = tw.WatchdogStorage(store, tw.Config(max_snapshots=3))
        for ts in range(5):
            await storage.save_snapshot(tw.MemorySnapshot(float(ts), [], 0.0, 0))
        snaps = await storage.get_snapshots()
        assert [s["timestamp"] for s in snaps] == [2.0, 3.0, 4.0]
        assert await store.get(tw.KEY_LAST_SNAPSHOT) == 4.0


class TestSessions:
    @pytest.mark.asyncio
    async def test_save_update_delete(self, storage) -> None:
        session = tw.TabSession("s1", "work", 10.0, [tw.SavedTab("https://a.com/", "A")])
        await storage.save_session(session)
        await storage.save_session(tw.TabSession("s2", "fun", 11.0, []))

        session.name = "deep work"
        assert await storage.update_session(session) is True
        assert await storage.update_session(tw.TabSession("missing", "x", 0.0, [])) is False

        sessions = await storage.get_sessions()
        assert [(s.id, s.name, s.tab_count) for s in sessions] == [("s1", "deep work", 1), ("s2", "fun", 0)]

        await storage.delete_session("s1")
        assert [s.id for s in await storage.get_sessions()] == ["s2"]

    @pytest.mark.asyncio
    async def test_clear_all(self, storage, store) -> None:
        await storage.save_session(tw.TabSession("s1", "work", 10.0, []))
        await storage.leaks.upsert_leak(_leak(1))
        await storage.clear_all()
        assert await storage.get_sessions() == []
        assert await storage.leaks.all() == []
        assert await storage.get_settings() == tw.AppSettings()


# ---------------------------------------------------------------------------
# One file shared by several processes
# ---------------------------------------------------------------------------

class TestSharedFile:
    @pytest.mark.asyncio
    async def test_writers_keep_each_others_keys(self, tmp_path) -> None:
        path = tmp_path / "store.json"
        first, second = tw.JsonStore(path), tw.JsonStore(path)
        await first.set("a", 1)
        await second.set("b", 2)
        await first.set("a", 3)

        assert json.loads(path.read_text()) == {"a": 3, "b": 2}
        assert await first.get("b") == 2

    @pytest.mark.asyncio
    async def test_session_saved_alongside_monitor_survives(self, tmp_path, host, notifier) -> None:
        path = tmp_path / "store.json"
        host.tabs = [tw.TabDescriptor(id=1, url="https://example.com/")]
        monitor = tw.Watchdog(host, tw.WatchdogStorage(tw.JsonStore(path)), notifier=notifier)
        await monitor.tick()

        cli = tw.WatchdogStorage(tw.JsonStore(path))
        await cli.save_session(tw.TabSession("s1", "work", 10.0, [tw.SavedTab("https://example.com/", "t")]))
        await monitor.tick()

        reader = tw.WatchdogStorage(tw.JsonStore(path))
        assert [s.id for s in await reader.get_sessions()] == ["s1"]
        assert len(await reader.get_snapshots()) == 2

    @pytest.mark.asyncio
    async def test_leaks_cleared_elsewhere_stay_cleared(self, tmp_path) -> None:
        path = tmp_path / "store.json"
        monitor = tw.WatchdogStorage(tw.JsonStore(path))
        await monitor.leaks.upsert_leak(_leak(1))

        cli = tw.WatchdogStorage(tw.JsonStore(path))
        assert await cli.leaks.remove(1) is True
        await monitor.save_snapshot(tw.MemorySnapshot(1.0, [], 0.0, 0))

        assert await monitor.leaks.all() == []
        assert await tw.WatchdogStorage(tw.JsonStore(path)).leaks.all() == []
