"""Shared fixtures: a scriptable tab host, a temp JSON store and a notifier spy."""

import asyncio
from pathlib import Path

import pytest

import tab_watchdog as tw


@pytest.fixture(autouse=True)
def log_file(tmp_path, monkeypatch) -> Path:
    """Keep the watchdog log out of $HOME."""
    path = tmp_path / "tab_watchdog.log"
    monkeypatch.setattr(tw, "LOG_FILE", path)
    return path


class FakeHost:
    """In-memory TabHost whose tabs and readings tests mutate between ticks."""

    def __init__(self, tabs=None, precise=None, available: float = 8000.0):
        self.tabs: list[tw.TabDescriptor] = list(tabs or [])
        self.precise: dict[int, object] = dict(precise or {})
        self.available = available
        self.fail_listing = False
        self.gate: asyncio.Event | None = None
        self.list_calls = 0

    async def list_live_resources(self) -> list[tw.TabDescriptor]:
        self.list_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_listing:
            raise RuntimeError("tab enumeration unavailable")
        return list(self.tabs)

    async def precise_memory_reading(self, tab_id: int) -> float | None:
        value = self.precise.get(tab_id)
        if isinstance(value, Exception):
            raise value
        return value

    async def system_available_memory(self) -> float:
        return self.available


class RecordingNotifier:
    def __init__(self):
        self.calls: list[tuple[str, str, int]] = []

    def __call__(self, title: str, message: str, priority: int) -> None:
        self.calls.append((title, message, priority))

    def titles(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store(tmp_path) -> tw.JsonStore:
    return tw.JsonStore(tmp_path / "store.json")


@pytest.fixture
def storage(store) -> tw.WatchdogStorage:
    return tw.WatchdogStorage(store)


@pytest.fixture
def watchdog(host, storage, notifier) -> tw.Watchdog:
    return tw.Watchdog(host, storage, notifier=notifier)
