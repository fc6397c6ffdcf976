#!/usr/bin/env python3
"""
tab_watchdog.py
===============

A background watchdog for browser tabs that

1. **Samples per-tab memory** every 30 s: a precise renderer reading (via
   psutil) when the tab list carries the renderer pid, a heuristic estimate
   from the URL and tab flags otherwise.
2. **Detects sustained growth** over a sliding window of the last 10 samples
   and records a leak (one live record per tab) plus a desktop notification.
3. **Scores tab health** (0–100) from memory, idle time and focus, and rolls
   tabs up into per-domain groups carrying their own health score.
4. **Predicts which tabs you want to keep** from a weighted mix of recency,
   domain frequency, time-of-day and day-of-week usage patterns.
5. Persists usage patterns, snapshots, leaks, sessions and settings into a
   single JSON store whose collections are capped and trimmed oldest-first.

The live tab list is read from a JSON file (``--tabs-file``) that a browser
bridge keeps current: either a bare list or ``{"tabs": [...]}`` of objects
with ``id, url, title, active, pinned, discarded, lastAccessed`` and an
optional renderer ``pid``.

────────────────────────────────────────────────────────────────────────────
USAGE EXAMPLES
────────────────────────────────────────────────────────────────────────────
# 1) Run continuously with defaults
./tab_watchdog.py --tabs-file ~/.tab_watchdog/tabs.json

# 2) One sampling pass followed by a report (health, domains, predictions)
./tab_watchdog.py --once

# 3) Faster sampling and a stricter growth test
./tab_watchdog.py --interval 0.25 --history 8 --growth-threshold 0.8

# 4) Reproduce the legacy host-wide growth signal
./tab_watchdog.py --history-signal system

# 5) Save the current tabs as a named session
./tab_watchdog.py --save-session "research"
────────────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import argparse
import asyncio
import json
import math
import os
import shutil
import subprocess
import sys
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

import psutil

# Version information
try:
    __version__ = version("tab-watchdog")
except PackageNotFoundError:
    __version__ = "unknown"

# ──────────────────────────── Heuristic defaults ────────────────────────────
DEF_SAMPLE_INT_MIN = 0.5  # minutes between sampling passes
DEF_HISTORY_LEN = 10  # samples kept per tab
DEF_HISTORY_MIN = 5  # samples needed before the growth test runs
DEF_GROWTH_THRESHOLD = 0.7  # share of rising samples that flags growth

DEF_MEM_PENALTY_THRESHOLD_MB = 100  # no memory penalty below this
DEF_MEM_PENALTY_STEP_MB = 50
DEF_MEM_PENALTY_POINTS = 10  # per full step above the threshold
DEF_MEM_PENALTY_MAX = 40
DEF_IDLE_PENALTY_POINTS = 5  # per full idle hour
DEF_IDLE_PENALTY_MAX = 30
DEF_ACTIVE_BONUS = 10
HEALTH_MAX = 100

DEF_DECAY_RATE = 0.115  # recency half-life ≈ 6 h
DEF_HIGH_CONFIDENCE = 0.7
DEF_MEDIUM_CONFIDENCE = 0.4
DEF_KEEP_THRESHOLD = 0.5
DEF_PATTERN_CACHE = 1000  # patterns the predictor keeps in memory
MIN_DOMAIN_PATTERNS = 5  # below this the temporal scores stay neutral
NEARBY_HOURS = 2

DEF_MAX_PATTERNS = 2000
DEF_MAX_SNAPSHOTS = 500
DEF_MAX_ACCESS_PATTERNS = 500
DEF_MAX_LEAKS = 100

# Domain health tiers (MB / tabs)
DOMAIN_CRITICAL_MEMORY = 500
DOMAIN_HIGH_MEMORY = 300
DOMAIN_MEDIUM_MEMORY = 150
DOMAIN_HIGH_TAB_COUNT = 10
DOMAIN_MEDIUM_TAB_COUNT = 5
DOMAIN_HIGH_AVG_MEMORY = 200

TOTAL_MEMORY_ALERT_MB = 2048

# ──────────────────────  Site categories for estimation  ────────────────────
BASE_ESTIMATE_MB = 50
HEAVY_SITE_BONUS = 150
MEDIUM_SITE_BONUS = 80
DEV_SITE_BONUS = 60
ACTIVE_TAB_BONUS = 30
PINNED_TAB_BONUS = 20

HEAVY_SITES = ("youtube.com", "netflix.com", "twitch.tv", "kick.com")
MEDIUM_SITES = ("facebook.com", "instagram.com", "linkedin.com", "reddit.com", "x.com")
DEV_SITES = ("github.com", "stackoverflow.com", "gitlab.com", "codepen.io")

# Browser-internal pages are never sampled into history
UNTRACKED_PREFIXES = ("chrome://", "chrome-extension://", "about:", "edge://")

# ───────────────────────────────  Files / paths ─────────────────────────────
LOG_FILE = Path(os.environ.get("TAB_WATCHDOG_LOG", Path.home() / "tab_watchdog.log"))
DEF_DATA_DIR = Path.home() / ".tab_watchdog"
DEF_STORE_PATH = DEF_DATA_DIR / "store.json"
DEF_TABS_FILE = DEF_DATA_DIR / "tabs.json"

# ────────────────────────────────  Storage keys  ────────────────────────────
KEY_SESSIONS = "tabSessions"
KEY_PATTERNS = "usagePatterns"
KEY_SETTINGS = "appSettings"
KEY_SNAPSHOTS = "memorySnapshots"
KEY_LEAKS = "memoryLeaks"
KEY_ACCESS_PATTERNS = "accessPatterns"
KEY_LAST_SNAPSHOT = "lastSnapshotTime"

THEMES = ("light", "dark", "system")


# ──────────────────────────────  Data structures  ───────────────────────────
@dataclass(frozen=True)
class PredictorWeights:
    recency: float = 0.35
    frequency: float = 0.30
    time_of_day: float = 0.20
    day_of_week: float = 0.15

    def total(self) -> float:
        return self.recency + self.frequency + self.time_of_day + self.day_of_week


@dataclass
class Config:
    """Every tunable of the sampler, detector, scorers and predictor."""

    sample_interval_min: float = DEF_SAMPLE_INT_MIN
    history_size: int = DEF_HISTORY_LEN
    history_min: int = DEF_HISTORY_MIN
    growth_threshold: float = DEF_GROWTH_THRESHOLD
    history_signal: str = "per_tab"  # or "system"

    memory_penalty_threshold: float = DEF_MEM_PENALTY_THRESHOLD_MB
    memory_penalty_step: float = DEF_MEM_PENALTY_STEP_MB
    memory_penalty_points: int = DEF_MEM_PENALTY_POINTS
    memory_penalty_max: int = DEF_MEM_PENALTY_MAX
    idle_penalty_points: int = DEF_IDLE_PENALTY_POINTS
    idle_penalty_max: int = DEF_IDLE_PENALTY_MAX
    active_bonus: int = DEF_ACTIVE_BONUS

    weights: PredictorWeights = field(default_factory=PredictorWeights)
    high_confidence: float = DEF_HIGH_CONFIDENCE
    medium_confidence: float = DEF_MEDIUM_CONFIDENCE
    keep_threshold: float = DEF_KEEP_THRESHOLD
    decay_rate: float = DEF_DECAY_RATE
    pattern_cache_size: int = DEF_PATTERN_CACHE

    max_patterns: int = DEF_MAX_PATTERNS
    max_snapshots: int = DEF_MAX_SNAPSHOTS
    max_access_patterns: int = DEF_MAX_ACCESS_PATTERNS
    max_leaks: int = DEF_MAX_LEAKS

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> Config:
        """Initialize from command line arguments."""
        return cls(
            sample_interval_min=args.interval,
            history_size=args.history,
            history_min=args.min_history,
            growth_threshold=args.growth_threshold,
            history_signal=args.history_signal,
            weights=PredictorWeights(*args.weights),
            decay_rate=args.decay_rate,
            max_patterns=args.max_patterns,
            max_snapshots=args.max_snapshots,
            max_access_patterns=args.max_access_patterns,
        )


DEFAULT_CONFIG = Config()


@dataclass
class TabDescriptor:
    """A live tab as reported by the host."""

    id: int
    url: str = ""
    title: str = ""
    active: bool = False
    pinned: bool = False
    discarded: bool = False
    last_accessed: float = 0.0
    pid: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TabDescriptor:
        pid = data.get("pid")
        last_accessed = float(data.get("lastAccessed") or time.time())
        if last_accessed > 1e11:  # browser timestamps are epoch ms
            last_accessed /= 1000
        return cls(
            id=int(data["id"]),
            url=data.get("url") or "",
            title=data.get("title") or "",
            active=bool(data.get("active", False)),
            pinned=bool(data.get("pinned", False)),
            discarded=bool(data.get("discarded", False)),
            last_accessed=last_accessed,
            pid=int(pid) if pid else None,
        )


@dataclass(frozen=True)
class TabSnapshot:
    tab_id: int
    title: str
    url: str
    domain: str
    memory_usage_mb: float
    last_accessed: float
    is_active: bool = False
    is_pinned: bool = False
    is_discarded: bool = False
    cpu_usage: float = 0.0

    @classmethod
    def from_descriptor(cls, tab: TabDescriptor, memory_mb: float) -> TabSnapshot:
        return cls(
            tab_id=tab.id,
            title=tab.title or "Untitled",
            url=tab.url,
            domain=get_domain(tab.url),
            memory_usage_mb=memory_mb,
            last_accessed=tab.last_accessed,
            is_active=tab.active,
            is_pinned=tab.pinned,
            is_discarded=tab.discarded,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tabId": self.tab_id,
            "title": self.title,
            "url": self.url,
            "domain": self.domain,
            "memoryUsageMB": self.memory_usage_mb,
            "cpuUsage": self.cpu_usage,
            "lastAccessed": self.last_accessed,
            "isActive": self.is_active,
            "isPinned": self.is_pinned,
            "isDiscarded": self.is_discarded,
        }


@dataclass
class LeakRecord:
    tab_id: int
    title: str
    url: str
    growth_rate: float  # MB/min, signed
    memory_history: list[float]
    detected_at: float
    confirmed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "tabId": self.tab_id,
            "title": self.title,
            "url": self.url,
            "growthRate": self.growth_rate,
            "memoryHistory": list(self.memory_history),
            "detectedAt": self.detected_at,
            "isConfirmed": self.confirmed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LeakRecord:
        return cls(
            tab_id=int(data["tabId"]),
            title=data.get("title", "Untitled"),
            url=data.get("url", ""),
            growth_rate=float(data.get("growthRate", 0.0)),
            memory_history=[float(v) for v in data.get("memoryHistory", [])],
            detected_at=float(data.get("detectedAt", 0.0)),
            confirmed=bool(data.get("isConfirmed", True)),
        )


@dataclass
class UsagePattern:
    tab_id: int
    domain: str
    accessed_at: float
    day_of_week: int  # 0 = Sunday
    hour_of_day: int
    duration: float = 0.0

    @classmethod
    def at(cls, tab_id: int, domain: str, ts: float, duration: float = 0.0) -> UsagePattern:
        dt = datetime.fromtimestamp(ts)
        return cls(tab_id, domain, ts, day_of_week(dt), dt.hour, duration)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tabId": self.tab_id,
            "domain": self.domain,
            "accessedAt": self.accessed_at,
            "dayOfWeek": self.day_of_week,
            "hourOfDay": self.hour_of_day,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsagePattern:
        return cls(
            tab_id=int(data.get("tabId", 0)),
            domain=data.get("domain", "unknown"),
            accessed_at=float(data.get("accessedAt", 0.0)),
            day_of_week=int(data.get("dayOfWeek", 0)),
            hour_of_day=int(data.get("hourOfDay", 0)),
            duration=float(data.get("duration", 0.0)),
        )


@dataclass
class AccessEntry:
    tab_id: int
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {"tabId": self.tab_id, "timestamp": self.timestamp}


@dataclass
class Prediction:
    tab_id: int
    title: str
    probability: float
    suggest_keep: bool
    confidence: str  # "high" | "medium" | "low"
    reasoning: str


@dataclass
class DomainGroup:
    domain: str
    tabs: list[TabSnapshot]
    total_memory_usage_mb: float
    tab_count: int
    health_score: int = HEALTH_MAX


@dataclass
class MemorySnapshot:
    timestamp: float
    tabs: list[TabSnapshot]
    total_memory_usage_mb: float
    tab_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "tabs": [t.to_dict() for t in self.tabs],
            "totalMemoryUsageMB": self.total_memory_usage_mb,
            "tabCount": self.tab_count,
        }


@dataclass
class SavedTab:
    url: str
    title: str
    pinned: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "title": self.title, "pinned": self.pinned}


@dataclass
class TabSession:
    id: str
    name: str
    created_at: float
    tabs: list[SavedTab]

    @property
    def tab_count(self) -> int:
        return len(self.tabs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "tabs": [t.to_dict() for t in self.tabs],
            "tabCount": self.tab_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TabSession:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            created_at=float(data.get("createdAt", 0.0)),
            tabs=[SavedTab(t.get("url", ""), t.get("title", ""), bool(t.get("pinned", False))) for t in data.get("tabs", [])],
        )


@dataclass
class NotificationSettings:
    enabled: bool = True
    leak_alerts: bool = True
    high_memory_threshold: float = 500
    sound_enabled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "leakAlerts": self.leak_alerts,
            "highMemoryThreshold": self.high_memory_threshold,
            "soundEnable": self.sound_enabled,
        }


@dataclass
class AppSettings:
    refresh_interval_ms: int = 5000
    theme: str = "system"
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    auto_hibernate_idle_minutes: int = 60
    show_health_scores: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "refreshInterval": self.refresh_interval_ms,
            "theme": self.theme,
            "notifications": self.notifications.to_dict(),
            "autoHibernateIdleMinutes": self.auto_hibernate_idle_minutes,
            "showHealthScores": self.show_health_scores,
        }

    @classmethod
    def from_dict(cls, stored: dict[str, Any]) -> AppSettings:
        """Merge stored keys over the defaults (nested ``notifications`` included)."""
        merged = cls().to_dict()
        for key, value in stored.items():
            if key == "notifications" and isinstance(value, dict):
                merged["notifications"].update(value)
            elif key in merged:
                merged[key] = value
        notif = merged["notifications"]
        theme = merged["theme"] if merged["theme"] in THEMES else "system"
        return cls(
            refresh_interval_ms=int(merged["refreshInterval"]),
            theme=theme,
            notifications=NotificationSettings(
                enabled=bool(notif["enabled"]),
                leak_alerts=bool(notif["leakAlerts"]),
                high_memory_threshold=float(notif["highMemoryThreshold"]),
                sound_enabled=bool(notif["soundEnable"]),
            ),
            auto_hibernate_idle_minutes=int(merged["autoHibernateIdleMinutes"]),
            show_health_scores=bool(merged["showHealthScores"]),
        )


class LeakVerdict(Enum):
    INSUFFICIENT_DATA = "insufficient data"
    GROWING = "growing"
    NOT_GROWING = "not growing"


class StorageError(Exception):
    """A persisted collection could not be written."""


# ─────────────────────────────  Tiny helpers  ───────────────────────────────
def log(msg: str) -> None:
    """Log message with automatic rotation at 50MB."""
    try:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        if LOG_FILE.exists() and LOG_FILE.stat().st_size > 50 * 1024 * 1024:
            backup = LOG_FILE.with_suffix(".old")
            if backup.exists():
                backup.unlink()
            LOG_FILE.rename(backup)
    except OSError:
        pass  # Continue logging even if rotation fails

    try:
        with LOG_FILE.open("a") as fp:
            fp.write(f"[{datetime.now():%Y-%m-%d %H:%M:%S}] {msg}\n")
    except OSError:
        pass  # Fail silently to avoid disrupting monitoring


def esc(s: str) -> str:  # simple shell-safe escaper for osascript strings
    return s.replace('"', '\\"')


def get_domain(url: str) -> str:
    """Lowercased hostname without ``www.``; ``unknown``/``Unknown`` sentinels."""
    if not url.strip():
        return "unknown"
    try:
        host = urlparse(url.strip()).hostname
    except ValueError:
        return "Unknown"
    if not host:
        return "Unknown"
    return host[4:] if host.startswith("www.") else host


def format_memory(memory_mb: float) -> str:
    if memory_mb >= 1024:
        return f"{memory_mb / 1024:.1f} GB"
    return f"{memory_mb:.1f} MB"


def day_of_week(dt: datetime) -> int:
    """0 = Sunday … 6 = Saturday."""
    return (dt.weekday() + 1) % 7


def is_trackable(tab: TabDescriptor) -> bool:
    return bool(tab.url) and not tab.url.startswith(UNTRACKED_PREFIXES)


# ──────────────────────────────  Persistence  ───────────────────────────────
class JsonStore:
    """
    Async key/value store over one JSON file.

    The document is cached in memory and re-read whenever the file changes on
    disk, so other processes sharing the file (a monitor plus one-shot CLI
    commands) see each other's writes. Each mutation re-reads, applies only its
    own key, and replaces the file through a temp file off the event loop. A
    missing or corrupt file reads as empty.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._data: dict[str, Any] | None = None
        self._stamp: tuple[int, int, int] | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._io = asyncio.Lock()

    def _file_stamp(self) -> tuple[int, int, int] | None:
        try:
            st = self.path.stat()
        except OSError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def _load(self) -> dict[str, Any]:
        stamp = self._file_stamp()
        if self._data is not None and stamp == self._stamp:
            return self._data
        data: dict[str, Any] = {}
        if stamp is not None:
            try:
                loaded = json.loads(self.path.read_text())
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    log(f"Store {self.path} is not a JSON object; starting empty")
            except (OSError, ValueError) as e:
                log(f"Failed to read store {self.path}: {e}")
        self._data = data
        self._stamp = stamp
        return data

    def _flush(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(data, separators=(",", ":")))
        tmp.replace(self.path)
        self._stamp = self._file_stamp()

    def lock(self, key: str) -> asyncio.Lock:
        """Single-writer lock for one logical collection."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._io:
            data = await asyncio.to_thread(self._load)
            if key not in data:
                return default
            return json.loads(json.dumps(data[key]))

    async def set(self, key: str, value: Any) -> None:
        try:
            encoded = json.loads(json.dumps(value))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key} is not serialisable: {e}") from e

        async with self._io:
            data = await asyncio.to_thread(self._load)
            missing = object()
            previous = data.get(key, missing)
            data[key] = encoded
            try:
                await asyncio.to_thread(self._flush, data)
            except OSError as e:
                if previous is missing:
                    data.pop(key, None)
                else:
                    data[key] = previous
                raise StorageError(f"Failed to write {key}: {e}") from e

    async def remove(self, key: str) -> None:
        async with self._io:
            data = await asyncio.to_thread(self._load)
            if key not in data:
                return
            previous = data.pop(key)
            try:
                await asyncio.to_thread(self._flush, data)
            except OSError as e:
                data[key] = previous
                raise StorageError(f"Failed to remove {key}: {e}") from e

    async def clear(self) -> None:
        async with self._io:
            try:
                await asyncio.to_thread(self._flush, {})
            except OSError as e:
                raise StorageError(f"Failed to clear store: {e}") from e
            self._data = {}


class CappedCollection:
    """Persisted list with a fixed maximum size, trimmed oldest-first."""

    def __init__(self, store: JsonStore, key: str, max_size: int) -> None:
        self.store = store
        self.key = key
        self.max_size = max_size

    async def items(self) -> list[dict[str, Any]]:
        value = await self.store.get(self.key, [])
        return value if isinstance(value, list) else []

    async def recent(self, count: int) -> list[dict[str, Any]]:
        if count <= 0:
            return []
        return (await self.items())[-count:]

    async def size(self) -> int:
        return len(await self.items())

    def _trim(self, entries: list[dict[str, Any]]) -> None:
        if len(entries) > self.max_size:
            del entries[: len(entries) - self.max_size]

    async def append(self, entry: dict[str, Any]) -> None:
        async with self.store.lock(self.key):
            entries = await self.items()
            entries.append(entry)
            self._trim(entries)
            await self.store.set(self.key, entries)

    async def upsert(self, entry: dict[str, Any], match: Callable[[dict[str, Any]], bool]) -> None:
        """Replace the first entry ``match`` accepts, or append a new one."""
        async with self.store.lock(self.key):
            entries = await self.items()
            for i, existing in enumerate(entries):
                if match(existing):
                    entries[i] = entry
                    break
            else:
                entries.append(entry)
                self._trim(entries)
            await self.store.set(self.key, entries)

    async def remove_where(self, match: Callable[[dict[str, Any]], bool]) -> int:
        async with self.store.lock(self.key):
            entries = await self.items()
            kept = [e for e in entries if not match(e)]
            removed = len(entries) - len(kept)
            if removed:
                await self.store.set(self.key, kept)
            return removed


class LeakLog(CappedCollection):
    """Leak records, at most one per tab."""

    async def upsert_leak(self, leak: LeakRecord) -> None:
        await self.upsert(leak.to_dict(), lambda e: e.get("tabId") == leak.tab_id)

    async def remove(self, tab_id: int) -> bool:
        return await self.remove_where(lambda e: e.get("tabId") == tab_id) > 0

    async def all(self) -> list[LeakRecord]:
        leaks = []
        for entry in await self.items():
            try:
                leaks.append(LeakRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                log(f"Skipping malformed leak record: {e}")
        return leaks


class WatchdogStorage:
    """The named collections and documents behind the watchdog."""

    def __init__(self, store: JsonStore, cfg: Config = DEFAULT_CONFIG) -> None:
        self.store = store
        self.patterns = CappedCollection(store, KEY_PATTERNS, cfg.max_patterns)
        self.snapshots = CappedCollection(store, KEY_SNAPSHOTS, cfg.max_snapshots)
        self.access_patterns = CappedCollection(store, KEY_ACCESS_PATTERNS, cfg.max_access_patterns)
        self.leaks = LeakLog(store, KEY_LEAKS, cfg.max_leaks)

    async def get_usage_patterns(self, limit: int = DEF_PATTERN_CACHE) -> list[UsagePattern]:
        return [UsagePattern.from_dict(p) for p in await self.patterns.recent(limit)]

    async def get_snapshots(self, count: int = 100) -> list[dict[str, Any]]:
        return await self.snapshots.recent(count)

    async def save_snapshot(self, snapshot: MemorySnapshot) -> None:
        await self.snapshots.append(snapshot.to_dict())
        await self.store.set(KEY_LAST_SNAPSHOT, snapshot.timestamp)

    # sessions
    async def get_sessions(self) -> list[TabSession]:
        raw = await self.store.get(KEY_SESSIONS, [])
        if not isinstance(raw, list):
            return []
        return [TabSession.from_dict(s) for s in raw]

    async def _write_sessions(self, sessions: list[TabSession]) -> None:
        await self.store.set(KEY_SESSIONS, [s.to_dict() for s in sessions])

    async def save_session(self, session: TabSession) -> None:
        async with self.store.lock(KEY_SESSIONS):
            sessions = await self.get_sessions()
            sessions.append(session)
            await self._write_sessions(sessions)

    async def delete_session(self, session_id: str) -> None:
        async with self.store.lock(KEY_SESSIONS):
            sessions = [s for s in await self.get_sessions() if s.id != session_id]
            await self._write_sessions(sessions)

    async def update_session(self, session: TabSession) -> bool:
        async with self.store.lock(KEY_SESSIONS):
            sessions = await self.get_sessions()
            for i, existing in enumerate(sessions):
                if existing.id == session.id:
                    sessions[i] = session
                    await self._write_sessions(sessions)
                    return True
            return False

    # settings
    async def get_settings(self) -> AppSettings:
        stored = await self.store.get(KEY_SETTINGS, {})
        if not isinstance(stored, dict):
            stored = {}
        try:
            return AppSettings.from_dict(stored)
        except (TypeError, ValueError) as e:
            log(f"Stored settings unreadable, using defaults: {e}")
            return AppSettings()

    async def update_settings(self, updates: dict[str, Any]) -> AppSettings:
        async with self.store.lock(KEY_SETTINGS):
            current = (await self.get_settings()).to_dict()
            for key, value in updates.items():
                if key == "notifications" and isinstance(value, dict):
                    current["notifications"].update(value)
                else:
                    current[key] = value
            settings = AppSettings.from_dict(current)
            await self.store.set(KEY_SETTINGS, settings.to_dict())
            return settings

    async def clear_all(self) -> None:
        await self.store.clear()


# ──────────────────────────────  Memory estimator  ──────────────────────────
def _host_in(host: str, sites: Iterable[str]) -> bool:
    return any(host == site or host.endswith("." + site) for site in sites)


def estimate_memory_from_tab(tab: TabDescriptor) -> float:
    """Heuristic MB estimate; each site list adds its bonus at most once."""
    estimate = BASE_ESTIMATE_MB
    try:
        host = (urlparse(tab.url or "").hostname or "").lower()
    except ValueError:
        host = ""
    if _host_in(host, HEAVY_SITES):
        estimate += HEAVY_SITE_BONUS
    if _host_in(host, MEDIUM_SITES):
        estimate += MEDIUM_SITE_BONUS
    if _host_in(host, DEV_SITES):
        estimate += DEV_SITE_BONUS
    if tab.active:
        estimate += ACTIVE_TAB_BONUS
    if tab.pinned:
        estimate += PINNED_TAB_BONUS
    return float(estimate)


class MemoryEstimator:
    """Precise host reading when available, URL heuristic otherwise."""

    def __init__(self, host: TabHost | None = None) -> None:
        self.host = host

    async def estimate(self, tab: TabDescriptor) -> float:
        if self.host is not None:
            try:
                precise = await self.host.precise_memory_reading(tab.id)
            except Exception as e:  # host read is best effort
                log(f"Precise memory read failed for tab {tab.id}: {e}")
                precise = None
            if precise is not None and math.isfinite(precise):
                return round(max(precise, 0.0), 2)
        return estimate_memory_from_tab(tab)


# ─────────────────────────  History & leak detection  ───────────────────────
@dataclass
class TabTracker:
    history: deque[float] = field(default_factory=lambda: deque(maxlen=DEF_HISTORY_LEN))

    def add(self, sample_mb: float) -> None:
        self.history.append(sample_mb)


class HistoryStore:
    """Fixed-capacity ring buffer of samples per tab id."""

    def __init__(self, capacity: int = DEF_HISTORY_LEN) -> None:
        self.capacity = capacity
        self._trackers: dict[int, TabTracker] = {}

    def record_sample(self, tab_id: int, sample_mb: float) -> list[float]:
        trk = self._trackers.get(tab_id)
        if trk is None:
            trk = self._trackers[tab_id] = TabTracker(deque(maxlen=self.capacity))
        trk.add(sample_mb)
        return list(trk.history)

    def get(self, tab_id: int) -> list[float]:
        trk = self._trackers.get(tab_id)
        return list(trk.history) if trk else []

    def discard(self, tab_id: int) -> bool:
        return self._trackers.pop(tab_id, None) is not None

    def tracked_ids(self) -> set[int]:
        return set(self._trackers)

    def clear(self) -> None:
        self._trackers.clear()

    def __len__(self) -> int:
        return len(self._trackers)

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._trackers


def evaluate_growth(
    history: Sequence[float],
    min_samples: int = DEF_HISTORY_MIN,
    threshold: float = DEF_GROWTH_THRESHOLD,
) -> LeakVerdict:
    """
    Monotonicity-ratio test: growing when the count of rising adjacent pairs is
    at least ``len(history) × threshold`` (full length, not pairs).
    """
    samples = list(history)
    n = len(samples)
    if n < min_samples:
        return LeakVerdict.INSUFFICIENT_DATA
    increases = sum(1 for prev, cur in zip(samples, samples[1:]) if cur > prev)
    return LeakVerdict.GROWING if increases >= n * threshold else LeakVerdict.NOT_GROWING


def detect_leak(
    tab: TabSnapshot,
    history: Sequence[float],
    cfg: Config = DEFAULT_CONFIG,
    now: float | None = None,
) -> LeakRecord | None:
    """Return a leak record for a growing window, None otherwise."""
    samples = list(history)
    if evaluate_growth(samples, cfg.history_min, cfg.growth_threshold) is not LeakVerdict.GROWING:
        return None
    span_min = len(samples) * cfg.sample_interval_min
    return LeakRecord(
        tab_id=tab.tab_id,
        title=tab.title,
        url=tab.url,
        growth_rate=(samples[-1] - samples[0]) / span_min,
        memory_history=samples,
        detected_at=time.time() if now is None else now,
        confirmed=True,
    )


# ───────────────────────  Health & domain aggregation  ──────────────────────
def calculate_health_score(tab: TabSnapshot, now: float | None = None, cfg: Config = DEFAULT_CONFIG) -> int:
    now = time.time() if now is None else now
    score = HEALTH_MAX

    # Every full step above the threshold costs points
    if tab.memory_usage_mb > cfg.memory_penalty_threshold:
        steps = math.floor((tab.memory_usage_mb - cfg.memory_penalty_threshold) / cfg.memory_penalty_step)
        score -= min(steps * cfg.memory_penalty_points, cfg.memory_penalty_max)

    hours_idle = max(0.0, (now - tab.last_accessed) / 3600)
    if hours_idle > 1:
        score -= min(math.floor(hours_idle) * cfg.idle_penalty_points, cfg.idle_penalty_max)

    if tab.is_active:
        score += cfg.active_bonus

    return int(max(0, min(HEALTH_MAX, score)))


def calculate_domain_health_score(group: DomainGroup) -> int:
    score = HEALTH_MAX

    if group.total_memory_usage_mb > DOMAIN_CRITICAL_MEMORY:
        score -= 30
    elif group.total_memory_usage_mb > DOMAIN_HIGH_MEMORY:
        score -= 20
    elif group.total_memory_usage_mb > DOMAIN_MEDIUM_MEMORY:
        score -= 10

    if group.tab_count > DOMAIN_HIGH_TAB_COUNT:
        score -= 20
    elif group.tab_count > DOMAIN_MEDIUM_TAB_COUNT:
        score -= 10

    if group.tab_count and group.total_memory_usage_mb / group.tab_count > DOMAIN_HIGH_AVG_MEMORY:
        score -= 15

    return max(0, min(HEALTH_MAX, score))


def group_tabs_by_domain(tabs: Iterable[TabSnapshot]) -> list[DomainGroup]:
    by_domain: dict[str, list[TabSnapshot]] = {}
    for tab in tabs:
        by_domain.setdefault(tab.domain, []).append(tab)

    groups = []
    for domain, members in by_domain.items():
        group = DomainGroup(
            domain=domain,
            tabs=members,
            total_memory_usage_mb=round(sum(t.memory_usage_mb for t in members), 2),
            tab_count=len(members),
        )
        group.health_score = calculate_domain_health_score(group)
        groups.append(group)
    return groups


def find_duplicate_tabs(tabs: Iterable[TabSnapshot]) -> dict[str, list[TabSnapshot]]:
    by_url: dict[str, list[TabSnapshot]] = {}
    for tab in tabs:
        if not tab.url:
            continue
        normalized = tab.url[:-1] if tab.url.endswith("/") else tab.url
        by_url.setdefault(normalized, []).append(tab)
    return {url: group for url, group in by_url.items() if len(group) > 1}


def get_top_memory_consumers(tabs: Iterable[TabSnapshot], count: int = 5) -> list[TabSnapshot]:
    return sorted(tabs, key=lambda t: t.memory_usage_mb, reverse=True)[:count]


def get_idle_tabs(tabs: Iterable[TabSnapshot], idle_minutes: float = 30, now: float | None = None) -> list[TabSnapshot]:
    cutoff = (time.time() if now is None else now) - idle_minutes * 60
    return [t for t in tabs if not t.is_active and t.last_accessed < cutoff]


# ─────────────────────────────  Usage predictor  ────────────────────────────
@dataclass(frozen=True)
class PredictionFactors:
    is_active: bool
    recency: float
    frequency: float
    time_of_day: float
    day_of_week: float


@dataclass(frozen=True)
class ReasoningRule:
    predicate: Callable[[PredictionFactors], bool]
    clause: str


def default_reasoning_rules() -> list[ReasoningRule]:
    return [
        ReasoningRule(lambda f: f.is_active, "currently active"),
        ReasoningRule(lambda f: not f.is_active and f.recency > 0.8, "accessed very recently"),
        ReasoningRule(lambda f: f.recency < 0.2, "not accessed for a long time"),
        ReasoningRule(lambda f: f.frequency >= 0.8, "frequently visited domain"),
        ReasoningRule(lambda f: f.frequency < 0.3, "rarely visited domain"),
        ReasoningRule(lambda f: f.time_of_day > 0.7, "usually open at this hour"),
        ReasoningRule(lambda f: f.day_of_week > 0.7, "usually open on this weekday"),
    ]


class ReasoningStrategy:
    """Ordered predicate → clause rules that explain a prediction."""

    NEUTRAL = "No clear usage pattern yet."

    def __init__(self, rules: Iterable[ReasoningRule] | None = None) -> None:
        self.rules = list(rules) if rules is not None else default_reasoning_rules()

    def explain(self, factors: PredictionFactors) -> str:
        clauses = [rule.clause for rule in self.rules if rule.predicate(factors)]
        if not clauses:
            return self.NEUTRAL
        sentence = ", ".join(clauses)
        return sentence[0].upper() + sentence[1:] + "."


def classify_confidence(probability: float, cfg: Config = DEFAULT_CONFIG) -> str:
    if probability > cfg.high_confidence:
        return "high"
    if probability > cfg.medium_confidence:
        return "medium"
    return "low"


class UsagePredictor:
    """
    Keep/discard probability per tab from recency, domain frequency and the
    hour/weekday distribution of past visits to the tab's domain.

    Works from an in-memory cache of recent usage patterns; with no history
    every pattern-based factor sits at a neutral 0.5.
    """

    def __init__(
        self,
        source: CappedCollection | None = None,
        cfg: Config = DEFAULT_CONFIG,
        reasoning: ReasoningStrategy | None = None,
    ) -> None:
        self.source = source
        self.cfg = cfg
        self.reasoning = reasoning or ReasoningStrategy()
        self._patterns: list[UsagePattern] = []
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def patterns(self) -> list[UsagePattern]:
        return list(self._patterns)

    async def initialize(self) -> None:
        if self.source is None:
            self._initialized = True
            return
        try:
            raw = await self.source.recent(self.cfg.pattern_cache_size)
            self._patterns = [UsagePattern.from_dict(p) for p in raw]
            self._initialized = True
            log(f"Usage predictor initialized with {len(self._patterns)} patterns")
        except Exception as e:  # degrade to neutral scores, retry on next use
            log(f"Failed to initialize usage predictor: {e}")
            self._patterns = []
            self._initialized = False

    refresh = initialize

    def load(self, patterns: Iterable[UsagePattern]) -> None:
        self._patterns = list(patterns)[-self.cfg.pattern_cache_size :]
        self._initialized = True

    def observe(self, pattern: UsagePattern) -> None:
        self._patterns.append(pattern)
        if len(self._patterns) > self.cfg.pattern_cache_size:
            del self._patterns[: len(self._patterns) - self.cfg.pattern_cache_size]

    # factor scores
    def recency_score(self, tab: TabSnapshot, now: float) -> float:
        if tab.is_active:
            return 1.0
        hours = max(0.0, (now - tab.last_accessed) / 3600)
        return math.exp(-self.cfg.decay_rate * hours)

    def frequency_score(self, domain: str, domain_patterns: Sequence[UsagePattern] | None = None) -> float:
        if not self._patterns:
            return 0.5
        if domain_patterns is None:
            domain_patterns = self._for_domain(domain)
        fraction = len(domain_patterns) / len(self._patterns)
        return min(1.0, math.sqrt(fraction * 10))

    def time_of_day_score(self, domain: str, hour: int, domain_patterns: Sequence[UsagePattern] | None = None) -> float:
        if domain_patterns is None:
            domain_patterns = self._for_domain(domain)
        if len(domain_patterns) < MIN_DOMAIN_PATTERNS:
            return 0.5
        nearby = 0
        for p in domain_patterns:
            diff = abs(p.hour_of_day - hour)
            if min(diff, 24 - diff) <= NEARBY_HOURS:
                nearby += 1
        return min(1.0, nearby / len(domain_patterns) * 2)

    def day_of_week_score(self, domain: str, day: int, domain_patterns: Sequence[UsagePattern] | None = None) -> float:
        if domain_patterns is None:
            domain_patterns = self._for_domain(domain)
        if len(domain_patterns) < MIN_DOMAIN_PATTERNS:
            return 0.5
        same_day = sum(1 for p in domain_patterns if p.day_of_week == day)
        return min(1.0, same_day / len(domain_patterns) * 2)

    def _for_domain(self, domain: str) -> list[UsagePattern]:
        return [p for p in self._patterns if p.domain == domain]

    def predict(self, tabs: Iterable[TabSnapshot], now: float | None = None) -> list[Prediction]:
        now = time.time() if now is None else now
        dt = datetime.fromtimestamp(now)
        hour, day = dt.hour, day_of_week(dt)
        weights = self.cfg.weights

        by_domain: dict[str, list[UsagePattern]] = {}
        for p in self._patterns:
            by_domain.setdefault(p.domain, []).append(p)

        predictions = []
        for tab in tabs:
            domain_patterns = by_domain.get(tab.domain, [])
            factors = PredictionFactors(
                is_active=tab.is_active,
                recency=self.recency_score(tab, now),
                frequency=self.frequency_score(tab.domain, domain_patterns),
                time_of_day=self.time_of_day_score(tab.domain, hour, domain_patterns),
                day_of_week=self.day_of_week_score(tab.domain, day, domain_patterns),
            )
            probability = (
                factors.recency * weights.recency
                + factors.frequency * weights.frequency
                + factors.time_of_day * weights.time_of_day
                + factors.day_of_week * weights.day_of_week
            )
            probability = max(0.0, min(1.0, probability))
            predictions.append(
                Prediction(
                    tab_id=tab.tab_id,
                    title=tab.title,
                    probability=probability,
                    suggest_keep=probability > self.cfg.keep_threshold,
                    confidence=classify_confidence(probability, self.cfg),
                    reasoning=self.reasoning.explain(factors),
                )
            )
        return predictions

    async def get_predictions(self, tabs: Iterable[TabSnapshot], now: float | None = None) -> list[Prediction]:
        if not self._initialized:
            await self.initialize()
        return self.predict(tabs, now)


# ─────────────────────────────  Notifications  ──────────────────────────────
Notifier = Callable[[str, str, int], None]

URGENCY = {0: "low", 1: "normal", 2: "critical"}


def notify(title: str, message: str, priority: int = 1) -> None:
    """
    Fire a desktop notification: AppleScript on macOS, notify-send elsewhere.
    Never raises; failures only reach the log.
    """
    try:
        if sys.platform == "darwin":
            script = f'display notification "{esc(message)}" with title "{esc(title)}"'
            subprocess.run(["osascript", "-e", script], check=False, timeout=5)
        elif shutil.which("notify-send"):
            urgency = URGENCY.get(priority, "normal")
            subprocess.run(["notify-send", "-u", urgency, title, message], check=False, timeout=5)
        else:
            log(f"[notify] {title}: {message}")
    except (subprocess.TimeoutExpired, OSError) as e:
        log(f"Notification failed ({title}): {e}")


def notify_memory_leak(leak: LeakRecord, settings: AppSettings, notifier: Notifier = notify) -> bool:
    if not settings.notifications.enabled or not settings.notifications.leak_alerts:
        return False
    latest = leak.memory_history[-1] if leak.memory_history else 0.0
    notifier(
        "⚠️ Memory Leak Detected",
        f'"{leak.title}" is consuming {latest:.1f} MB and growing.',
        2,
    )
    return True


def notify_high_memory(tab: TabSnapshot, memory_mb: float, settings: AppSettings, notifier: Notifier = notify) -> bool:
    if not settings.notifications.enabled:
        return False
    if memory_mb < settings.notifications.high_memory_threshold:
        return False
    notifier("High Memory Usage Alert", f'"{tab.title}" is using {memory_mb:.1f} MB of memory.', 1)
    return True


def notify_total_memory(total_mb: float, tab_count: int, settings: AppSettings, notifier: Notifier = notify) -> bool:
    if not settings.notifications.enabled or total_mb < TOTAL_MEMORY_ALERT_MB:
        return False
    notifier(
        "Total Browser Memory Usage High",
        f"{tab_count} tabs are using a total of {total_mb / 1024:.1f} GB memory. Consider closing some tabs.",
        1,
    )
    return True


# ───────────────────────────────  Tab hosts  ────────────────────────────────
class TabHost(Protocol):
    async def list_live_resources(self) -> list[TabDescriptor]: ...

    async def precise_memory_reading(self, tab_id: int) -> float | None: ...

    async def system_available_memory(self) -> float: ...


class FileTabHost:
    """Tabs from a JSON file kept current by a browser bridge; memory via psutil."""

    def __init__(self, tabs_file: Path) -> None:
        self.tabs_file = tabs_file
        self._pids: dict[int, int] = {}

    async def list_live_resources(self) -> list[TabDescriptor]:
        raw = json.loads(self.tabs_file.read_text())
        entries = raw.get("tabs", []) if isinstance(raw, dict) else raw
        tabs = []
        for entry in entries:
            try:
                tabs.append(TabDescriptor.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                log(f"Skipping malformed tab entry {entry!r}: {e}")
        self._pids = {t.id: t.pid for t in tabs if t.pid}
        return tabs

    async def precise_memory_reading(self, tab_id: int) -> float | None:
        pid = self._pids.get(tab_id)
        if not pid:
            return None
        try:
            proc = psutil.Process(pid)
            try:
                mem = proc.memory_full_info().uss
            except psutil.AccessDenied:
                mem = proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
            return None
        return round(mem / 1024 / 1024, 2)

    async def system_available_memory(self) -> float:
        return psutil.virtual_memory().available / 1024 / 1024


# ───────────────────────────── Main watchdog  ───────────────────────────────
class Watchdog:
    """
    Periodic sampler and lifecycle event router.

    Owns the per-tab history arena and the latest snapshot set. Passes are
    serialized: a tick that arrives while one is in flight is skipped.
    """

    def __init__(
        self,
        host: TabHost,
        storage: WatchdogStorage,
        cfg: Config = DEFAULT_CONFIG,
        notifier: Notifier = notify,
        predictor: UsagePredictor | None = None,
    ) -> None:
        self.host = host
        self.storage = storage
        self.cfg = cfg
        self.notifier = notifier
        self.estimator = MemoryEstimator(host)
        self.history = HistoryStore(cfg.history_size)
        self.predictor = predictor or UsagePredictor(storage.patterns, cfg)
        self.ticks_skipped = 0
        self._snapshots: list[TabSnapshot] = []
        self._known_ids: set[int] = set()
        self._active_tab: int | None = None
        self._seeded = False
        self._high_memory_alerted: set[int] = set()
        self._total_alerted = False
        self._ticking = False
        self._running = False
        self._task: asyncio.Task | None = None

    # loop control
    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop())
        log(f"Tab Watchdog v{__version__} started: interval={self.cfg.sample_interval_min}min, history={self.cfg.history_size}, signal={self.cfg.history_signal}")

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log("Tab Watchdog stopped")

    async def _loop(self) -> None:
        while self._running:
            await self.tick()
            await asyncio.sleep(self.cfg.sample_interval_min * 60)

    async def run(self, iterations: int | None = None) -> None:
        count = 0
        while iterations is None or count < iterations:
            await self.tick()
            count += 1
            if iterations is None or count < iterations:
                await asyncio.sleep(self.cfg.sample_interval_min * 60)

    # periodic pass
    async def tick(self) -> bool:
        """Run one sampling pass; False when skipped because one is in flight."""
        if self._ticking:
            self.ticks_skipped += 1
            log("Previous sampling pass still running; tick skipped")
            return False
        self._ticking = True
        try:
            await self._sample_pass()
        finally:
            self._ticking = False
        return True

    async def _sample_pass(self) -> None:
        try:
            tabs = await self.host.list_live_resources()
        except Exception as e:  # transient: nothing written this pass
            log(f"Tab enumeration failed, pass skipped: {e}")
            return
        now = time.time()

        await self._route_lifecycle(tabs, now)
        settings = await self.storage.get_settings()

        system_mb: float | None = None
        if self.cfg.history_signal == "system":
            try:
                system_mb = await self.host.system_available_memory()
            except Exception as e:
                log(f"System memory read failed, history not sampled this pass: {e}")

        snapshots = []
        for tab in tabs:
            memory_mb = await self.estimator.estimate(tab)
            snap = TabSnapshot.from_descriptor(tab, memory_mb)
            snapshots.append(snap)
            await self._check_high_memory(snap, settings)

            if not is_trackable(tab):
                continue
            sample = memory_mb if self.cfg.history_signal == "per_tab" else system_mb
            if sample is None:
                continue
            history = self.history.record_sample(tab.id, sample)
            leak = detect_leak(snap, history, self.cfg, now)
            if leak is not None:
                await self._handle_leak(leak, settings)

        snapshots.sort(key=lambda s: s.memory_usage_mb, reverse=True)
        self._snapshots = snapshots
        await self._check_total_memory(snapshots, settings)
        await self._persist_snapshot(snapshots, now)

    async def _route_lifecycle(self, tabs: list[TabDescriptor], now: float) -> None:
        live_ids = {t.id for t in tabs}
        for tab_id in (self._known_ids | self.history.tracked_ids()) - live_ids:
            await self.on_tab_removed(tab_id)
        for tab in tabs:
            if tab.id not in self._known_ids:
                await self.on_tab_created(tab.id)
        active = next((t for t in tabs if t.active), None)
        if not self._seeded:
            # focus held at startup is not a visit
            self._seeded = True
            self._active_tab = active.id if active is not None else None
        elif active is not None and active.id != self._active_tab:
            await self.on_tab_activated(active.id, active.url, now)

    async def _handle_leak(self, leak: LeakRecord, settings: AppSettings) -> None:
        msg = f"Potential leak in tab {leak.tab_id} ({leak.url}): growth≈{leak.growth_rate:.1f} MB/min, history={leak.memory_history}"
        print(f"[LEAK] {msg}")
        log(msg)
        try:
            await self.storage.leaks.upsert_leak(leak)
        except StorageError as e:
            log(f"Leak for tab {leak.tab_id} not recorded: {e}")
            return
        notify_memory_leak(leak, settings, self.notifier)

    async def _check_high_memory(self, tab: TabSnapshot, settings: AppSettings) -> None:
        if tab.memory_usage_mb < settings.notifications.high_memory_threshold:
            self._high_memory_alerted.discard(tab.tab_id)
            return
        if tab.tab_id in self._high_memory_alerted:
            return
        if notify_high_memory(tab, tab.memory_usage_mb, settings, self.notifier):
            self._high_memory_alerted.add(tab.tab_id)

    async def _check_total_memory(self, snapshots: list[TabSnapshot], settings: AppSettings) -> None:
        total = sum(s.memory_usage_mb for s in snapshots)
        if total < TOTAL_MEMORY_ALERT_MB:
            self._total_alerted = False
        elif not self._total_alerted:
            self._total_alerted = notify_total_memory(total, len(snapshots), settings, self.notifier)

    async def _persist_snapshot(self, snapshots: list[TabSnapshot], now: float) -> None:
        snapshot = MemorySnapshot(
            timestamp=now,
            tabs=snapshots,
            total_memory_usage_mb=round(sum(s.memory_usage_mb for s in snapshots), 2),
            tab_count=len(snapshots),
        )
        try:
            await self.storage.save_snapshot(snapshot)
        except StorageError as e:
            log(f"Snapshot dropped: {e}")

    # lifecycle events
    async def on_tab_created(self, tab_id: int) -> None:
        self._known_ids.add(tab_id)
        self.history.discard(tab_id)

    async def on_tab_activated(self, tab_id: int, url: str | None = None, now: float | None = None) -> UsagePattern:
        now = time.time() if now is None else now
        self._active_tab = tab_id
        if url is None:
            url = next((s.url for s in self._snapshots if s.tab_id == tab_id), "")
        pattern = UsagePattern.at(tab_id, get_domain(url), now)

        try:
            await self.storage.access_patterns.append(AccessEntry(tab_id, now).to_dict())
        except StorageError as e:
            log(f"Access entry dropped for tab {tab_id}: {e}")
        try:
            await self.storage.patterns.append(pattern.to_dict())
        except StorageError as e:
            log(f"Usage pattern dropped for tab {tab_id}: {e}")
        self.predictor.observe(pattern)
        return pattern

    async def on_tab_removed(self, tab_id: int) -> None:
        self.history.discard(tab_id)
        self._known_ids.discard(tab_id)
        self._high_memory_alerted.discard(tab_id)
        if self._active_tab == tab_id:
            self._active_tab = None
        try:
            await self.storage.leaks.remove(tab_id)
        except StorageError as e:
            log(f"Leak record for removed tab {tab_id} not cleared: {e}")

    # consumer API
    def get_current_snapshots(self) -> list[TabSnapshot]:
        return list(self._snapshots)

    async def get_predictions(self, snapshots: Iterable[TabSnapshot] | None = None) -> list[Prediction]:
        return await self.predictor.get_predictions(self._snapshots if snapshots is None else snapshots)

    def get_health_score(self, snapshot: TabSnapshot) -> int:
        return calculate_health_score(snapshot, cfg=self.cfg)

    def get_domain_groups(self, snapshots: Iterable[TabSnapshot] | None = None) -> list[DomainGroup]:
        return group_tabs_by_domain(self._snapshots if snapshots is None else snapshots)

    async def get_active_leaks(self) -> list[LeakRecord]:
        return await self.storage.leaks.all()

    async def dismiss_leak(self, tab_id: int) -> bool:
        return await self.storage.leaks.remove(tab_id)


# ─────────────────────────────────  Report  ─────────────────────────────────
async def build_report(watchdog: Watchdog, top: int = 10) -> str:
    snapshots = watchdog.get_current_snapshots()
    settings = await watchdog.storage.get_settings()
    total = sum(s.memory_usage_mb for s in snapshots)
    lines = [f"Tab Watchdog v{__version__}", "─" * 40, f"{len(snapshots)} tabs, {format_memory(total)} total", ""]

    lines.append("Top memory consumers:")
    for snap in get_top_memory_consumers(snapshots, top):
        health = f"  health={watchdog.get_health_score(snap):3d}" if settings.show_health_scores else ""
        lines.append(f"  {format_memory(snap.memory_usage_mb):>10}{health}  [{snap.tab_id}] {snap.title}")

    lines += ["", "Domains:"]
    for group in sorted(watchdog.get_domain_groups(), key=lambda g: g.total_memory_usage_mb, reverse=True):
        lines.append(f"  {group.domain:<30} tabs={group.tab_count:<3} {format_memory(group.total_memory_usage_mb):>10}  health={group.health_score}")

    lines += ["", "Keep predictions:"]
    for pred in sorted(await watchdog.get_predictions(), key=lambda p: p.probability):
        verdict = "keep" if pred.suggest_keep else "reclaim"
        lines.append(f"  {pred.probability:.2f} {verdict:<7} ({pred.confidence}) [{pred.tab_id}] {pred.title}: {pred.reasoning}")

    leaks = await watchdog.get_active_leaks()
    if leaks:
        lines += ["", "Active leaks:"]
        for leak in leaks:
            lines.append(f"  [{leak.tab_id}] {leak.title}: {leak.growth_rate:+.1f} MB/min")

    idle = get_idle_tabs(snapshots, settings.auto_hibernate_idle_minutes)
    if idle:
        lines += ["", f"Idle > {settings.auto_hibernate_idle_minutes} min (hibernation candidates):"]
        lines += [f"  [{t.tab_id}] {t.title}" for t in idle]

    dups = find_duplicate_tabs(snapshots)
    if dups:
        lines += ["", "Duplicates:"]
        lines += [f"  {url} ×{len(group)}" for url, group in dups.items()]
    return "\n".join(lines)


async def save_current_session(watchdog: Watchdog, name: str) -> TabSession:
    tabs = await watchdog.host.list_live_resources()
    session = TabSession(
        id=uuid.uuid4().hex[:12],
        name=name,
        created_at=time.time(),
        tabs=[SavedTab(t.url, t.title or "Untitled", t.pinned) for t in tabs if is_trackable(t)],
    )
    await watchdog.storage.save_session(session)
    return session


# ────────────────────────────  CLI / argparse  ──────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    epilog = """
LEAK DETECTION:
Every --interval minutes each tab's memory is appended to a window of the last
--history samples. Once at least --min-history samples exist, the tab is
flagged when the number of rising samples reaches --growth-threshold × window
length. Growth rate is (last - first) / (window × interval) MB/min.

HEALTH & PREDICTIONS:
Tabs score 0–100 (memory above 100 MB and idle hours cost points, focus earns
a bonus). Keep probability blends recency, domain frequency, time-of-day and
day-of-week usage with --weights.

TAB SOURCE:
--tabs-file is a JSON list of tabs (id, url, title, active, pinned, discarded,
lastAccessed, pid). With a pid the renderer's memory is read via psutil.
"""
    p = argparse.ArgumentParser(
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Watch browser tabs for memory growth, score their health and predict which to keep.",
        epilog=epilog,
    )

    p.add_argument("--version", action="version", version=f"Tab Watchdog v{__version__}")

    mg = p.add_mutually_exclusive_group()
    mg.add_argument("--once", action="store_true", help="Run one sampling pass and print a report")
    mg.add_argument("--save-session", metavar="NAME", help="Save the current tabs as a named session")
    mg.add_argument("--list-sessions", action="store_true", help="List saved sessions")
    mg.add_argument("--clear-leaks", action="store_true", help="Forget all recorded leaks")

    p.add_argument("--tabs-file", type=Path, default=DEF_TABS_FILE, help=f"JSON tab list written by the browser bridge. (default: {DEF_TABS_FILE})")
    p.add_argument("--store", type=Path, default=DEF_STORE_PATH, help=f"JSON store for patterns, snapshots, leaks and settings. (default: {DEF_STORE_PATH})")

    # Leak-detector knobs
    p.add_argument("--interval", type=float, default=DEF_SAMPLE_INT_MIN, help=f"Sampling interval in minutes. (default: {DEF_SAMPLE_INT_MIN})")
    p.add_argument("--history", type=int, default=DEF_HISTORY_LEN, help=f"Samples kept per tab. (default: {DEF_HISTORY_LEN})")
    p.add_argument("--min-history", type=int, default=DEF_HISTORY_MIN, help=f"Samples required before the growth test runs. (default: {DEF_HISTORY_MIN})")
    p.add_argument("--growth-threshold", type=float, default=DEF_GROWTH_THRESHOLD, help=f"Share of rising samples that flags a leak. (default: {DEF_GROWTH_THRESHOLD})")
    p.add_argument(
        "--history-signal",
        choices=("per_tab", "system"),
        default="per_tab",
        help="Sample each tab's own estimate (per_tab) or the host-wide available memory (system, legacy). (default: per_tab)",
    )

    # Predictor knobs
    p.add_argument("--decay-rate", type=float, default=DEF_DECAY_RATE, help=f"Recency decay per idle hour. (default: {DEF_DECAY_RATE})")
    p.add_argument(
        "--weights",
        type=float,
        nargs=4,
        metavar=("RECENCY", "FREQ", "HOUR", "DAY"),
        default=[0.35, 0.30, 0.20, 0.15],
        help="Predictor weights; must sum to 1. (default: 0.35 0.30 0.20 0.15)",
    )

    # Capped collections
    p.add_argument("--max-patterns", type=int, default=DEF_MAX_PATTERNS, help=f"Usage patterns kept. (default: {DEF_MAX_PATTERNS})")
    p.add_argument("--max-snapshots", type=int, default=DEF_MAX_SNAPSHOTS, help=f"Memory snapshots kept. (default: {DEF_MAX_SNAPSHOTS})")
    p.add_argument("--max-access-patterns", type=int, default=DEF_MAX_ACCESS_PATTERNS, help=f"Raw access entries kept. (default: {DEF_MAX_ACCESS_PATTERNS})")

    return p


def validate_args(args: argparse.Namespace) -> None:
    if args.interval <= 0:
        sys.exit("Error: --interval must be positive")
    if args.history < 2:
        sys.exit("Error: --history must be at least 2 samples")
    if not 2 <= args.min_history <= args.history:
        sys.exit(f"Error: --min-history must be between 2 and --history ({args.history})")
    if not 0 < args.growth_threshold <= 1:
        sys.exit("Error: --growth-threshold must be in (0, 1]")
    if args.decay_rate < 0:
        sys.exit("Error: --decay-rate must be non-negative")
    if any(w < 0 for w in args.weights) or abs(PredictorWeights(*args.weights).total() - 1.0) > 1e-6:
        sys.exit("Error: --weights must be non-negative and sum to 1")
    if min(args.max_patterns, args.max_snapshots, args.max_access_patterns) < 1:
        sys.exit("Error: collection sizes must be at least 1")


async def run_command(args: argparse.Namespace) -> None:
    cfg = Config.from_args(args)
    storage = WatchdogStorage(JsonStore(args.store), cfg)
    watchdog = Watchdog(FileTabHost(args.tabs_file), storage, cfg)

    if args.once:
        await watchdog.tick()
        print(await build_report(watchdog))
    elif args.save_session:
        session = await save_current_session(watchdog, args.save_session)
        print(f"Saved session {session.name!r} ({session.tab_count} tabs) as {session.id}")
    elif args.list_sessions:
        for session in await storage.get_sessions():
            print(f"{session.id}  {datetime.fromtimestamp(session.created_at):%Y-%m-%d %H:%M}  {session.tab_count:3d} tabs  {session.name}")
    elif args.clear_leaks:
        for leak in await watchdog.get_active_leaks():
            await watchdog.dismiss_leak(leak.tab_id)
        print("Leak records cleared.")
    else:
        print(f"Tab Watchdog v{__version__}")
        print("─" * 40)
        log(f"Monitoring {args.tabs_file} every {cfg.sample_interval_min} min (signal={cfg.history_signal})")
        await watchdog.run()


# ───────────────────────────── entry-point ──────────────────────────────────
def main() -> None:
    args = build_parser().parse_args()
    validate_args(args)

    if not args.tabs_file.exists() and not args.list_sessions and not args.clear_leaks:
        sys.exit(f"Error: tab list {args.tabs_file} not found (is the browser bridge running?)")

    try:
        asyncio.run(run_command(args))
    except KeyboardInterrupt:
        print("\nMonitoring stopped.")
        log("Monitoring stopped by user.")
    except (StorageError, OSError, ValueError) as e:
        sys.exit(f"Error: {e}")


if __name__ == "__main__":
    main()
