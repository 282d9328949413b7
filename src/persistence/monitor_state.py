"""
Monitor registry persistence.

The registry is saved as one JSON snapshot after every mutation and restored
at startup only when it was written on the same IST trading day.
"""
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Sequence

from src.engine.errors import PersistenceError
from src.models.monitor_models import MonitorEntry, TriggerStatus
from src.persistence.db import Database
from src.utils.time_utils import now_ist, parse_iso, same_session_day

logger = logging.getLogger("monitor_state")

STATE_KEY = "monitored_symbols"


class StateStore(Protocol):
    async def save(self, snapshot: dict) -> None:
        ...

    async def load(self) -> Optional[dict]:
        ...

    async def clear(self) -> None:
        ...


class DatabaseStateStore:
    """Snapshot kept as a single JSON row in the monitor_state table."""

    def __init__(self, db: Database, key: str = STATE_KEY):
        self.db = db
        self.key = key

    async def save(self, snapshot: dict) -> None:
        try:
            await self.db.save_state(self.key, json.dumps(snapshot), snapshot.get("savedAt"))
        except Exception as e:
            raise PersistenceError(f"Could not save {self.key}: {e}") from e

    async def load(self) -> Optional[dict]:
        try:
            payload = await self.db.load_state(self.key)
        except Exception as e:
            raise PersistenceError(f"Could not load {self.key}: {e}") from e
        if payload is None:
            return None
        try:
            return json.loads(payload)
        except ValueError as e:
            raise PersistenceError(f"Corrupt snapshot for {self.key}: {e}") from e

    async def clear(self) -> None:
        try:
            await self.db.delete_state(self.key)
        except Exception as e:
            raise PersistenceError(f"Could not clear {self.key}: {e}") from e


class JsonFileStateStore:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    async def save(self, snapshot: dict) -> None:
        tmp = f"{self.path}.tmp"
        try:
            with self._lock:
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(tmp, "w", encoding="utf-8") as fh:
                    json.dump(snapshot, fh)
                os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(f"Could not write {self.path}: {e}") from e

    async def load(self) -> Optional[dict]:
        with self._lock:
            if not os.path.exists(self.path):
                return None
            try:
                with open(self.path, "r", encoding="utf-8") as fh:
                    return json.load(fh)
            except (OSError, ValueError) as e:
                raise PersistenceError(f"Could not read {self.path}: {e}") from e

    async def clear(self) -> None:
        with self._lock:
            try:
                if os.path.exists(self.path):
                    os.remove(self.path)
            except OSError as e:
                raise PersistenceError(f"Could not remove {self.path}: {e}") from e


class InMemoryStateStore:
    def __init__(self, snapshot: Optional[dict] = None):
        self.snapshot = snapshot

    async def save(self, snapshot: dict) -> None:
        self.snapshot = json.loads(json.dumps(snapshot))

    async def load(self) -> Optional[dict]:
        return self.snapshot

    async def clear(self) -> None:
        self.snapshot = None


@dataclass
class RestoredState:
    entries: List[MonitorEntry] = field(default_factory=list)
    monitoring_active: bool = False
    saved_at: Optional[datetime] = None


class MonitorStatePersistence:
    """Save/restore adapter between the registry and a StateStore.

    Never raises: store failures are logged and the in-memory registry keeps
    running; a failed restore yields an empty registry.
    """

    def __init__(self, store: StateStore, clock: Callable[[], datetime] = now_ist):
        self.store = store
        self.clock = clock

    def snapshot(self, entries: Sequence[MonitorEntry], monitoring_active: bool = False) -> dict:
        return {
            "symbols": [e.to_dict() for e in entries],
            "monitoringActive": bool(monitoring_active),
            "savedAt": self.clock().isoformat(),
        }

    async def save(self, entries: Sequence[MonitorEntry], monitoring_active: bool = False) -> bool:
        try:
            await self.store.save(self.snapshot(entries, monitoring_active))
            logger.debug("Saved %d monitored symbols", len(entries))
            return True
        except PersistenceError as e:
            logger.warning("Failed to save monitored symbols: %s", e)
            return False

    async def restore(self, now: Optional[datetime] = None) -> RestoredState:
        now = now or self.clock()
        try:
            data = await self.store.load()
        except PersistenceError as e:
            logger.warning("Failed to load monitored symbols: %s", e)
            return RestoredState()
        if not data:
            return RestoredState()
        if not isinstance(data, dict):
            logger.warning("Discarding malformed monitor snapshot of type %s", type(data).__name__)
            await self.clear()
            return RestoredState()

        try:
            saved_at = parse_iso(data.get("savedAt"))
        except (TypeError, ValueError, OverflowError) as e:
            logger.warning("Unreadable savedAt %r in monitor snapshot: %s", data.get("savedAt"), e)
            saved_at = None
        if saved_at is None or not same_session_day(saved_at, now):
            logger.info("Discarding monitored symbols saved at %s (not today)", data.get("savedAt"))
            await self.clear()
            return RestoredState()

        entries: List[MonitorEntry] = []
        seen = set()
        symbols = data.get("symbols") or []
        if not isinstance(symbols, list):
            logger.warning("Discarding monitor snapshot with non-list symbols")
            symbols = []
        for raw in symbols:
            try:
                entry = MonitorEntry.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed monitor entry %s: %s", raw.get("symbol") if isinstance(raw, dict) else raw, e)
                continue
            if entry.trigger_status == TriggerStatus.EXITED or entry.symbol in seen:
                continue
            # force a fresh observation instead of trusting a stale snapshot
            entry.last_update = None
            entry.last_hma_update = None
            entry.previous_price_above_hma = None
            entry.crossover_signal_time = None
            seen.add(entry.symbol)
            entries.append(entry)

        logger.info("Restored %d monitored symbols from %s", len(entries), saved_at.isoformat())
        return RestoredState(entries=entries, monitoring_active=bool(data.get("monitoringActive")), saved_at=saved_at)

    async def clear(self) -> bool:
        try:
            await self.store.clear()
            return True
        except PersistenceError as e:
            logger.warning("Failed to clear monitored symbols: %s", e)
            return False
