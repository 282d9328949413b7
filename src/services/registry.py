import logging
from typing import Dict, Iterable, List, Optional

from src.engine.errors import DuplicateInstrumentError
from src.models.monitor_models import MonitorEntry

logger = logging.getLogger("registry")


class MonitorRegistry:
    """Ordered set of MonitorEntry records, unique by symbol."""

    def __init__(self, entries: Iterable[MonitorEntry] = ()):
        self._entries: Dict[str, MonitorEntry] = {}
        for entry in entries:
            self.add(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._entries

    def add(self, entry: MonitorEntry) -> MonitorEntry:
        if entry.symbol in self._entries:
            raise DuplicateInstrumentError(f"{entry.symbol} is already being monitored")
        self._entries[entry.symbol] = entry
        return entry

    def remove(self, entry_id: str) -> Optional[MonitorEntry]:
        entry = self.get(entry_id)
        if entry is not None:
            del self._entries[entry.symbol]
        return entry

    def get(self, entry_id: str) -> Optional[MonitorEntry]:
        for entry in self._entries.values():
            if entry.id == entry_id:
                return entry
        return None

    def entries(self) -> List[MonitorEntry]:
        return list(self._entries.values())

    def symbols(self) -> List[str]:
        return list(self._entries)

    def replace_all(self, entries: Iterable[MonitorEntry]):
        self._entries.clear()
        for entry in entries:
            if entry.symbol in self._entries:
                logger.warning("Dropping duplicate entry for %s", entry.symbol)
                continue
            self._entries[entry.symbol] = entry

    def clear(self):
        self._entries.clear()
