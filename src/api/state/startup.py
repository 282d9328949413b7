"""Capture and expose startup diagnostic events."""
from typing import Dict, List

from src.utils.time_utils import now_ist

_startup_events: List[Dict] = []


def record_startup_event(kind: str, message: str, **extra):
    _startup_events.append({
        "ts": now_ist().isoformat(),
        "kind": kind,
        "message": message,
        **extra,
    })


def get_startup_events(limit: int = 100):
    return _startup_events[-limit:]


def clear_startup_events():
    _startup_events.clear()

__all__ = ["record_startup_event", "get_startup_events", "clear_startup_events"]
