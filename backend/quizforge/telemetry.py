"""Structured telemetry for the user-data layer.

Events are logged as one JSON line each and fanned out to in-process
listeners. Events that carry a ``user_id`` are also kept in a bounded
per-user history so operators can inspect a user's recent migration
activity without a log search.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Deque, Dict, List

logger = logging.getLogger("quizforge.telemetry")

USER_HISTORY_LIMIT = 50
# Users with history kept; the least recently active are evicted first.
HISTORY_MAX_USERS = 1000


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


_listeners: List[Callable[[TelemetryEvent], None]] = []
_history: OrderedDict[str, Deque[TelemetryEvent]] = OrderedDict()
_lock = RLock()


def register_listener(listener: Callable[[TelemetryEvent], None]) -> None:
    with _lock:
        _listeners.append(listener)


def clear_listeners() -> None:
    """Drop listeners and per-user history. Used to reset test state."""
    with _lock:
        _listeners.clear()
        _history.clear()


def recent_events(user_id: str, limit: int = 20) -> List[TelemetryEvent]:
    """Newest-first events recorded for ``user_id``."""
    with _lock:
        events = list(_history.get(user_id, ()))
    events.reverse()
    return events[: max(limit, 0)]


def emit_event(name: str, **fields: Any) -> None:
    payload = {key: _jsonable(value) for key, value in fields.items()}
    event = TelemetryEvent(name=name, payload=payload)

    user_id = payload.get("user_id")
    with _lock:
        if isinstance(user_id, str) and user_id:
            _remember(user_id, event)
        listeners = list(_listeners)

    for listener in listeners:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener failed for %s", name)

    logger.info("TELEMETRY %s", json.dumps({"event": name, **payload}, default=str))


def _remember(user_id: str, event: TelemetryEvent) -> None:
    events = _history.get(user_id)
    if events is None:
        events = _history[user_id] = deque(maxlen=USER_HISTORY_LIMIT)
    else:
        _history.move_to_end(user_id)
    events.append(event)
    while len(_history) > HISTORY_MAX_USERS:
        _history.popitem(last=False)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


__all__ = [
    "TelemetryEvent",
    "clear_listeners",
    "emit_event",
    "recent_events",
    "register_listener",
]
