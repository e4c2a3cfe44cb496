"""Connection pool observability for the document store engine."""

from __future__ import annotations

import os
import time
import weakref
from dataclasses import dataclass
from typing import Dict, Union

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine

from ..telemetry import emit_event

AnyEngine = Union[Engine, AsyncEngine]


@dataclass
class PoolTelemetryState:
    connects: int = 0
    checkouts: int = 0
    checkins: int = 0
    last_emit: float = 0.0


_STATE_BY_ENGINE: "weakref.WeakKeyDictionary[Engine, PoolTelemetryState]" = weakref.WeakKeyDictionary()
_TELEMETRY_INTERVAL = float(os.getenv("QUIZFORGE_DB_TELEMETRY_INTERVAL", "30"))


def _sync_engine(engine: AnyEngine) -> Engine:
    # Pool events are only dispatched on the synchronous core engine.
    return getattr(engine, "sync_engine", engine)


def instrument_engine(engine: AnyEngine) -> None:
    """Attach pool event listeners that emit telemetry snapshots."""
    target = _sync_engine(engine)
    if target in _STATE_BY_ENGINE:
        return

    state = PoolTelemetryState()
    _STATE_BY_ENGINE[target] = state

    def snapshot(event_name: str) -> None:
        now = time.time()
        should_emit = _TELEMETRY_INTERVAL <= 0 or (now - state.last_emit) >= _TELEMETRY_INTERVAL
        if not should_emit:
            return
        state.last_emit = now
        emit_event(
            "db_pool_status",
            status=_safe_pool_status(target),
            event=event_name,
            connects=state.connects,
            checkouts=state.checkouts,
            checkins=state.checkins,
        )

    @event.listens_for(target, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        state.connects += 1
        snapshot("db_pool_connect")

    @event.listens_for(target, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy) -> None:  # type: ignore[no-untyped-def]
        state.checkouts += 1
        snapshot("db_pool_checkout")

    @event.listens_for(target, "checkin")
    def _on_checkin(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        state.checkins += 1
        snapshot("db_pool_checkin")


def get_pool_snapshot(engine: AnyEngine) -> Dict[str, object]:
    """Return the latest counters and pool status for the provided engine."""
    target = _sync_engine(engine)
    state = _STATE_BY_ENGINE.get(target)
    return {
        "status": _safe_pool_status(target),
        "connects": state.connects if state else 0,
        "checkouts": state.checkouts if state else 0,
        "checkins": state.checkins if state else 0,
    }


def _safe_pool_status(engine: Engine) -> str:
    try:
        return engine.pool.status()  # type: ignore[no-untyped-call]
    except Exception as exc:  # pragma: no cover - pool implementations vary
        return f"unavailable: {exc}"


__all__ = [
    "get_pool_snapshot",
    "instrument_engine",
]
