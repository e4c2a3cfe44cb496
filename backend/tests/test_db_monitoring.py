from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.ext.asyncio import create_async_engine

from quizforge.db import monitoring


def _recorder(monkeypatch) -> list[tuple[str, dict[str, object]]]:
    emitted: list[tuple[str, dict[str, object]]] = []

    def record(event_name: str, **payload: object) -> None:
        emitted.append((event_name, payload))

    monkeypatch.setattr(monitoring, "_TELEMETRY_INTERVAL", 0)
    monkeypatch.setattr(monitoring, "emit_event", record)
    return emitted


def test_instrument_engine_emits_telemetry(monkeypatch) -> None:
    emitted = _recorder(monkeypatch)
    engine = create_engine("sqlite:///:memory:", future=True)
    try:
        monitoring.instrument_engine(engine)
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        assert emitted, "Expected telemetry emission when instrumentation is active."
        event_name, payload = emitted[0]
        assert event_name == "db_pool_status"
        assert payload["connects"] >= 1
    finally:
        engine.dispose()


async def test_async_engine_is_instrumented_once(tmp_path: Path, monkeypatch) -> None:
    emitted = _recorder(monkeypatch)
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pool.db'}")
    try:
        monitoring.instrument_engine(engine)
        monitoring.instrument_engine(engine)
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))

        snapshot = monitoring.get_pool_snapshot(engine)
        assert snapshot["connects"] == 1
        assert snapshot["checkouts"] == 1
        assert len([name for name, payload in emitted if payload["event"] == "db_pool_connect"]) == 1
    finally:
        await engine.dispose()
