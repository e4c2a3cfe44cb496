"""Tests for the login-time migration trigger."""

from __future__ import annotations

import asyncio

from conftest import legacy_quiz
from quizforge.migration import MigrationEngine, MigrationResult
from quizforge.migration_trigger import MigrationTrigger
from quizforge.user_data import UserDataReader, UserDataWriter, legacy_data_path


class _CountingEngine(MigrationEngine):
    def __init__(self, store, **kwargs) -> None:
        super().__init__(store, batch_size=4, **kwargs)
        self.calls: list[str] = []

    async def migrate(self, user_id: str) -> MigrationResult:
        self.calls.append(user_id)
        return await super().migrate(user_id)


class _ExplodingEngine(_CountingEngine):
    async def migrate(self, user_id: str) -> MigrationResult:
        self.calls.append(user_id)
        raise RuntimeError("migration crashed")


async def test_login_migrates_legacy_user_in_background(store) -> None:
    await store.set(legacy_data_path("u1"), {"quizzes": [legacy_quiz("q1")]})
    engine = _CountingEngine(store)
    trigger = MigrationTrigger(engine)

    task = trigger.on_login("u1")

    assert task is not None
    assert not task.done()
    await trigger.drain()
    assert engine.calls == ["u1"]
    assert trigger.pending == 0
    assert await UserDataReader(store).is_migrated("u1") is True


async def test_login_skips_migrated_and_empty_users(store) -> None:
    await UserDataWriter(store).register_user("fresh")
    engine = _CountingEngine(store)
    trigger = MigrationTrigger(engine)

    trigger.on_login("fresh")
    trigger.on_login("no-legacy")
    await trigger.drain()

    assert engine.calls == []


async def test_login_swallows_migration_errors(store, caplog) -> None:
    await store.set(legacy_data_path("u1"), {"quizzes": [legacy_quiz("q1")]})
    engine = _ExplodingEngine(store)
    trigger = MigrationTrigger(engine)

    task = trigger.on_login("u1")
    await trigger.drain()

    assert task is not None and task.exception() is None
    assert engine.calls == ["u1"]
    assert "Login migration check failed for user u1" in caplog.text


async def test_disabled_trigger_schedules_nothing(store) -> None:
    await store.set(legacy_data_path("u1"), {"quizzes": [legacy_quiz("q1")]})
    trigger = MigrationTrigger(_CountingEngine(store), enabled=False)

    assert trigger.on_login("u1") is None
    assert trigger.on_login("bad/id") is None


def test_on_login_without_event_loop() -> None:
    class _UnusedStore:
        max_batch_size = 10

    trigger = MigrationTrigger(MigrationEngine(_UnusedStore(), batch_size=4))  # type: ignore[arg-type]
    assert trigger.on_login("u1") is None


async def test_concurrent_logins_converge(store) -> None:
    quizzes = [legacy_quiz(f"q{index}") for index in range(7)]
    await store.set(legacy_data_path("u1"), {"quizzes": quizzes})
    engine = _CountingEngine(store)
    trigger = MigrationTrigger(engine)

    first = trigger.on_login("u1")
    second = trigger.on_login("u1")
    await trigger.drain()
    await asyncio.sleep(0)

    assert second is first
    assert engine.calls == ["u1"]
    assert trigger.pending == 0
    assert await store.count("users/u1/quizzes") == 7
    assert (await MigrationEngine(store, batch_size=4).verify("u1")).valid is True
