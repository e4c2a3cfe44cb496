"""Lazy per-user migration kicked off by logins."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .config import get_settings
from .migration import MigrationEngine, get_migration_engine
from .telemetry import emit_event
from .user_data import UserDataReader, normalize_user_id

logger = logging.getLogger(__name__)


class MigrationTrigger:
    """Schedules background migrations without ever blocking a login."""

    def __init__(
        self,
        engine: MigrationEngine,
        reader: Optional[UserDataReader] = None,
        *,
        enabled: bool = True,
    ) -> None:
        self._engine = engine
        self._reader = reader or engine.reader
        self.enabled = enabled
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def on_login(self, user_id: str) -> Optional[asyncio.Task]:
        """Return immediately; the check and any migration run in a detached task.

        A login while the same user's task is still running returns that task.
        """
        if not self.enabled:
            return None
        try:
            user_id = normalize_user_id(user_id)
            loop = asyncio.get_running_loop()
        except (ValueError, RuntimeError) as exc:
            logger.warning("Skipping login migration check for %r: %s", user_id, exc)
            return None

        running = self._tasks.get(user_id)
        if running is not None and not running.done():
            logger.debug("Login migration check already running for user %s", user_id)
            return running

        task = loop.create_task(self._check_and_migrate(user_id), name=f"login-migration-{user_id}")
        self._tasks[user_id] = task
        task.add_done_callback(lambda done: self._forget(user_id, done))
        return task

    async def drain(self) -> None:
        """Wait for scheduled migrations; used on shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def _forget(self, user_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(user_id) is task:
            del self._tasks[user_id]

    async def _check_and_migrate(self, user_id: str) -> None:
        try:
            if await self._reader.is_migrated(user_id):
                return
            if not await self._reader.legacy_data_exists(user_id):
                return
            emit_event("login_migration_scheduled", user_id=user_id)
            result = await self._engine.migrate(user_id)
        except Exception:  # noqa: BLE001
            logger.exception("Login migration check failed for user %s", user_id)
            return

        if result.success:
            logger.info(
                "Login migration finished for user %s: %d quizzes in %d ms",
                user_id,
                result.quizzes_migrated,
                result.duration_ms,
            )
        else:
            logger.error("Login migration failed for user %s: %s", user_id, result.error)


_trigger: Optional[MigrationTrigger] = None


def get_migration_trigger() -> MigrationTrigger:
    global _trigger
    if _trigger is None:
        _trigger = MigrationTrigger(get_migration_engine(), enabled=get_settings().migration_on_login)
    return _trigger


async def drain_migration_trigger() -> None:
    if _trigger is not None:
        await _trigger.drain()


def reset_migration_trigger() -> None:
    global _trigger
    _trigger = None


__all__ = [
    "MigrationTrigger",
    "drain_migration_trigger",
    "get_migration_trigger",
    "reset_migration_trigger",
]
