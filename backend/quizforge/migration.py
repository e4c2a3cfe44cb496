"""Legacy to normalized migration, verification, rollback and archival."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from .config import get_settings
from .store import SERVER_TIMESTAMP, DocumentStore, PreconditionFailedError, get_document_store
from .telemetry import emit_event
from .user_data import (
    UserDataReader,
    achievements_path,
    archive_path,
    class_path,
    classes_collection,
    default_achievements,
    default_progress,
    legacy_account_path,
    legacy_data_path,
    normalize_user_id,
    profile_path,
    progress_path,
    quiz_path,
    quizzes_collection,
)

logger = logging.getLogger(__name__)

_MIGRATION_FLAGS = ("migrated", "migratedAt", "migrationComplete", "rolledBackAt")


class MigrationResult(BaseModel):
    success: bool
    user_id: str
    quizzes_migrated: int = 0
    classes_migrated: int = 0
    already_migrated: bool = False
    duration_ms: int = 0
    error: Optional[str] = None


class VerificationResult(BaseModel):
    valid: bool
    legacy_quiz_count: int
    new_quiz_count: int
    mismatches: List[str] = Field(default_factory=list)


class OperationResult(BaseModel):
    success: bool
    error: Optional[str] = None


class MigrationStatus(BaseModel):
    migrated: bool
    migrated_at: Optional[str] = None
    migration_complete: Optional[bool] = None
    legacy_data_exists: bool
    new_data_exists: bool


class MigrationEngine:
    """Moves one user at a time from the legacy record to normalized documents.

    The profile flip (``migrated = True``) is committed first, in a small
    batch with progress and achievements, so that writes issued while the
    quiz chunks are still copying already land in the normalized layout.
    ``migrationComplete`` stays ``False`` until every chunk has committed;
    a later call resumes a user left in that state.

    The flip only commits if the profile still carries the ``migrated``
    value this call read, so of two overlapping calls exactly one copies
    progress and achievements. The other re-reads the profile and resumes.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        reader: Optional[UserDataReader] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        if batch_size is None:
            batch_size = get_settings().migration_batch_size
        if batch_size < 1:
            raise ValueError("batch_size must be positive.")
        if batch_size >= store.max_batch_size:
            raise ValueError(
                f"batch_size {batch_size} must stay below the store batch limit of {store.max_batch_size}."
            )
        self._store = store
        self._reader = reader or UserDataReader(store)
        self.batch_size = batch_size

    @property
    def reader(self) -> UserDataReader:
        return self._reader

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    async def migrate(self, user_id: str) -> MigrationResult:
        started = time.perf_counter()
        try:
            user_id = normalize_user_id(user_id)
        except ValueError as exc:
            return MigrationResult(success=False, user_id=str(user_id), error=str(exc))

        try:
            result = await self._migrate(user_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Migration failed for user %s", user_id)
            result = MigrationResult(success=False, user_id=user_id, error=str(exc) or type(exc).__name__)

        result.duration_ms = int((time.perf_counter() - started) * 1000)
        if result.success:
            emit_event(
                "user_migration_completed",
                user_id=user_id,
                quizzes_migrated=result.quizzes_migrated,
                classes_migrated=result.classes_migrated,
                already_migrated=result.already_migrated,
                duration_ms=result.duration_ms,
            )
        else:
            emit_event("user_migration_failed", user_id=user_id, error=result.error, duration_ms=result.duration_ms)
        return result

    async def _migrate(self, user_id: str) -> MigrationResult:
        try:
            return await self._migrate_once(user_id)
        except PreconditionFailedError:
            logger.info("User %s was flagged by a concurrent migration; re-reading profile", user_id)
            return await self._migrate_once(user_id)

    async def _migrate_once(self, user_id: str) -> MigrationResult:
        profile = await self._store.get(profile_path(user_id)) or {}
        resuming = False
        if profile.get("migrated") is True:
            if profile.get("migrationComplete") is not False:
                logger.debug("User %s already migrated; nothing to do", user_id)
                return MigrationResult(success=True, user_id=user_id, already_migrated=True)
            resuming = True

        legacy = await self._store.get(legacy_data_path(user_id))
        account = await self._store.get(legacy_account_path(user_id)) or {}
        identity = {key: value for key, value in account.items() if key not in _MIGRATION_FLAGS}

        if legacy is None:
            logger.info("User %s has no legacy data; marking as migrated", user_id)
            await self._store.set(
                profile_path(user_id),
                {**identity, "migrated": True, "migratedAt": SERVER_TIMESTAMP, "migrationComplete": True},
                merge=True,
            )
            return MigrationResult(success=True, user_id=user_id)

        quizzes = _keyed_entries(legacy.get("quizzes"), user_id, "quiz")
        classes = _keyed_entries(legacy.get("classes"), user_id, "class")
        emit_event(
            "user_migration_started",
            user_id=user_id,
            legacy_quiz_count=len(quizzes),
            legacy_class_count=len(classes),
            resuming=resuming,
        )

        existing_quizzes = {doc.id for doc in await self._store.list(quizzes_collection(user_id))}
        existing_classes = {doc.id for doc in await self._store.list(classes_collection(user_id))}

        if resuming:
            # Documents present now may hold writes made after the flip.
            quizzes = [entry for entry in quizzes if entry["id"] not in existing_quizzes]
            classes = [entry for entry in classes if entry["id"] not in existing_classes]
            stale_quizzes: List[str] = []
        else:
            first = self._store.batch()
            first.require(profile_path(user_id), "migrated", profile.get("migrated"))
            first.set(
                profile_path(user_id),
                {**identity, "migrated": True, "migratedAt": SERVER_TIMESTAMP, "migrationComplete": False},
                merge=True,
            )
            first.set(progress_path(user_id), legacy.get("progress") or default_progress())
            first.set(achievements_path(user_id), legacy.get("achievements") or default_achievements())
            await first.commit()
            logger.info("User %s flagged as migrated; copying %d quizzes", user_id, len(quizzes))
            stale_quizzes = []
            if profile.get("rolledBackAt"):
                # Normalized copies the legacy record no longer has.
                legacy_ids = {entry["id"] for entry in quizzes}
                stale_quizzes = sorted(existing_quizzes - legacy_ids)

        operations: List[tuple] = [("set", quiz_path(user_id, entry["id"]), entry) for entry in quizzes]
        operations.extend(("delete", quiz_path(user_id, quiz_id), None) for quiz_id in stale_quizzes)
        operations.extend(("set", class_path(user_id, entry["id"]), entry) for entry in classes)
        await self._write_chunks(user_id, operations)

        await self._store.update(profile_path(user_id), {"migrationComplete": True})
        return MigrationResult(
            success=True,
            user_id=user_id,
            quizzes_migrated=len(quizzes),
            classes_migrated=len(classes),
        )

    async def _write_chunks(self, user_id: str, operations: Sequence[tuple]) -> None:
        for offset in range(0, len(operations), self.batch_size):
            chunk = operations[offset : offset + self.batch_size]
            batch = self._store.batch()
            for kind, path, data in chunk:
                if kind == "delete":
                    batch.delete(path)
                else:
                    batch.set(path, data)
            await batch.commit()
            logger.debug("User %s: committed chunk of %d writes at offset %d", user_id, len(chunk), offset)

    async def migrate_users(self, user_ids: Iterable[str], *, delay: Optional[float] = None) -> List[MigrationResult]:
        """Migrate users one after another; a failure never stops the run."""
        if delay is None:
            delay = get_settings().migration_user_delay
        results: List[MigrationResult] = []
        for index, user_id in enumerate(user_ids):
            if index and delay > 0:
                await asyncio.sleep(delay)
            results.append(await self.migrate(user_id))
        failed = sum(1 for result in results if not result.success)
        logger.info("Migrated %d users (%d failed)", len(results), failed)
        return results

    # ------------------------------------------------------------------
    # Verification & rollback
    # ------------------------------------------------------------------

    async def verify(self, user_id: str) -> VerificationResult:
        user_id = normalize_user_id(user_id)
        legacy = await self._store.get(legacy_data_path(user_id))
        legacy_count = len((legacy or {}).get("quizzes") or [])
        new_count = await self._store.count(quizzes_collection(user_id))

        mismatches: List[str] = []
        if legacy_count != new_count:
            mismatches.append(f"Quiz count mismatch: legacy={legacy_count}, new={new_count}")
        if await self._store.get(profile_path(user_id)) is None:
            mismatches.append("Profile document missing")

        return VerificationResult(
            valid=not mismatches,
            legacy_quiz_count=legacy_count,
            new_quiz_count=new_count,
            mismatches=mismatches,
        )

    async def rollback(self, user_id: str) -> OperationResult:
        """Point the user back at the legacy record.

        Normalized documents are left in place. The legacy record must still
        exist; that is not re-checked here.
        """
        try:
            user_id = normalize_user_id(user_id)
            if await self._store.get(profile_path(user_id)) is not None:
                await self._store.update(
                    profile_path(user_id),
                    {"migrated": False, "rolledBackAt": SERVER_TIMESTAMP},
                )
                emit_event("user_migration_rolled_back", user_id=user_id)
            return OperationResult(success=True)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Rollback failed for user %s", user_id)
            return OperationResult(success=False, error=str(exc) or type(exc).__name__)

    async def cleanup_legacy(self, user_id: str) -> OperationResult:
        """Archive the legacy record of a migrated user. The original is kept."""
        try:
            user_id = normalize_user_id(user_id)
            status = await self.get_status(user_id)
            if not status.migrated:
                return OperationResult(success=False, error="User not migrated - cannot cleanup")
            if not status.new_data_exists:
                return OperationResult(success=False, error="New data does not exist - cannot cleanup")

            legacy = await self._store.get(legacy_data_path(user_id))
            if legacy is not None:
                await self._store.set(archive_path(user_id), {**legacy, "archivedAt": SERVER_TIMESTAMP})
                emit_event("user_legacy_archived", user_id=user_id, quiz_count=len(legacy.get("quizzes") or []))
            return OperationResult(success=True)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Legacy cleanup failed for user %s", user_id)
            return OperationResult(success=False, error=str(exc) or type(exc).__name__)

    async def get_status(self, user_id: str) -> MigrationStatus:
        user_id = normalize_user_id(user_id)
        profile = await self._store.get(profile_path(user_id))
        legacy_exists = await self._store.get(legacy_data_path(user_id)) is not None
        profile = profile or {}
        return MigrationStatus(
            migrated=profile.get("migrated") is True,
            migrated_at=profile.get("migratedAt"),
            migration_complete=profile.get("migrationComplete"),
            legacy_data_exists=legacy_exists,
            new_data_exists=bool(profile),
        )


def _keyed_entries(entries: Any, user_id: str, label: str) -> List[Dict[str, Any]]:
    keyed: List[Dict[str, Any]] = []
    for entry in entries or []:
        if not isinstance(entry, dict) or not entry.get("id") or "/" in str(entry["id"]):
            logger.warning("Skipping legacy %s without a usable id for user %s", label, user_id)
            continue
        keyed.append({**entry, "id": str(entry["id"])})
    return keyed


def get_migration_engine() -> MigrationEngine:
    return MigrationEngine(get_document_store())


__all__ = [
    "MigrationEngine",
    "MigrationResult",
    "MigrationStatus",
    "OperationResult",
    "VerificationResult",
    "get_migration_engine",
]
