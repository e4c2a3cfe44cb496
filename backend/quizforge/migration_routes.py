"""Operator endpoints for inspecting and driving per-user migrations."""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .config import Settings, get_settings
from .migration import (
    MigrationEngine,
    MigrationResult,
    MigrationStatus,
    OperationResult,
    VerificationResult,
    get_migration_engine,
)
from .telemetry import recent_events
from .user_data import normalize_user_id


def _require_debug_endpoints(settings: Settings = Depends(get_settings)) -> None:
    if not settings.debug_endpoints:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")


router = APIRouter(
    prefix="/api/migration",
    tags=["migration"],
    dependencies=[Depends(_require_debug_endpoints)],
)


def _user_id(user_id: str) -> str:
    try:
        return normalize_user_id(user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.get("/{user_id}/status", response_model=MigrationStatus)
async def migration_status(user_id: str, engine: MigrationEngine = Depends(get_migration_engine)) -> MigrationStatus:
    return await engine.get_status(_user_id(user_id))


@router.post("/{user_id}/migrate", response_model=MigrationResult)
async def migrate_user(user_id: str, engine: MigrationEngine = Depends(get_migration_engine)) -> MigrationResult:
    result = await engine.migrate(_user_id(user_id))
    if not result.success:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
    return result


@router.get("/{user_id}/verify", response_model=VerificationResult)
async def verify_user(user_id: str, engine: MigrationEngine = Depends(get_migration_engine)) -> VerificationResult:
    return await engine.verify(_user_id(user_id))


@router.post("/{user_id}/rollback", response_model=OperationResult)
async def rollback_user(user_id: str, engine: MigrationEngine = Depends(get_migration_engine)) -> OperationResult:
    result = await engine.rollback(_user_id(user_id))
    if not result.success:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
    return result


@router.post("/{user_id}/cleanup", response_model=OperationResult)
async def cleanup_user(user_id: str, engine: MigrationEngine = Depends(get_migration_engine)) -> OperationResult:
    result = await engine.cleanup_legacy(_user_id(user_id))
    if not result.success:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.error)
    return result


@router.get("/{user_id}/events")
def migration_events(user_id: str, limit: int = Query(default=20, ge=1, le=50)) -> List[Dict[str, Any]]:
    return [
        {"event": event.name, "emitted_at": event.emitted_at.isoformat(), **event.payload}
        for event in recent_events(_user_id(user_id), limit=limit)
    ]
