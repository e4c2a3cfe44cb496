"""Login hook called by the web client once authentication succeeds."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from .migration_trigger import MigrationTrigger, get_migration_trigger

router = APIRouter(prefix="/api/session", tags=["session"])

logger = logging.getLogger(__name__)


class LoginNotification(BaseModel):
    user_id: str = Field(..., min_length=1)


class LoginAccepted(BaseModel):
    user_id: str
    migration_check_scheduled: bool


@router.post("/login", response_model=LoginAccepted, status_code=status.HTTP_202_ACCEPTED)
async def session_login(
    payload: LoginNotification,
    trigger: MigrationTrigger = Depends(get_migration_trigger),
) -> LoginAccepted:
    user_id = payload.user_id.strip()
    if not user_id or "/" in user_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="User id must be a non-empty string without '/'.",
        )
    task = trigger.on_login(user_id)
    logger.debug("Login recorded for %s (migration check scheduled: %s)", user_id, task is not None)
    return LoginAccepted(user_id=user_id, migration_check_scheduled=task is not None)
