import logging
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from .config import Settings, get_settings
from .db.monitoring import get_pool_snapshot, instrument_engine
from .db.session import dispose_engine, get_engine, session_scope
from .logging_config import configure_logging
from .migration_routes import router as migration_router
from .migration_trigger import drain_migration_trigger, reset_migration_trigger
from .session_routes import router as session_router
from .store import reset_document_store


configure_logging()
logger = logging.getLogger(__name__)
app = FastAPI(title="QuizForge User Data Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(session_router)
app.include_router(migration_router)


@app.on_event("startup")
async def log_startup() -> None:
    settings = get_settings()
    logger.info("Database configured: %s", bool(settings.database_url))
    logger.info(
        "Login migration %s (batch size %d, store limit %d)",
        "enabled" if settings.migration_on_login else "disabled",
        settings.migration_batch_size,
        settings.store_max_batch_size,
    )


@app.on_event("shutdown")
async def shutdown_background_work() -> None:
    await drain_migration_trigger()
    reset_migration_trigger()
    reset_document_store()
    await dispose_engine()


@app.get("/healthz")
def health(settings: Settings = Depends(get_settings)) -> Dict[str, str]:
    return {"status": "ok", "login_migration": "enabled" if settings.migration_on_login else "disabled"}


@app.get("/healthz/database")
async def database_health() -> Dict[str, Any]:
    try:
        engine = get_engine()
        instrument_engine(engine)
        async with session_scope(commit=False) as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        logger.warning("Database health check failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"status": "ok", "dialect": engine.dialect.name, "pool": get_pool_snapshot(engine)}
