from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from quizforge import telemetry
from quizforge.db.base import Base
from quizforge.store import SqlDocumentStore, WriteOperation


class RecordingStore(SqlDocumentStore):
    """SQL store that remembers the size of every committed batch."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.batch_sizes: List[int] = []
        self.fail_on_batch: int | None = None

    async def commit_batch(self, operations: Sequence[WriteOperation]) -> None:
        if self.fail_on_batch is not None and len(self.batch_sizes) == self.fail_on_batch:
            self.fail_on_batch = None
            raise RuntimeError("store unavailable")
        self.batch_sizes.append(len(operations))
        await super().commit_batch(operations)


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[RecordingStore]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'documents.db'}")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    try:
        yield RecordingStore(async_sessionmaker(engine, expire_on_commit=False), max_batch_size=10)
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_telemetry() -> None:
    telemetry.clear_listeners()


def legacy_quiz(quiz_id: str, created_at: str = "2024-01-01T00:00:00+00:00", **extra: Any) -> Dict[str, Any]:
    return {
        "id": quiz_id,
        "title": f"Quiz {quiz_id}",
        "subject": "Biology",
        "createdAt": created_at,
        "questions": [
            {
                "question": "What is the powerhouse of the cell?",
                "options": [
                    {"text": "Mitochondria", "isCorrect": True},
                    {"text": "Nucleus", "isCorrect": False},
                ],
                "explanation": "Mitochondria produce ATP.",
            }
        ],
        **extra,
    }
