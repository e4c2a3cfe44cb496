"""ORM models backing the QuizForge document store."""

from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin

JSONType = JSON


class DocumentModel(TimestampMixin, Base):
    """One stored document, addressed by its collection path and id.

    ``collection`` is the full slash-separated collection path, for example
    ``users/u1/quizzes``; ``doc_id`` is the final path segment.
    """

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc"),
        Index("ix_documents_collection", "collection"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String(512), nullable=False)
    doc_id: Mapped[str] = mapped_column(String(256), nullable=False)
    data: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)


__all__ = ["DocumentModel"]
