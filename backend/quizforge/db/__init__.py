"""Database utilities for the QuizForge document store."""

from .session import (
    dispose_engine,
    get_engine,
    get_session_factory,
    session_scope,
    to_async_url,
)

__all__ = [
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "to_async_url",
]
