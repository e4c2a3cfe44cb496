from __future__ import annotations

import pytest

from quizforge.config import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults(monkeypatch) -> None:
    for name in ("QUIZFORGE_STORE_MAX_BATCH_SIZE", "QUIZFORGE_MIGRATION_BATCH_SIZE", "QUIZFORGE_MIGRATION_ON_LOGIN"):
        monkeypatch.delenv(name, raising=False)
    settings = get_settings()
    assert settings.store_max_batch_size == 500
    assert settings.migration_batch_size == 400
    assert settings.migration_on_login is True


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("QUIZFORGE_MIGRATION_BATCH_SIZE", "50")
    monkeypatch.setenv("QUIZFORGE_MIGRATION_ON_LOGIN", "false")
    monkeypatch.setenv("QUIZFORGE_DEBUG_ENDPOINTS", "1")
    settings = get_settings()
    assert settings.migration_batch_size == 50
    assert settings.migration_on_login is False
    assert settings.debug_endpoints is True


def test_batch_size_must_stay_below_store_limit(monkeypatch) -> None:
    monkeypatch.setenv("QUIZFORGE_STORE_MAX_BATCH_SIZE", "100")
    monkeypatch.setenv("QUIZFORGE_MIGRATION_BATCH_SIZE", "100")
    with pytest.raises(RuntimeError, match="Invalid backend configuration"):
        get_settings()
