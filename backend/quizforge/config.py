import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="QUIZFORGE_DATABASE_URL")
    database_pool_size: int = Field(10, alias="QUIZFORGE_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="QUIZFORGE_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="QUIZFORGE_DATABASE_ECHO")
    store_max_batch_size: int = Field(500, ge=1, alias="QUIZFORGE_STORE_MAX_BATCH_SIZE")
    migration_batch_size: int = Field(400, ge=1, alias="QUIZFORGE_MIGRATION_BATCH_SIZE")
    migration_on_login: bool = Field(True, alias="QUIZFORGE_MIGRATION_ON_LOGIN")
    migration_user_delay: float = Field(0.1, ge=0.0, alias="QUIZFORGE_MIGRATION_USER_DELAY")
    debug_endpoints: bool = Field(False, alias="QUIZFORGE_DEBUG_ENDPOINTS")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True

    @model_validator(mode="after")
    def _leave_batch_headroom(self) -> "Settings":
        # Migration chunks share the store's batch limit with other writers.
        if self.migration_batch_size >= self.store_max_batch_size:
            raise ValueError(
                "QUIZFORGE_MIGRATION_BATCH_SIZE must be lower than QUIZFORGE_STORE_MAX_BATCH_SIZE "
                f"({self.migration_batch_size} >= {self.store_max_batch_size})"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid backend configuration: {exc}") from exc
