# authcore/config.py
from datetime import timedelta
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./authcore.db"
    storage_backend: Literal["sql", "document"] = "sql"
    document_store_path: Optional[str] = None  # None = memory only

    log_level: str = "INFO"
    sql_echo: bool = False
    auto_init_db: bool = True
    auto_init_roles: bool = True

    # Backend connection retry budget
    db_retry_attempts: int = Field(default=3, ge=1)
    db_retry_delay: float = Field(default=3.0, ge=0)

    session_ttl: timedelta = timedelta(hours=1)
    token_ttl: timedelta = timedelta(hours=1)

    super_authority_role: str = "admin"
    default_role: str = "user"

    max_failed_attempts: int = Field(default=5, ge=1)
    lockout_duration: timedelta = timedelta(minutes=15)

    password_hash_workers: int = Field(default=4, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
