"""Pytest fixtures: every backend behind the same Auth facade."""

import os
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from sqlmodel import SQLModel

from authcore import Auth
from authcore.config import Settings
from authcore.storage import DocumentStorageAdapter, SQLStorageAdapter, StorageAdapter

load_dotenv()


def _load_database_url() -> str:
    """Resolve the Postgres URL for tests, enforcing an explicit opt-in."""
    test_db_url = os.getenv("TEST_DATABASE_URL")
    pytest_allow_db = int(os.getenv("PYTEST_ALLOW_DB", "0"))
    if not test_db_url:
        pytest.skip("No TEST_DATABASE_URL is configured for tests.")
    if pytest_allow_db != 1:
        raise RuntimeError(
            "Running Postgres tests requires setting PYTEST_ALLOW_DB=1 to"
            " confirm the configured database is safe to mutate."
        )
    # mypy: test_db_url is str after the guard above
    return test_db_url  # type: ignore[return-value]


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    """Fast settings isolated from any local .env file."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'authcore.db'}",
        db_retry_attempts=1,
        db_retry_delay=0,
        auto_init_roles=False,
        max_failed_attempts=3,
        password_hash_workers=2,
    )


@pytest.fixture(
    params=[
        "document",
        "sqlite",
        pytest.param("postgres", marks=pytest.mark.postgres),
    ]
)
def storage(request: pytest.FixtureRequest, test_settings: Settings, tmp_path: Path) -> StorageAdapter:
    """An unconnected adapter for each backend under test."""
    retry = {"retry_attempts": 1, "retry_delay": 0}
    if request.param == "document":
        return DocumentStorageAdapter(tmp_path / "store.json", **retry)
    if request.param == "sqlite":
        return SQLStorageAdapter(test_settings.database_url, **retry)
    return SQLStorageAdapter(_load_database_url(), **retry)


@pytest_asyncio.fixture()
async def auth(storage: StorageAdapter, test_settings: Settings) -> AsyncGenerator[Auth, None]:
    """A connected Auth with the default roles and permissions seeded."""
    instance = Auth(storage, config=test_settings)
    await instance.connect()
    if isinstance(storage, SQLStorageAdapter) and storage.engine is not None:
        if storage.engine.dialect.name == "postgresql":
            # Rebuild tables for each test to ensure isolation across runs.
            async with storage.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.drop_all)
                await conn.run_sync(SQLModel.metadata.create_all)
    await instance.initialize_defaults()
    try:
        yield instance
    finally:
        await instance.close()
