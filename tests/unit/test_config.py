"""Unit tests for settings, logging setup and backend selection."""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest
from pydantic import ValidationError

from authcore import config as settings_module
from authcore.config import Settings
from authcore.logging_config import setup_logging
from authcore.storage import DocumentStorageAdapter, SQLStorageAdapter, get_storage_adapter


def test_defaults() -> None:
    settings = Settings(_env_file=None)  # type: ignore[call-arg]

    assert settings.session_ttl == timedelta(hours=1)
    assert settings.token_ttl == timedelta(hours=1)
    assert settings.db_retry_attempts == 3
    assert settings.db_retry_delay == 3.0
    assert settings.super_authority_role == "admin"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    """Settings are read case-insensitively from the environment."""
    monkeypatch.setenv("STORAGE_BACKEND", "document")
    monkeypatch.setenv("SESSION_TTL", "PT30M")
    monkeypatch.setenv("db_retry_attempts", "5")

    settings = Settings(_env_file=None)  # type: ignore[call-arg]

    assert settings.storage_backend == "document"
    assert settings.session_ttl == timedelta(minutes=30)
    assert settings.db_retry_attempts == 5


def test_retry_budget_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, db_retry_attempts=0)  # type: ignore[call-arg]


def test_storage_factory_selects_backend(tmp_path) -> None:
    document = get_storage_adapter(
        Settings(  # type: ignore[call-arg]
            _env_file=None,
            storage_backend="document",
            document_store_path=str(tmp_path / "s.json"),
            db_retry_attempts=2,
            db_retry_delay=0.5,
        )
    )
    sql = get_storage_adapter(
        Settings(_env_file=None, storage_backend="sql", auto_init_db=False)  # type: ignore[call-arg]
    )

    assert isinstance(document, DocumentStorageAdapter)
    assert document.path == tmp_path / "s.json"
    assert (document.retry_attempts, document.retry_delay) == (2, 0.5)
    assert isinstance(sql, SQLStorageAdapter)
    assert sql.create_tables is False


@pytest.fixture
def restore_logging():
    """Undo dictConfig changes so later tests still see authcore records in caplog."""
    root = logging.getLogger()
    root_level, root_handlers = root.level, list(root.handlers)
    yield
    root.setLevel(root_level)
    root.handlers[:] = root_handlers
    for name in ("authcore", "sqlalchemy.engine"):
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)


def test_setup_logging_levels(restore_logging) -> None:
    setup_logging("DEBUG", sql_log=False)

    assert logging.getLogger("authcore").level == logging.DEBUG
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    setup_logging("INFO", sql_log=True)
    assert logging.getLogger("sqlalchemy.engine").level == logging.INFO


def test_setup_logging_falls_back_to_settings(
    monkeypatch: pytest.MonkeyPatch, restore_logging
) -> None:
    """Without arguments the level and SQL echo come from `settings`."""
    monkeypatch.setattr(settings_module.settings, "log_level", "warning")
    monkeypatch.setattr(settings_module.settings, "sql_echo", True)

    setup_logging()

    assert logging.getLogger("authcore").level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.INFO
