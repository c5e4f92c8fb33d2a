import logging

import pytest

from smfg_inventory import db
from smfg_inventory.config import load_settings
from smfg_inventory.logs import TEXT_FORMAT, configure_logging


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("REDIS_URL", "LOG_LEVEL", "LOG_TEXT", "DB_MIGRATE", "OUTBOX_BATCH_SIZE"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://db/inventory")

        settings = load_settings()

        assert settings.database_url == "postgresql+asyncpg://db/inventory"
        assert settings.redis_url == "redis://localhost:6379"
        assert settings.log_level == "INFO"
        assert settings.log_text is False
        assert settings.db_migrate is True
        assert settings.outbox_batch_size == 50

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://db/inventory")
        monkeypatch.setenv("LOG_TEXT", "true")
        monkeypatch.setenv("DB_MIGRATE", "0")
        monkeypatch.setenv("OUTBOX_POLL_SECONDS", "0.25")

        settings = load_settings()

        assert settings.log_text is True
        assert settings.db_migrate is False
        assert settings.outbox_poll_seconds == 0.25

    def test_database_url_is_required(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(KeyError):
            load_settings()


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLogging:
    def test_sets_root_level(self, root_logger):
        configure_logging("debug")

        assert root_logger.level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self, root_logger):
        configure_logging("chatty")

        assert root_logger.level == logging.INFO

    def test_text_format(self, root_logger):
        configure_logging("INFO", text=True)

        assert root_logger.handlers[0].formatter._fmt == TEXT_FORMAT


def test_schema_creates_every_table():
    statements = db.schema_statements()

    created = [s.split("(")[0].split()[-1] for s in statements if s.startswith("CREATE TABLE")]
    assert created == ["products", "production_events", "reservations", "outbox"]
