import logging

import pytest

from linkpulse.config import Settings
from linkpulse.errors import ConfigError
from linkpulse.logger import AuditLogger

ENV = (
    "MONGO_URL", "MONGO_DB_NAME", "REDIS_URL", "REDIS_KEY_PREFIX", "ANALYTICS_FLUSH_INTERVAL",
    "ANALYTICS_BATCH_SIZE", "ANALYTICS_CACHE_TTL", "ANALYTICS_FLUSH_LOCK_TTL", "ADMIN_API_KEY",
    "PORT", "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV:
        monkeypatch.delenv(name, raising=False)


class TestSettings:

    def test_defaults(self):
        s = Settings.from_env()
        assert s.mongo_url is None
        assert s.mongo_db_name == "linkpulse"
        assert s.redis_key_prefix == "linkpulse:"
        assert (s.flush_interval, s.batch_size, s.cache_ttl, s.flush_lock_ttl) == (30, 1000, 120, 60)
        assert s.admin_api_key is None
        assert s.port == 8080

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("MONGO_URL", "mongodb://db:27017")
        monkeypatch.setenv("ANALYTICS_BATCH_SIZE", "250")
        monkeypatch.setenv("ADMIN_API_KEY", "  k  ")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        s = Settings.from_env()
        assert s.mongo_url == "mongodb://db:27017"
        assert s.batch_size == 250
        assert s.admin_api_key == "k"
        assert s.log_level == "DEBUG"

    @pytest.mark.parametrize("value", ["abc", "0", "-5"])
    def test_invalid_numbers(self, monkeypatch, value):
        monkeypatch.setenv("ANALYTICS_FLUSH_INTERVAL", value)
        with pytest.raises(ConfigError):
            Settings.from_env()


class TestAuditLogger:

    @pytest.mark.asyncio
    async def test_logs_without_storage(self, caplog):
        with caplog.at_level(logging.INFO, logger="linkpulse.audit"):
            await AuditLogger().log("FLUSH", "ops", "views=3 clicks=0")
        assert "🔄 FLUSH by ops | views=3 clicks=0" in caplog.text

    @pytest.mark.asyncio
    async def test_errors_log_at_error_level(self, caplog):
        with caplog.at_level(logging.INFO, logger="linkpulse.audit"):
            await AuditLogger().log("ERROR", "ops", "flush failed")
        assert caplog.records[-1].levelno == logging.ERROR

    @pytest.mark.asyncio
    async def test_writes_action_log(self, storage, fake_db):
        await AuditLogger(storage).log("CLEAR", "ops", "all linktrees")
        assert fake_db["action_logs"].docs[0]["action"] == "ANALYTICS: CLEAR"
