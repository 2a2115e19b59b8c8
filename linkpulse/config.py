import os
from dataclasses import dataclass
from typing import Optional

from linkpulse.errors import ConfigError


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _str_env(name: str) -> Optional[str]:
    val = (os.getenv(name) or "").strip()
    return val or None


@dataclass(frozen=True)
class Settings:
    mongo_url: Optional[str] = None
    mongo_db_name: str = "linkpulse"
    redis_url: Optional[str] = None
    redis_key_prefix: str = "linkpulse:"
    flush_interval: int = 30          # seconds between scheduler cycles
    batch_size: int = 1000            # records per stream per cycle
    cache_ttl: int = 120              # aggregate cache TTL (seconds)
    flush_lock_ttl: int = 60          # drain lease TTL (seconds)
    admin_api_key: Optional[str] = None
    port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (call load_dotenv() first)"""
        return cls(
            mongo_url=_str_env("MONGO_URL"),
            mongo_db_name=_str_env("MONGO_DB_NAME") or "linkpulse",
            redis_url=_str_env("REDIS_URL"),
            redis_key_prefix=os.getenv("REDIS_KEY_PREFIX", "linkpulse:"),
            flush_interval=_int_env("ANALYTICS_FLUSH_INTERVAL", 30),
            batch_size=_int_env("ANALYTICS_BATCH_SIZE", 1000),
            cache_ttl=_int_env("ANALYTICS_CACHE_TTL", 120),
            flush_lock_ttl=_int_env("ANALYTICS_FLUSH_LOCK_TTL", 60),
            admin_api_key=_str_env("ADMIN_API_KEY"),
            port=_int_env("PORT", 8080),
            log_level=(_str_env("LOG_LEVEL") or "INFO").upper(),
        )
