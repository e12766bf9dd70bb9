"""
Runtime configuration from environment variables.

All settings use the ``TASK_TRACKER_`` prefix, e.g.
``TASK_TRACKER_DATABASE_PATH=/app/data/tasks.db``.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

ENV_PREFIX = "TASK_TRACKER_"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass
class Settings:
    database_path: str = "task_tracker.db"
    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "INFO"
    max_connections: int = 200
    notification_limit: int = 50
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    seed_defaults: bool = True


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment (or an explicit mapping)."""
    env = os.environ if env is None else env
    defaults = Settings()
    origins = env.get(ENV_PREFIX + "CORS_ORIGINS")
    return Settings(
        database_path=env.get(ENV_PREFIX + "DATABASE_PATH", defaults.database_path),
        host=env.get(ENV_PREFIX + "HOST", defaults.host),
        port=_env_int(env, "PORT", defaults.port),
        log_level=env.get(ENV_PREFIX + "LOG_LEVEL", defaults.log_level).upper(),
        max_connections=_env_int(env, "MAX_CONNECTIONS", defaults.max_connections),
        notification_limit=_env_int(env, "NOTIFICATION_LIMIT", defaults.notification_limit),
        cors_origins=(
            [origin.strip() for origin in origins.split(",") if origin.strip()]
            if origins
            else defaults.cors_origins
        ),
        seed_defaults=_env_bool(env, "SEED_DEFAULTS", defaults.seed_defaults),
    )
