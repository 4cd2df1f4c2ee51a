"""Environment-driven configuration."""

import os
from dataclasses import dataclass
from pathlib import Path


def get_sessions_path() -> Path:
    """Return the root directory holding one subdirectory per session."""
    env = os.environ.get("CHATERY_SESSIONS_PATH")
    if env:
        return Path(env)

    return Path.cwd() / "sessions"


def get_transport_path() -> str | None:
    """Return the ``module:callable`` path of the transport factory, if set."""
    return os.environ.get("CHATERY_TRANSPORT") or None


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


@dataclass
class Settings:
    reconnect_delay: float = 5.0
    snapshot_interval: float = 30.0
    backfill_limit: int = 20
    backfill_wait: float = 2.0
    event_queue_size: int = 1000
    country_code: str = "62"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            reconnect_delay=_env_float("CHATERY_RECONNECT_DELAY", cls.reconnect_delay),
            snapshot_interval=_env_float("CHATERY_SNAPSHOT_INTERVAL", cls.snapshot_interval),
            backfill_limit=_env_int("CHATERY_BACKFILL_LIMIT", cls.backfill_limit),
            backfill_wait=_env_float("CHATERY_BACKFILL_WAIT", cls.backfill_wait),
            event_queue_size=_env_int("CHATERY_EVENT_QUEUE_SIZE", cls.event_queue_size),
            country_code=os.environ.get("CHATERY_COUNTRY_CODE") or cls.country_code,
        )
