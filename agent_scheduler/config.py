from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)


def _env(name: str) -> str | None:
    value = os.environ.get(name)
    if not value:
        return None
    trimmed = value.strip()
    return trimmed or None


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r", name, raw)
        return default
    return value


def _env_time_zone(name: str) -> ZoneInfo | None:
    raw = _env(name)
    if raw is None:
        return None
    try:
        return ZoneInfo(raw)
    except Exception:
        logger.warning("Ignoring unknown time zone %s=%r, using local time", name, raw)
        return None


def _env_log_level(name: str) -> str:
    raw = (_env(name) or "INFO").upper()
    if not isinstance(logging.getLevelName(raw), int):
        logger.warning("Ignoring unknown log level %s=%r", name, raw)
        return "INFO"
    return raw


@dataclass(frozen=True)
class Settings:
    data_dir: Path = Path("data")
    heartbeat_seconds: float = 60.0
    time_zone: ZoneInfo | None = None
    agent_cwd: str | None = None
    model: str | None = None
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "agent_scheduler.db"


def load_settings() -> Settings:
    return Settings(
        data_dir=Path(_env("AGENT_SCHEDULER_DATA_DIR") or "data"),
        heartbeat_seconds=_env_float("AGENT_SCHEDULER_HEARTBEAT_SECONDS", 60.0),
        time_zone=_env_time_zone("AGENT_SCHEDULER_TIME_ZONE"),
        agent_cwd=_env("AGENT_SCHEDULER_AGENT_CWD") or os.getcwd(),
        model=_env("AGENT_SCHEDULER_MODEL"),
        log_level=_env_log_level("AGENT_SCHEDULER_LOG_LEVEL"),
    )
