"""Runtime settings read from `CALENDAR_*` environment variables and an optional .env file."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()

ENV_PREFIX = "CALENDAR_"


def _env(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name, default)


@dataclass
class Settings:
    data_dir: Path = Path("data")
    host: str = "0.0.0.0"
    port: int = 3000
    write_delay_seconds: float = 1.0
    reminder_interval_seconds: float = 60.0
    reminder_lead_minutes: int = 15
    webhook_timeout_seconds: float = 5.0
    webhook_workers: int = 4
    notification_history_limit: int = 1000
    broadcast_buffer_size: int = 100
    log_level: str = "INFO"
    log_file: Path | None = None

    @property
    def scan_reminders(self) -> bool:
        return self.reminder_interval_seconds > 0

    @classmethod
    def from_env(cls) -> Settings:
        log_file = os.getenv(ENV_PREFIX + "LOG_FILE")
        return cls(
            data_dir=Path(_env("DATA_DIR", "data")),
            host=_env("HOST", "0.0.0.0"),
            port=int(_env("PORT", "3000")),
            write_delay_seconds=float(_env("WRITE_DELAY_SECONDS", "1.0")),
            reminder_interval_seconds=float(_env("REMINDER_INTERVAL_SECONDS", "60")),
            reminder_lead_minutes=int(_env("REMINDER_LEAD_MINUTES", "15")),
            webhook_timeout_seconds=float(_env("WEBHOOK_TIMEOUT_SECONDS", "5.0")),
            webhook_workers=int(_env("WEBHOOK_WORKERS", "4")),
            notification_history_limit=int(_env("NOTIFICATION_HISTORY_LIMIT", "1000")),
            broadcast_buffer_size=int(_env("BROADCAST_BUFFER_SIZE", "100")),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            log_file=Path(log_file) if log_file else None,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
