from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    public_url: str
    host: str
    port: int
    telegram_bot_token: str | None
    telegram_webhook_secret: str | None
    telegram_polling: bool
    ingest_rate_limit_calls: int
    ingest_rate_limit_seconds: int
    max_integrations_per_owner: int
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".fieldrelay")
        default_log_dir = str(Path(default_home) / "logs")
        default_data_dir = str(Path(default_home) / "data")
        return Settings(
            log_level=os.getenv("FIELDRELAY_LOG_LEVEL", "info"),
            log_dir=os.getenv("FIELDRELAY_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("FIELDRELAY_DATA_DIR") or default_data_dir,
            public_url=os.getenv("FIELDRELAY_PUBLIC_URL", "http://127.0.0.1:8080").rstrip("/"),
            host=os.getenv("FIELDRELAY_HOST", "127.0.0.1"),
            port=int(os.getenv("FIELDRELAY_PORT", "8080")),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET"),
            telegram_polling=_env_flag("TELEGRAM_POLLING"),
            ingest_rate_limit_calls=int(os.getenv("FIELDRELAY_INGEST_RATE_LIMIT_CALLS", "120")),
            ingest_rate_limit_seconds=int(os.getenv("FIELDRELAY_INGEST_RATE_LIMIT_SECONDS", "60")),
            max_integrations_per_owner=int(os.getenv("FIELDRELAY_MAX_INTEGRATIONS_PER_OWNER", "10")),
            clear_logs_on_launch=_env_flag("FIELDRELAY_CLEAR_LOGS_ON_LAUNCH"),
        )

    def webhook_url(self, connect_id: str) -> str:
        """Public ingestion URL handed to the PM tool."""
        return f"{self.public_url}/integrations/{connect_id}"
