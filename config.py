import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", os.getenv("LIBRARY_DATA_FILE", "circulation.db"))
    database_timeout: float = float(os.getenv("DB_TIMEOUT_SECONDS", "5"))

    # Circulation settings
    # All due-date and fine arithmetic happens in this zone.
    library_timezone: str = os.getenv("LIBRARY_TIMEZONE", "Asia/Manila")
    lock_timeout: float = float(os.getenv("LOCK_TIMEOUT_SECONDS", "10"))
    sweep_interval_seconds: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
    enable_overdue_sweep: bool = _env_flag("ENABLE_OVERDUE_SWEEP", "True")

    # Notification settings
    notify_webhook_url: Optional[str] = os.getenv("NOTIFY_WEBHOOK_URL")
    notify_timeout: float = float(os.getenv("NOTIFY_TIMEOUT", "10"))
    notify_admin_recipients: List[str] = field(default_factory=lambda: _env_list("NOTIFY_ADMIN_RECIPIENTS"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Circulation Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
