import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database (system of record for subscriptions + usage logs)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Whop licensing / checkout
    WHOP_API_KEY: Optional[str] = None
    WHOP_API_BASE: str = "https://api.whop.com/api/v2"
    WHOP_SPRINT_PLAN_ID: str = "plan_DTNT5Oh5vIuPN"  # maps to week_pass
    WHOP_MARATHON_PLAN_ID: str = "plan_h4ga7XhsUpzx9"  # maps to pro_monthly
    WHOP_WEBHOOK_SECRET: Optional[str] = None
    WHOP_TIMEOUT_SECONDS: float = 10.0

    # App URLs
    FRONTEND_URL: str = "http://localhost:5173"
    BACKEND_URL: str = "http://localhost:8000"

    # Session continuity (JSON file backing the persisted view state)
    SESSION_STATE_PATH: Optional[str] = None

    # Subscription reads
    USAGE_HISTORY_LIMIT: int = 50

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("cvarchitect")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "WHOP_API_KEY",
        "WHOP_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
