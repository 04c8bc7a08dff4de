import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    RELEASE_VERSION: str = "<UNKNOWN>"

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"
    AUTO_CREATE_TABLES: bool = True

    # Admin access (hybrid auth: bearer JWT with email allow-list, legacy key)
    ADMIN_JWT_SECRET: Optional[str] = None
    ADMIN_EMAILS: str = ""  # comma or whitespace separated
    ADMIN_KEY: Optional[str] = None
    ADMIN_AUTH_MODE: str = "jwt"  # "jwt" | "legacy" | "hybrid"
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod"

    # Invite delivery (Resend)
    RESEND_API_KEY: Optional[str] = None
    RESEND_API_URL: str = "https://api.resend.com"
    INVITE_EMAIL_FROM: Optional[str] = None
    INVITE_BASE_URL: str = "http://localhost:5173"
    INVITE_QUEUE_ENABLED: bool = False
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # Background tasks
    BACKGROUND_TASKS_ENABLED: bool = True
    STATUS_REFRESH_INTERVAL_SECONDS: float = 60.0
    FEED_POLL_INTERVAL_SECONDS: float = 300.0
    FEED_FETCH_TIMEOUT_SECONDS: float = 15.0
    FEED_FIRST_POLL_MODE: str = "latest"  # latest | none | all
    STREAM_TIMEZONE: str = "UTC"

    # Live channel
    PRESENCE_TTL_SECONDS: float = 90.0
    WS_MAX_MESSAGE_BYTES: int = 4096

    # CORS
    CORS_ORIGINS: str = "http://localhost:5173"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def admin_emails(self) -> List[str]:
        raw = self.ADMIN_EMAILS.replace(",", " ")
        return [email.strip().lower() for email in raw.split() if email.strip()]

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("foundpoems")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "ADMIN_JWT_SECRET",
        "ADMIN_EMAILS",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    mode = (cfg.FEED_FIRST_POLL_MODE or "").lower()
    if mode not in {"latest", "none", "all"}:
        message = f"FEED_FIRST_POLL_MODE must be one of latest, none, all (got {cfg.FEED_FIRST_POLL_MODE!r})"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not cfg.INVITE_EMAIL_FROM or not cfg.RESEND_API_KEY:
        log.info("Invite email delivery disabled (RESEND_API_KEY / INVITE_EMAIL_FROM not set)")

    return True
