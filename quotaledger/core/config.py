import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database (unset = single-instance in-memory store)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Store primitives
    STORE_BATCH_WRITE_LIMIT: int = 25
    STORE_BATCH_GET_LIMIT: int = 100
    STORE_READ_RETRIES: int = 3
    STORE_RETRY_BACKOFF_SECONDS: float = 0.05
    STORE_DEFAULT_PAGE_SIZE: int = 20
    STORE_MAX_PAGE_SIZE: int = 500

    # Tier limits (deploy-time data, not code)
    TIER_LIMITS_FILE: Optional[str] = None
    TIER_LIMITS_JSON: Optional[str] = None

    # Quota admission: False = check-then-act soft limit
    QUOTA_HARD_LIMITS: bool = False

    # Audit trail
    AUDIT_ENABLED: bool = True
    AUDIT_QUEUE_SIZE: int = 1000

    # Admin access
    ADMIN_ROLES: str = "SUPER_ADMIN,PLATFORM_ADMIN"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def admin_roles(self) -> List[str]:
        return [role.strip().upper() for role in self.ADMIN_ROLES.split(",") if role.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("quotaledger")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []
    if str(cfg.ENV).lower() == "production" and not cfg.DATABASE_URL:
        problems.append("Missing required configuration: DATABASE_URL")

    if cfg.STORE_BATCH_WRITE_LIMIT <= 0 or cfg.STORE_BATCH_GET_LIMIT <= 0:
        problems.append("Store batch limits must be positive")

    # Imported lazily: the tier table module reads settings at import time.
    from quotaledger.features.quotas.tiers import load_tier_limits

    try:
        load_tier_limits(settings_obj=cfg)
    except (OSError, ValueError) as exc:
        problems.append(f"Tier limit table could not be loaded: {exc}")

    for message in problems:
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return not problems
