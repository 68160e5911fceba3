import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Expiry dates are computed at 23:59:59 in this zone
    QUOTA_TIMEZONE: str = "Asia/Shanghai"

    # External quota store (AI gateway usage counters)
    QUOTA_STORE_BACKEND: str = "memory"  # memory | http | redis
    QUOTA_STORE_URL: Optional[str] = None
    QUOTA_STORE_TOKEN: Optional[str] = None
    QUOTA_STORE_TIMEOUT_SECONDS: float = 10.0
    QUOTA_STORE_VERIFY: bool = True
    REDIS_URL: str = "redis://localhost:6379"
    QUOTA_STORE_REDIS_PREFIX: str = "quota"

    # Expiry processor
    EXPIRY_MAX_WORKERS: int = 4
    EXPIRY_BATCH_LIMIT: int = 0  # 0 = no limit

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
    log = logger or logging.getLogger("quota_manager")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["DATABASE_URL"]
    backend = (cfg.QUOTA_STORE_BACKEND or "memory").lower()
    if backend == "http":
        required_keys.append("QUOTA_STORE_URL")
    elif backend == "redis":
        required_keys.append("REDIS_URL")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    problems = []
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")
    if backend not in {"memory", "http", "redis"}:
        problems.append(f"Unknown QUOTA_STORE_BACKEND: {backend}")
    if backend == "memory" and cfg.ENV.lower() == "production":
        problems.append("QUOTA_STORE_BACKEND=memory is not durable in production")

    if problems:
        message = "; ".join(problems)
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
