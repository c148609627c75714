"""
ChangeFlow Engine configuration.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    settings = config[config_name]()
"""

import os


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # json | readable

    # Shared counter store (rate limiting). Empty or memory:// = in-process
    REDIS_URL = os.getenv("REDIS_URL", "")

    RATE_LIMIT_ENABLED = _bool("RATE_LIMIT_ENABLED", "true")
    RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "120"))

    # Notice escalation sweep
    ESCALATION_SWEEP_ENABLED = _bool("ESCALATION_SWEEP_ENABLED", "true")
    ESCALATION_SWEEP_INTERVAL_SECONDS = int(os.getenv("ESCALATION_SWEEP_INTERVAL_SECONDS", "300"))
    DEFAULT_REMINDER_AFTER_HOURS = int(os.getenv("DEFAULT_REMINDER_AFTER_HOURS", "48"))
    DEFAULT_ESCALATE_AFTER_HOURS = int(os.getenv("DEFAULT_ESCALATE_AFTER_HOURS", "120"))

    # Storage adapter retry (transient errors only)
    STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
    STORE_RETRY_BASE_DELAY = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.1"))

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "readable")


class TestingConfig(Config):
    TESTING = True
    LOG_FORMAT = "readable"
    RATE_LIMIT_ENABLED = False
    ESCALATION_SWEEP_ENABLED = False
    STORE_RETRY_BASE_DELAY = 0.0


class ProductionConfig(Config):
    DEBUG = False
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    def __init__(self):
        if self.RATE_LIMIT_ENABLED and not self.REDIS_URL:
            raise RuntimeError(
                "REDIS_URL is required in production: rate limit counters must be shared "
                "across instances"
            )


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(name: str = None) -> Config:
    """Instantiate the configuration for ``name`` (defaults to APP_ENV)."""
    name = name or os.getenv("APP_ENV", "default")
    return config.get(name, DevelopmentConfig)()
