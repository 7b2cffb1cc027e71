import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Transfer Engine API"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Security settings
    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 30

    # CORS settings
    allowed_origins: List[str] = ["*"]  # In production, specify exact origins
    allowed_methods: List[str] = ["GET", "POST", "PATCH", "OPTIONS"]
    allowed_headers: List[str] = ["*"]

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    # Storage settings
    lock_timeout_seconds: Optional[float] = None  # None waits until the lock holder finishes

    # Timezone used for created_at / updated_at
    timezone: str = "UTC"

    # Feature flags
    enable_test_endpoints: bool = True
    seed_demo_accounts: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Environment-specific configurations
class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    log_format: str = "text"
    rate_limit_per_minute: int = 100  # More lenient for development
    seed_demo_accounts: bool = True


class ProductionSettings(Settings):
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: List[str] = []  # Must be specified in production
    rate_limit_per_minute: int = 30
    enable_test_endpoints: bool = False


class TestingSettings(Settings):
    debug: bool = True
    log_level: str = "WARNING"  # Reduce noise in tests
    rate_limit_enabled: bool = False
    seed_demo_accounts: bool = False


def get_settings_for_environment(env: str = "development") -> Settings:
    """Get settings for specific environment."""
    settings_map = {
        "development": DevelopmentSettings,
        "production": ProductionSettings,
        "testing": TestingSettings,
    }

    settings_class = settings_map.get(env.lower(), Settings)
    return settings_class()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance for the environment named by APP_ENV."""
    return get_settings_for_environment(os.getenv("APP_ENV", "development"))
