from pydantic_settings import BaseSettings
from typing import Dict, List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Ledger Isolation Harness"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # API settings
    rate_limit_per_minute: int = 5
    allowed_origins: List[str] = ["*"]
    allowed_methods: List[str] = ["GET", "POST", "OPTIONS"]
    allowed_headers: List[str] = ["*"]

    # Ledger store settings
    ledger_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "ledger_harness.db"
    sqlite_timeout: float = 30.0
    sqlite_begin_mode: str = "IMMEDIATE"

    # Workload settings
    n_accounts: int = 100
    initial_amount: int = 10000
    transfer_connections: int = 8
    n_iterations: int = 10000
    pool_size: int = 8
    progress_interval: int = 1000
    poll_interval: float = 0.0  # 0 keeps the monitor in a tight loop
    final_sample: bool = True
    seed: Optional[int] = None

    # {worker_id: {"debit": [...], "credit": [...]}}, generated when unset
    worker_pools: Optional[Dict[int, Dict[str, List[int]]]] = None

    # Timezone for report timestamps
    timezone: str = "UTC"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "HARNESS_"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Environment-specific configurations
class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    log_format: str = "text"
    n_iterations: int = 1000
    progress_interval: int = 100


class ProductionSettings(Settings):
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: List[str] = []  # Must be specified in production
    rate_limit_per_minute: int = 2


class TestingSettings(Settings):
    debug: bool = True
    log_level: str = "WARNING"  # Reduce noise in tests
    ledger_backend: str = "memory"
    rate_limit_per_minute: int = 1000
    n_accounts: int = 20
    initial_amount: int = 100
    transfer_connections: int = 4
    n_iterations: int = 50
    pool_size: int = 4
    progress_interval: int = 10
    seed: Optional[int] = 7


def get_settings_for_environment(env: str = "development") -> Settings:
    """Get settings for specific environment."""
    settings_map = {
        "development": DevelopmentSettings,
        "production": ProductionSettings,
        "testing": TestingSettings,
    }

    settings_class = settings_map.get(env.lower(), Settings)
    return settings_class()
