"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Cycle ledger configuration"""

    # Storage configuration
    database_url: str = "sqlite:///cycle_ledger.db"  # or memory:// for tests

    # Institution icon uploads
    upload_dir: str = "storage/uploads"
    icon_max_bytes: int = 2 * 1024 * 1024  # 2MB

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Simulator guard rail
    max_loop_count: int = 10000

    class Config:
        env_prefix = "CYCLE_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
