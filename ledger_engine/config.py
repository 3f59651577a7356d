"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///ledger.db"  # memory:// for in-process only
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Posting and locking
    lock_timeout_seconds: float = 5.0
    post_max_attempts: int = 3
    post_retry_backoff_seconds: float = 0.05
    require_both_sides: bool = True  # Post needs at least one debit and one credit
    
    # Feature flags
    enable_audit_logging: bool = True
    enable_events: bool = True
    
    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False
    )


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
