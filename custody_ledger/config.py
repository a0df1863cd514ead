"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class CustodyConfig(BaseSettings):
    """Custody ledger configuration"""

    # Ledger limits, fixed for the lifetime of a ledger
    withdrawal_threshold: int = 1000
    bank_cap: int = 10000

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///custody.db

    # Value transfer configuration
    transfer_gateway_url: str = ""  # Empty = in-process gateway
    transfer_timeout: float = 5.0
    transfer_api_key: str = ""

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "CUSTODY_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = CustodyConfig()


def get_config() -> CustodyConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CustodyConfig:
    """Reload configuration from environment"""
    global config
    config = CustodyConfig()
    return config
