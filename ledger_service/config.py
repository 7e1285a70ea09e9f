"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class LedgerConfig(BaseSettings):
    """Ledger service configuration"""

    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/ledger.db
    database_timeout: float = 30.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "USD"
    default_branch_code: str = "HQ"
    inter_branch_transfer_fee: str = "10.00"

    # Batch jobs
    batch_chunk_size: int = 100
    batch_workers: int = 1
    dormancy_days: int = 365
    interest_periods_per_year: int = 12
    interest_min_amount: str = "0.01"
    interest_eligible_types: List[str] = ["SAVINGS", "FIXED_DEPOSIT"]

    # Days overdue threshold -> penalty percent of EMI, checked from the highest threshold down
    penalty_tiers: Dict[int, str] = {90: "5", 60: "3", 30: "2", 0: "1"}

    class Config:
        env_prefix = "LEDGER_"
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
