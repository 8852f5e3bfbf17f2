"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanEngineConfig(BaseSettings):
    """Loan engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_engine.db"  # Default SQLite
    use_in_memory_storage: bool = False

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Loan defaults
    default_currency: str = "EUR"
    default_day_count: str = "30/360"
    max_term_months: int = 600  # 50 years
    high_rate_warning_percent: str = "100"

    # Early repayment: reduce_term keeps the payment, reduce_payment keeps the term
    early_repayment_policy: str = "reduce_term"

    # Effective rate (APR) solver
    effective_rate_max_iterations: int = 100
    effective_rate_tolerance: str = "0.01"

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config
