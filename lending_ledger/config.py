"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Dict, Optional

from .currency import Currency


class LedgerConfig(BaseSettings):
    """Lending ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///lending_ledger.db"  # or "memory://"
    lock_timeout_seconds: float = 5.0
    max_conflict_retries: int = 3

    # Ledger currency and product rules
    currency: str = "NGN"
    default_interest_rate: str = "0.15"
    min_loan_amount: str = "10000"
    max_loan_amount: str = "1000000"
    min_term_months: int = 3
    max_term_months: int = 60
    overpayment_tolerance: str = "0"
    allow_multiple_open_loans: bool = False

    # Virtual accounts
    bank_name: str = "QuickFund Bank"
    account_number_prefix: str = "QF"
    lender_owner_id: str = "__lender__"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    component_log_levels: Dict[str, str] = {}  # e.g. {"store": "DEBUG"}

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False

    @property
    def ledger_currency(self) -> Currency:
        return Currency[self.currency.upper()]

    @property
    def default_rate(self) -> Decimal:
        return Decimal(self.default_interest_rate)

    @property
    def tolerance(self) -> Decimal:
        return Decimal(self.overpayment_tolerance)


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
