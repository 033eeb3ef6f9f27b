"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

from .currency import Currency
from .storage import StorageInterface, create_storage


class CreditLedgerConfig(BaseSettings):
    """Credit ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage configuration
    database_url: str = "sqlite:///credit_ledger.db"  # memory:// for tests
    loans_table: str = "loans"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "EUR"
    unnamed_debtor_label: str = "Unnamed"
    default_due_months: int = 1
    debtor_search_min_length: int = 3
    reject_overpayment: bool = False  # Overpayments are kept and flagged by default

    # Feature flags
    enable_audit_logging: bool = True
    auto_migrate: bool = True

    @property
    def ledger_currency(self) -> Currency:
        return Currency.from_code(self.currency)

    def create_storage(self) -> StorageInterface:
        return create_storage(self.database_url)


# Global configuration instance
config = CreditLedgerConfig()


def get_config() -> CreditLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CreditLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = CreditLedgerConfig()
    return config
