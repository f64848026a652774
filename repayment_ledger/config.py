"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Repayment ledger engine configuration"""

    # Storage configuration
    database_url: str = "sqlite:///repayment_ledger.db"

    # Financial rules
    amount_tolerance: str = "0.01"  # Tolerance used for settlement and overpayment checks
    currency: str = "INR"
    allocation_order: str = "interest,principal,penalty"  # Per-installment waterfall
    waiver_status_policy: str = "waived_majority"  # waived_majority, waived_covers_emi, paid_if_any_payment
    foreclosure_quote_validity_hours: int = 24

    # Messaging collaborator
    notifications_enabled: bool = True
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # stderr when unset

    # Feature flags
    enable_audit_logging: bool = True

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
