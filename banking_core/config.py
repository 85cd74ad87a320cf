"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankingConfig(BaseSettings):
    """Banking core configuration"""
    
    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/file.db
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Message bus configuration
    collaborator_timeout_seconds: float = 2.0
    bus_max_workers: int = 16
    
    # Account rules
    max_accounts_per_owner: int = 2
    account_number_max_attempts: int = 100
    default_account_type: str = "CORRIENTE"
    
    # Transaction rules
    transaction_number_prefix: str = "TXN"
    restrict_withdrawals: bool = False  # Evaluate restrictions on withdrawals too
    pending_authorization_ttl_minutes: int = 30
    
    # Pattern (biometric) service configuration
    pattern_service_url: str = ""  # Empty = in-memory validator
    pattern_service_timeout: float = 2.0
    pattern_service_api_key: str = ""
    
    # Authorization rate limiting
    auth_max_attempts_per_account: int = 5
    auth_max_attempts_per_ip: int = 15
    auth_attempt_window_seconds: int = 3600
    auth_min_interval_seconds: int = 10
    auth_rate_limit_max_entries: int = 10000
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "BANKING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankingConfig()


def get_config() -> BankingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankingConfig:
    """Reload configuration from environment"""
    global config
    config = BankingConfig()
    return config
