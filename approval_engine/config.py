"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Optional


class ApprovalEngineConfig(BaseSettings):
    """Approval workflow engine configuration"""
    
    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path, postgresql://...
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # SLA configuration
    default_sla_hours: int = Field(72, gt=0)
    at_risk_window_hours: int = Field(24, ge=0)
    auto_expire_overdue_hours: int = Field(0, ge=0)  # 0 disables automatic expiry
    
    # Escalation and delegation
    default_max_escalation_level: int = Field(3, ge=0)
    default_escalation_sla_hours: int = Field(24, gt=0)
    default_delegation_hours: int = Field(72, gt=0)
    
    # Request limits
    max_payload_bytes: int = Field(64 * 1024, gt=0)
    default_currency: str = "KES"
    
    # Identity used for sweeper-initiated transitions
    system_actor_id: str = "system"
    
    # Background sweep
    sweep_interval_seconds: int = Field(300, gt=0)
    
    class Config:
        env_prefix = "APPROVALS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ApprovalEngineConfig()


def get_config() -> ApprovalEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ApprovalEngineConfig:
    """Reload configuration from environment"""
    global config
    config = ApprovalEngineConfig()
    return config
