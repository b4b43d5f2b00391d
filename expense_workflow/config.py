"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WorkflowEngineConfig(BaseSettings):
    """Expense workflow engine configuration"""

    # Storage configuration
    database_url: str = "sqlite:///expense_workflow.db"  # "memory" for in-process storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Scheduler configuration
    scheduler_enabled: bool = True
    scheduler_tick_seconds: int = 300  # 5 minutes

    # Workflow rules
    default_workflow_id: Optional[str] = None  # Fallback when no definition matches
    min_comment_length: int = 10
    max_comment_length: int = 1000
    return_requires_resubmit: bool = False  # Keep returned reports parked until resubmitted

    # Directory (role membership / relationship graph) service
    directory_url: str = ""  # Empty = in-process directory
    directory_timeout: float = 2.0
    directory_api_key: str = ""

    # Escalation notifications
    escalation_webhook_url: str = ""  # Empty = log-only notifications
    notification_timeout: float = 5.0

    class Config:
        env_prefix = "EXPENSE_WF_"
        env_file = ".env"
        case_sensitive = False


# Loaded lazily so tests can set environment variables first
_config: Optional[WorkflowEngineConfig] = None


def get_config() -> WorkflowEngineConfig:
    """Get configuration instance"""
    global _config
    if _config is None:
        _config = WorkflowEngineConfig()
    return _config


def reload_config() -> WorkflowEngineConfig:
    """Reload configuration from environment"""
    global _config
    _config = WorkflowEngineConfig()
    return _config
