"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="civictrack", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/civictrack",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Configuration ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to SLA configuration YAML file"
    )
    escalation_sweep_interval: int = Field(
        default=300,
        description="Seconds between escalation sweeps (0 disables the scheduler)",
        ge=0
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#civic-escalations",
        description="Default Slack channel for escalation notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("escalation_sweep_interval")
    @classmethod
    def validate_sweep_interval(cls, v: int) -> int:
        """Zero disables the sweeper; anything else must be at least 10 seconds."""
        if 0 < v < 10:
            raise ValueError("escalation_sweep_interval must be 0 or >= 10")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class IssueStatus(str, Enum):
    """Issue lifecycle statuses."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    REOPENED = "reopened"
    ESCALATED = "escalated"


class Priority(str, Enum):
    """Issue priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class IssueCategory(str, Enum):
    """Closed set of civic issue categories."""
    ROADS_INFRASTRUCTURE = "roads-infrastructure"
    STREET_LIGHTING = "street-lighting"
    WASTE_MANAGEMENT = "waste-management"
    WATER_DRAINAGE = "water-drainage"
    PARKS_PUBLIC_SPACES = "parks-public-spaces"
    TRAFFIC_SIGNAGE = "traffic-signage"
    PUBLIC_HEALTH_SAFETY = "public-health-safety"
    OTHER = "other"


# ========== SLA defaults ==========

DEFAULT_SLA_HOURS: Dict[str, int] = {
    Priority.URGENT.value: 24,
    Priority.HIGH.value: 48,
    Priority.MEDIUM.value: 72,
    Priority.LOW.value: 120,
}

ESCALATION_TARGETS: Dict[int, str] = {
    1: "Department Staff",
    2: "Department Head",
    3: "Commissioner/Mayor",
}

MIN_ESCALATION_LEVEL = 1
MAX_ESCALATION_LEVEL = 3
DUE_TIME_DAYS = 7
PENALTY_POINTS_PER_LEVEL = 10


# ========== Lists for validation ==========

VALID_PRIORITIES = [p.value for p in Priority]

TERMINAL_STATUSES = frozenset({IssueStatus.RESOLVED, IssueStatus.REJECTED})
ACTIVE_STATUSES = frozenset(set(IssueStatus) - TERMINAL_STATUSES)
