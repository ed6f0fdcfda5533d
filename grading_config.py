"""
Configuration module for the conversation grading engine.

This module provides environment configuration management for tree limits,
scoring behaviour, session lifecycle and persistence settings.
"""

from enum import Enum
from typing import Optional, Dict, Any
from pathlib import Path
from dataclasses import dataclass, field

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Load environment variables from .env file
load_dotenv()


class Environment(str, Enum):
    """Deployment environment of the grading service."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Log levels accepted by APP_LOG_LEVEL."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackend(str, Enum):
    """Persistence backends for saved sessions."""
    MEMORY = "memory"
    FILE = "file"
    SQLITE = "sqlite"


class TreeConfig(BaseSettings):
    """Structural limits for a conversation tree."""

    model_config = SettingsConfigDict(env_prefix="TREE_", case_sensitive=False)

    max_depth: int = Field(
        default=50,
        gt=0,
        description="Maximum depth of any node (roots are depth 1)"
    )
    max_nodes: int = Field(
        default=10000,
        gt=0,
        description="Maximum number of nodes in one tree"
    )


class ScoringConfig(BaseSettings):
    """Scoring engine settings."""

    model_config = SettingsConfigDict(env_prefix="SCORING_", case_sensitive=False)

    default_score: float = Field(
        default=50.0,
        ge=0.0,
        le=100.0,
        description="Score assigned when a strategy fails or times out"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Maximum time a strategy may take for one Q&A pair"
    )
    model: str = Field(
        default="openai:gpt-4o",
        description="Model used by agent-backed scoring and topic extraction"
    )
    failure_threshold: int = Field(
        default=5,
        gt=0,
        description="Consecutive failures before the scoring circuit opens"
    )
    recovery_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds before an open scoring circuit is retried"
    )


class SessionConfig(BaseSettings):
    """Session lifecycle and persistence settings."""

    model_config = SettingsConfigDict(env_prefix="SESSION_", case_sensitive=False)

    default_session_id: str = Field(
        default="default",
        description="Session created when a multi-session system starts"
    )
    max_age_seconds: int = Field(
        default=3600,
        gt=0,
        description="Idle time after which a session is considered expired"
    )
    auto_save: bool = Field(
        default=False,
        description="Persist the active session after every mutation"
    )
    storage_backend: StorageBackend = Field(
        default=StorageBackend.MEMORY,
        description="Persistence backend"
    )
    storage_path: Path = Field(
        default=Path("./data/sessions"),
        description="Directory for saved sessions: one JSON file each, or sessions.db for sqlite"
    )
    exhaust_after_visits: Optional[int] = Field(
        default=None,
        gt=0,
        description="Mark a topic exhausted once visited this many times"
    )

    @field_validator("default_session_id")
    @classmethod
    def validate_default_session_id(cls, v: str) -> str:
        """Session ids are restricted to URL-safe characters."""
        if not v or not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError(f"Invalid default session id: {v!r}")
        return v


class ApplicationConfig(BaseSettings):
    """Process-wide settings shared by every grading session."""

    model_config = SettingsConfigDict(env_prefix="APP_", case_sensitive=False)

    env: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment"
    )
    debug: bool = Field(
        default=False,
        description="Debug mode"
    )
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level"
    )


@dataclass
class RuntimeConfig:
    """Every grading config section, loaded together."""

    tree: TreeConfig = field(default_factory=TreeConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    app: ApplicationConfig = field(default_factory=ApplicationConfig)

    def reload(self):
        """Re-read every section from the environment."""
        self.tree = TreeConfig()
        self.scoring = ScoringConfig()
        self.session = SessionConfig()
        self.app = ApplicationConfig()

    @property
    def is_production(self) -> bool:
        return self.app.env == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.app.env == Environment.TESTING

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict of the effective settings, for logs and diagnostics."""
        return {
            "environment": self.app.env.value,
            "debug": self.app.debug,
            "log_level": self.app.log_level.value,
            "tree": {
                "max_depth": self.tree.max_depth,
                "max_nodes": self.tree.max_nodes,
            },
            "scoring": {
                "default_score": self.scoring.default_score,
                "timeout_seconds": self.scoring.timeout_seconds,
                "model": self.scoring.model,
                "failure_threshold": self.scoring.failure_threshold,
                "recovery_timeout": self.scoring.recovery_timeout,
            },
            "session": {
                "default_session_id": self.session.default_session_id,
                "max_age_seconds": self.session.max_age_seconds,
                "auto_save": self.session.auto_save,
                "storage_backend": self.session.storage_backend.value,
                "storage_path": str(self.session.storage_path),
                "exhaust_after_visits": self.session.exhaust_after_visits,
            },
        }


# Global configuration instance
config = RuntimeConfig()


def get_config() -> RuntimeConfig:
    """The process-wide RuntimeConfig."""
    return config


def reload_config() -> RuntimeConfig:
    """Re-read the process-wide RuntimeConfig from the environment."""
    config.reload()
    return config
