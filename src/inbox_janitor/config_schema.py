"""Pydantic configuration schema for InboxJanitor.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from inbox_janitor.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


def _reject_traversal(value: str, label: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{label} cannot be empty")
    if ".." in value:
        raise ValueError(f"{label} cannot contain '..' (path traversal)")
    return value


class DatabaseConfig(BaseModel):
    """SQLite storage configuration."""

    path: str = Field(default="data/janitor.db", description="SQLite database file")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        return _reject_traversal(v, "Database path")


class GmailConfig(BaseModel):
    """Google OAuth client and Gmail API settings."""

    client_id: str = Field(default="", description="Google OAuth client ID")
    client_secret: str = Field(default="", description="Google OAuth client secret")
    token_dir: str = Field(
        default="data/tokens",
        description="Directory holding one refresh-token file per mailbox account",
    )
    token_encryption_key: str = Field(
        default="",
        description="Fernet key for token files (JANITOR_TOKEN_KEY takes precedence)",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=120,
        description="Per-request timeout for Gmail API calls",
    )

    @field_validator("token_dir")
    @classmethod
    def validate_token_dir(cls, v: str) -> str:
        return _reject_traversal(v, "Token directory")


class SyncConfig(BaseModel):
    """Sync engine configuration."""

    lookback_days: int = Field(
        default=90,
        ge=1,
        le=3650,
        description="Only mirror messages newer than this many days",
    )
    page_size: int = Field(
        default=500,
        ge=1,
        le=500,
        description="Message ids requested per Gmail page (Gmail maximum is 500)",
    )
    chunk_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Messages processed between progress checkpoints",
    )
    time_budget_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Wall-clock ceiling of one sync invocation",
    )
    safety_margin_seconds: float = Field(
        default=50.0,
        ge=0,
        description="Stop this long before the budget runs out",
    )

    @model_validator(mode="after")
    def validate_margin(self) -> "SyncConfig":
        if self.safety_margin_seconds >= self.time_budget_seconds:
            raise ValueError(
                "sync.safety_margin_seconds must be smaller than sync.time_budget_seconds"
            )
        return self

    @property
    def effective_budget_seconds(self) -> float:
        """Working time of one invocation (budget minus safety margin)."""
        return self.time_budget_seconds - self.safety_margin_seconds


class ClassificationConfig(BaseModel):
    """Deletion classification configuration."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Claude model used to score messages",
    )
    max_tokens: int = Field(
        default=8192,
        ge=256,
        le=64000,
        description="Max output tokens per chunk request",
    )
    min_age_days: int = Field(
        default=7,
        ge=0,
        le=3650,
        description="Only classify messages older than this (auto-include senders bypass it)",
    )
    batch_limit: int = Field(
        default=150,
        ge=1,
        le=1000,
        description="Max messages evaluated per classification run",
    )
    chunk_size: int = Field(
        default=50,
        ge=1,
        le=200,
        description="Messages per classifier request (chunks run concurrently)",
    )
    delete_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Adjusted score at or above which a message becomes a delete candidate",
    )
    snippet_max_chars: int = Field(
        default=200,
        ge=0,
        le=1000,
        description="Snippet characters sent to the classifier",
    )


class SchedulerConfig(BaseModel):
    """Optional in-process scheduler that resumes unfinished syncs."""

    enabled: bool = Field(default=False, description="Run the resume-sync job in `serve`")
    interval_minutes: int = Field(
        default=5,
        ge=1,
        le=1440,
        description="How often to resume active sync runs",
    )


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days to retain LLM request logs",
    )
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts (disable to save disk space)",
    )
    log_responses: bool = Field(
        default=True,
        description="Store full responses",
    )


class AppConfig(BaseModel):
    """Root configuration schema for InboxJanitor.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
