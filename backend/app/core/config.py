"""Application configuration loaded from environment variables.

All configuration is via environment variables (or a local .env file).
No hardcoded URLs, ports, or credentials.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Brand Content Studio API")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")
    frontend_url: str | None = Field(
        default=None, description="Allowed CORS origin in production"
    )

    # Server
    port: int = Field(default=8000, description="Port to bind to")
    host: str = Field(default="0.0.0.0", description="Host to bind to")

    # Database
    database_url: str = Field(
        ...,
        description="Database connection string (postgresql:// or sqlite+aiosqlite://)",
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size")
    db_max_overflow: int = Field(default=10, description="Max overflow connections")
    db_pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    db_slow_query_threshold_ms: int = Field(
        default=100, description="Threshold for slow query warnings (ms)"
    )
    db_connect_timeout: int = Field(
        default=60, description="Connection timeout in seconds"
    )
    db_command_timeout: int = Field(
        default=60, description="Command timeout in seconds"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format: json or text")

    # Auth - identity is established upstream and forwarded in headers
    auth_required: bool = Field(
        default=True,
        description="When false, requests run as a fixed dev user",
    )
    user_id_header: str = Field(default="X-User-Id")
    workspace_id_header: str = Field(default="X-Workspace-Id")
    dev_user_id: str = Field(default="dev-user")

    # Claude/Anthropic LLM
    anthropic_api_key: str | None = Field(
        default=None,
        description="Anthropic API key for Claude models",
    )
    claude_model: str = Field(
        default="claude-sonnet-4-5",
        description="Default Claude model, used by steps without their own",
    )
    claude_step_models: dict[str, str] = Field(
        default_factory=dict,
        description='Per-step model overrides as JSON, e.g. {"angles": "claude-opus-4-6"}',
    )
    claude_timeout: float = Field(
        default=90.0, description="Claude HTTP request timeout in seconds"
    )
    claude_max_attempts: int = Field(
        default=1,
        ge=1,
        description="Attempts per completion (1 = no internal retry)",
    )
    claude_retry_delay: float = Field(
        default=1.0, description="Base delay between retries in seconds"
    )
    claude_max_tokens: int = Field(
        default=4096, description="Maximum tokens in Claude response"
    )
    claude_circuit_failure_threshold: int = Field(
        default=5, description="Failures before circuit opens"
    )
    claude_circuit_recovery_timeout: float = Field(
        default=60.0, description="Seconds before attempting recovery"
    )

    # Admission gate
    burst_max_requests: int = Field(
        default=20, ge=1, description="Requests allowed per burst window"
    )
    burst_window_seconds: float = Field(
        default=60.0, gt=0, description="Sliding burst window length"
    )
    plan_cache_ttl_seconds: float = Field(
        default=60.0, ge=0, description="How long a plan tier lookup is reused"
    )

    # Context aggregator
    context_max_field_chars: int = Field(
        default=1500, ge=50, description="Cap on a single source field"
    )
    context_max_section_chars: int = Field(
        default=4000, ge=200, description="Cap on one rendered section"
    )
    context_max_total_chars: int = Field(
        default=12000, ge=500, description="Cap on the whole context block"
    )

    # Generation pipeline
    pipeline_step_timeout: float = Field(
        default=120.0, gt=0, description="Upper bound for one provider call"
    )
    pipeline_rules_file: str | None = Field(
        default=None,
        description="Optional JSON file overriding the fixed prompt rules",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
