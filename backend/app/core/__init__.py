"""Core utilities and configuration."""

from app.core.config import Settings, get_settings
from app.core.database import Base, db_manager, session_scope, transaction
from app.core.logging import (
    claude_logger,
    db_logger,
    gate_logger,
    get_logger,
    pipeline_logger,
    setup_logging,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "Base",
    "db_manager",
    "session_scope",
    "transaction",
    # Logging
    "claude_logger",
    "db_logger",
    "gate_logger",
    "get_logger",
    "pipeline_logger",
    "setup_logging",
]
