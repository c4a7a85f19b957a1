"""Structured logging configuration.

All logs go to stdout for the platform to capture.
Uses JSON format for structured logging in production.

ERROR LOGGING REQUIREMENTS:
- Database connection errors with masked connection string
- Slow queries (>100ms) at WARNING level
- Transaction failures with rollback context
- Provider calls with model, timing and token usage; never the API key
- Burst and quota denials at WARNING with subject and category
- Pipeline step start/finish with step name and duration
"""

import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

from pythonjsonlogger import jsonlogger

from app.core.config import get_settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):  # type: ignore[name-defined]
    """Custom JSON formatter with additional fields."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(UTC).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def mask_connection_string(conn_str: str) -> str:
    """Mask the password in a database connection string."""
    if not conn_str:
        return ""
    return re.sub(r"(://[^:/]+:)([^@]+)(@)", r"\1****\3", conn_str)


def truncate_text(text: str, max_length: int = 500) -> str:
    """Truncate text for logging."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"... (truncated, {len(text)} chars)"


def setup_logging() -> None:
    """Configure application logging.

    JSON format in production, text format in development.
    """
    settings = get_settings()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    formatter: logging.Formatter
    if settings.log_format == "json":
        formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


class DatabaseLogger:
    """Logger for database operations with required error logging."""

    def __init__(self) -> None:
        self.logger = get_logger("database")

    def connection_error(self, error: Exception, connection_string: str) -> None:
        """Log database connection error with masked connection string."""
        self.logger.error(
            "Database connection failed",
            extra={
                "connection_string": mask_connection_string(connection_string),
                "error_type": type(error).__name__,
                "error_message": str(error),
            },
        )

    def slow_query(
        self, query: str, duration_ms: float, table: str | None = None
    ) -> None:
        """Log slow query at WARNING level."""
        self.logger.warning(
            "Slow query detected",
            extra={
                "duration_ms": round(duration_ms, 2),
                "query": query[:500],
                "table": table,
            },
        )

    def transaction_failure(
        self, error: Exception, table: str | None = None, context: str | None = None
    ) -> None:
        """Log transaction failure with rollback context."""
        self.logger.error(
            "Transaction failed, rolling back",
            extra={
                "error_type": type(error).__name__,
                "error_message": str(error),
                "table": table,
                "rollback_context": context,
            },
        )

    def migration_start(self, version: str, description: str) -> None:
        """Log migration start."""
        self.logger.info(
            "Starting database migration",
            extra={
                "migration_version": version,
                "description": description,
            },
        )

    def migration_end(self, version: str, success: bool) -> None:
        """Log migration completion."""
        level = logging.INFO if success else logging.ERROR
        self.logger.log(
            level,
            "Database migration completed",
            extra={
                "migration_version": version,
                "success": success,
            },
        )


db_logger = DatabaseLogger()


class ClaudeLogger:
    """Logger for Claude/Anthropic completion calls.

    Logs outbound calls with model and timing, request/response bodies at
    DEBUG (truncated), rate limits, overloads, auth failures and timeouts.
    Never logs the API key.
    """

    def __init__(self) -> None:
        self.logger = get_logger("claude")

    def api_call_start(
        self,
        model: str,
        prompt_length: int,
        message_count: int,
        attempt: int = 0,
    ) -> None:
        """Log outbound API call start at DEBUG level."""
        self.logger.debug(
            f"Claude API call: {model}",
            extra={
                "model": model,
                "prompt_length": prompt_length,
                "message_count": message_count,
                "attempt": attempt,
            },
        )

    def api_call_success(
        self,
        model: str,
        duration_ms: float,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        request_id: str | None = None,
    ) -> None:
        """Log successful API call with token usage."""
        self.logger.info(
            f"Claude API call completed: {model}",
            extra={
                "model": model,
                "duration_ms": round(duration_ms, 2),
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "total_tokens": (input_tokens or 0) + (output_tokens or 0),
                "request_id": request_id,
                "success": True,
            },
        )

    def api_call_error(
        self,
        model: str,
        duration_ms: float,
        status_code: int | None,
        error: str,
        error_type: str,
        attempt: int = 0,
        request_id: str | None = None,
    ) -> None:
        """Log failed API call at WARNING (4xx) or ERROR (everything else)."""
        level = (
            logging.WARNING
            if status_code and 400 <= status_code < 500
            else logging.ERROR
        )
        self.logger.log(
            level,
            f"Claude API call failed: {model}",
            extra={
                "model": model,
                "duration_ms": round(duration_ms, 2),
                "status_code": status_code,
                "error": error,
                "error_type": error_type,
                "attempt": attempt,
                "request_id": request_id,
                "success": False,
            },
        )

    def timeout(self, model: str, timeout_seconds: float) -> None:
        """Log request timeout at WARNING level."""
        self.logger.warning(
            "Claude API request timeout",
            extra={"model": model, "timeout_seconds": timeout_seconds},
        )

    def rate_limit(
        self, model: str, retry_after: float | None, request_id: str | None
    ) -> None:
        """Log upstream rate limit (429) at WARNING level."""
        self.logger.warning(
            "Claude API rate limit hit (429)",
            extra={
                "model": model,
                "retry_after_seconds": retry_after,
                "request_id": request_id,
            },
        )

    def overloaded(self, model: str, status_code: int, request_id: str | None) -> None:
        """Log provider overload (529/503) at WARNING level."""
        self.logger.warning(
            f"Claude API overloaded ({status_code})",
            extra={
                "model": model,
                "status_code": status_code,
                "request_id": request_id,
            },
        )

    def auth_failure(self, status_code: int) -> None:
        """Log authentication failure (401/403) at ERROR level."""
        self.logger.error(
            f"Claude API authentication failed ({status_code})",
            extra={"status_code": status_code},
        )

    def request_body(self, model: str, system_prompt: str, user_prompt: str) -> None:
        """Log request body at DEBUG level (truncated)."""
        self.logger.debug(
            "Claude API request body",
            extra={
                "model": model,
                "system_prompt": truncate_text(system_prompt, 200),
                "user_prompt": truncate_text(user_prompt, 500),
            },
        )

    def response_body(
        self,
        model: str,
        response_text: str,
        stop_reason: str | None = None,
    ) -> None:
        """Log response body at DEBUG level (truncated)."""
        self.logger.debug(
            "Claude API response body",
            extra={
                "model": model,
                "response_text": truncate_text(response_text, 500),
                "stop_reason": stop_reason,
            },
        )

    def circuit_rejected(self, model: str) -> None:
        """Log a call rejected because the circuit is open."""
        self.logger.warning(
            "Claude call rejected, circuit breaker open",
            extra={"model": model},
        )


claude_logger = ClaudeLogger()


class GateLogger:
    """Logger for burst limiter and monthly quota decisions."""

    def __init__(self) -> None:
        self.logger = get_logger("admission")

    def burst_denied(
        self, subject_key: str, max_requests: int, window_seconds: float, retry_after: int
    ) -> None:
        """Log a burst-limit denial at WARNING level."""
        self.logger.warning(
            "Burst limit exceeded",
            extra={
                "subject": subject_key,
                "max_requests": max_requests,
                "window_seconds": window_seconds,
                "retry_after_seconds": retry_after,
            },
        )

    def quota_denied(
        self, owner_id: str, category: str, plan: str, reason: str
    ) -> None:
        """Log a monthly quota denial at WARNING level."""
        self.logger.warning(
            "Monthly quota denied",
            extra={
                "owner_id": owner_id,
                "category": category,
                "plan": plan,
                "reason": reason,
            },
        )

    def quota_debited(
        self, owner_id: str, category: str, plan: str, used: int, limit: int
    ) -> None:
        """Log a successful quota debit at INFO level."""
        self.logger.info(
            "Monthly quota debited",
            extra={
                "owner_id": owner_id,
                "category": category,
                "plan": plan,
                "used": used,
                "limit": limit,
            },
        )

    def store_unavailable(self, owner_id: str, category: str, error: Exception) -> None:
        """Log a quota check that failed closed because the store errored."""
        self.logger.error(
            "Quota store unavailable, denying request",
            extra={
                "owner_id": owner_id,
                "category": category,
                "error_type": type(error).__name__,
                "error_message": str(error),
            },
        )


gate_logger = GateLogger()


class PipelineLogger:
    """Logger for generation pipeline steps and context assembly."""

    def __init__(self) -> None:
        self.logger = get_logger("pipeline")

    def step_start(self, step: str, subject_key: str) -> None:
        """Log step start at INFO level."""
        self.logger.info(
            f"Pipeline step started: {step}",
            extra={"step": step, "subject": subject_key},
        )

    def step_complete(self, step: str, subject_key: str, duration_ms: float) -> None:
        """Log step completion at INFO level."""
        self.logger.info(
            f"Pipeline step completed: {step}",
            extra={
                "step": step,
                "subject": subject_key,
                "duration_ms": round(duration_ms, 2),
            },
        )

    def step_failed(
        self, step: str, subject_key: str, error: Exception, duration_ms: float
    ) -> None:
        """Log step failure at WARNING level."""
        self.logger.warning(
            f"Pipeline step failed: {step}",
            extra={
                "step": step,
                "subject": subject_key,
                "error_type": type(error).__name__,
                "error_message": str(error)[:500],
                "duration_ms": round(duration_ms, 2),
            },
        )

    def context_built(
        self, subject_key: str, section_keys: list[str], length: int, truncated: bool
    ) -> None:
        """Log context block assembly at DEBUG level."""
        self.logger.debug(
            "Context block built",
            extra={
                "subject": subject_key,
                "sections": section_keys,
                "length": length,
                "truncated": truncated,
            },
        )

    def parse_fallback(self, stage: str, raw_length: int) -> None:
        """Log that response parsing needed a fallback stage."""
        self.logger.debug(
            f"Response JSON recovered via {stage}",
            extra={"stage": stage, "raw_length": raw_length},
        )


pipeline_logger = PipelineLogger()
