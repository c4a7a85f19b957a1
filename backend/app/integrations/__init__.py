"""Integrations layer - External service clients.

Integrations handle communication with external APIs and services.
They abstract the details of external service protocols.
"""

from app.integrations.claude import (
    ChatMessage,
    ClaudeAuthError,
    ClaudeCircuitOpenError,
    ClaudeClient,
    ClaudeError,
    ClaudeMalformedResponseError,
    ClaudeOverloadedError,
    ClaudeRateLimitError,
    ClaudeTimeoutError,
    CompletionResult,
    close_claude,
    document_block,
    get_claude,
    image_block,
    init_claude,
    text_block,
)

__all__ = [
    "ChatMessage",
    "ClaudeAuthError",
    "ClaudeCircuitOpenError",
    "ClaudeClient",
    "ClaudeError",
    "ClaudeMalformedResponseError",
    "ClaudeOverloadedError",
    "ClaudeRateLimitError",
    "ClaudeTimeoutError",
    "CompletionResult",
    "close_claude",
    "document_block",
    "get_claude",
    "image_block",
    "init_claude",
    "text_block",
]
