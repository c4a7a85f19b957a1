"""Claude/Anthropic completion client used by the generation pipeline.

Features:
- Async HTTP client using httpx (direct Messages API calls)
- Circuit breaker for fault tolerance
- Typed failures: rate limited, overloaded, auth, timeout, circuit open
- Text and attachment (base64 image / PDF) content blocks
- Request/response logging per requirements
- Token usage logging

ERROR LOGGING REQUIREMENTS:
- Log all outbound API calls with model and timing
- Log request/response bodies at DEBUG level (truncate large responses)
- Log and handle: timeouts, rate limits (429), overload (529/503),
  auth failures (401/403)
- Include attempt number in logs
- Never log the API key
- Log circuit breaker state changes

DEPLOYMENT REQUIREMENTS:
- API key via environment variable (ANTHROPIC_API_KEY)
- One attempt per call by default (CLAUDE_MAX_ATTEMPTS=1) so a retried
  request never consumes quota twice without the caller knowing
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.config import get_settings
from app.core.logging import claude_logger, get_logger

logger = get_logger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com"
ANTHROPIC_API_VERSION = "2023-06-01"

# Anthropic returns 529 when the model is overloaded
OVERLOADED_STATUS_CODES = (503, 529)

ContentBlock = dict[str, Any]


@dataclass
class ChatMessage:
    """One role-tagged message sent to the model."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    def to_api(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}

    @property
    def text_length(self) -> int:
        if isinstance(self.content, str):
            return len(self.content)
        return sum(len(block.get("text", "")) for block in self.content)


def text_block(text: str) -> ContentBlock:
    return {"type": "text", "text": text}


def image_block(media_type: str, data: str) -> ContentBlock:
    """Build a base64 image block (``data`` is already base64 encoded)."""
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": media_type, "data": data},
    }


def document_block(data: str, media_type: str = "application/pdf") -> ContentBlock:
    """Build a base64 document block (``data`` is already base64 encoded)."""
    return {
        "type": "document",
        "source": {"type": "base64", "media_type": media_type, "data": data},
    }


@dataclass
class CompletionResult:
    """Result of a successful Claude completion request."""

    text: str
    stop_reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: float = 0.0
    request_id: str | None = None
    model: str | None = None


class ClaudeError(Exception):
    """Base exception for Claude API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.request_id = request_id


class ClaudeTimeoutError(ClaudeError):
    """Raised when a request times out."""

    pass


class ClaudeRateLimitError(ClaudeError):
    """Raised when rate limited (429)."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        response_body: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            message, status_code=429, response_body=response_body, request_id=request_id
        )
        self.retry_after = retry_after


class ClaudeOverloadedError(ClaudeError):
    """Raised when the provider reports overload (529/503)."""

    pass


class ClaudeAuthError(ClaudeError):
    """Raised when authentication fails (401/403) or no key is configured."""

    pass


class ClaudeCircuitOpenError(ClaudeError):
    """Raised when circuit breaker is open."""

    pass


class ClaudeMalformedResponseError(ClaudeError):
    """Raised when a successful response carries an unreadable body."""

    def __init__(self, message: str, raw_text: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.raw_text = raw_text


def _error_message(response: httpx.Response) -> tuple[str, dict[str, Any] | None]:
    try:
        body = response.json() if response.content else None
    except ValueError:
        return response.text[:200] or "Client error", None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"]), body
        return str(body)[:200], body
    return "Client error", None


class ClaudeClient:
    """Async client for the Anthropic Messages API.

    Provides completions with:
    - Circuit breaker for fault tolerance
    - Optional bounded retry (off by default)
    - Typed exceptions for every failure kind
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        max_tokens: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Claude client.

        Args:
            api_key: Anthropic API key. Defaults to settings.
            model: Model to use. Defaults to settings.
            timeout: Request timeout in seconds. Defaults to settings.
            max_attempts: Attempts per completion. Defaults to settings (1).
            retry_delay: Base delay between retries. Defaults to settings.
            max_tokens: Maximum response tokens. Defaults to settings.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        settings = get_settings()

        self._api_key = api_key or settings.anthropic_api_key
        self._model = model or settings.claude_model
        self._timeout = timeout or settings.claude_timeout
        self._max_attempts = max_attempts or settings.claude_max_attempts
        self._retry_delay = (
            retry_delay if retry_delay is not None else settings.claude_retry_delay
        )
        self._max_tokens = max_tokens or settings.claude_max_tokens
        self._transport = transport

        self._circuit_breaker = CircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=settings.claude_circuit_failure_threshold,
                recovery_timeout=settings.claude_circuit_recovery_timeout,
            ),
            name="claude",
        )

        # HTTP client (created lazily)
        self._client: httpx.AsyncClient | None = None
        self._available = bool(self._api_key)

    @property
    def available(self) -> bool:
        """Check if Claude is configured and available."""
        return self._available

    @property
    def model(self) -> str:
        return self._model

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers: dict[str, str] = {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "anthropic-version": ANTHROPIC_API_VERSION,
            }
            if self._api_key:
                headers["x-api-key"] = self._api_key

            self._client = httpx.AsyncClient(
                base_url=ANTHROPIC_API_URL,
                headers=headers,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("Claude client closed")

    async def _backoff(self, attempt: int, reason: str) -> None:
        delay = self._retry_delay * (2**attempt)
        logger.warning(
            f"Claude request attempt {attempt + 1} failed, retrying in {delay}s",
            extra={
                "attempt": attempt + 1,
                "max_attempts": self._max_attempts,
                "delay_seconds": delay,
                "reason": reason,
            },
        )
        await asyncio.sleep(delay)

    async def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> CompletionResult:
        """Send a completion request to Claude.

        Args:
            system_prompt: System prompt (rules, context and instructions)
            messages: Role-tagged conversation, last message from the user
            temperature: Sampling temperature
            max_tokens: Maximum response tokens (overrides default)
            model: Model for this call (overrides the client default)

        Returns:
            CompletionResult with the concatenated text blocks

        Raises:
            ClaudeAuthError: Missing key or 401/403
            ClaudeRateLimitError: 429 from the provider
            ClaudeOverloadedError: 529/503 from the provider
            ClaudeTimeoutError: HTTP timeout
            ClaudeCircuitOpenError: Circuit breaker is open
            ClaudeMalformedResponseError: 2xx response with an unreadable body
            ClaudeError: Any other failure
        """
        model = model or self._model
        if not self._available:
            raise ClaudeAuthError("Claude not configured (missing API key)")

        if not await self._circuit_breaker.can_execute():
            claude_logger.circuit_rejected(model)
            raise ClaudeCircuitOpenError("Circuit breaker is open")

        start_time = time.monotonic()
        client = await self._get_client()
        request_id: str | None = None
        last_error: ClaudeError | None = None

        request_body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": temperature,
            "system": system_prompt,
            "messages": [message.to_api() for message in messages],
        }
        prompt_length = len(system_prompt) + sum(m.text_length for m in messages)
        last_user_text = next(
            (
                m.content
                for m in reversed(messages)
                if m.role == "user" and isinstance(m.content, str)
            ),
            "",
        )

        for attempt in range(self._max_attempts):
            attempt_start = time.monotonic()
            retries_left = attempt < self._max_attempts - 1

            try:
                claude_logger.api_call_start(
                    model, prompt_length, len(messages), attempt=attempt
                )
                claude_logger.request_body(model, system_prompt, last_user_text)

                response = await client.post("/v1/messages", json=request_body)
                duration_ms = (time.monotonic() - attempt_start) * 1000
                request_id = response.headers.get("request-id")

                if response.status_code == 429:
                    retry_after_str = response.headers.get("retry-after")
                    try:
                        retry_after = float(retry_after_str) if retry_after_str else None
                    except ValueError:
                        retry_after = None
                    claude_logger.rate_limit(model, retry_after, request_id)
                    await self._circuit_breaker.record_failure()
                    last_error = ClaudeRateLimitError(
                        "Rate limit exceeded",
                        retry_after=retry_after,
                        request_id=request_id,
                    )

                    if retries_left and retry_after and retry_after <= 60:
                        await asyncio.sleep(retry_after)
                        continue

                    raise last_error

                if response.status_code in (401, 403):
                    claude_logger.auth_failure(response.status_code)
                    await self._circuit_breaker.record_failure()
                    raise ClaudeAuthError(
                        f"Authentication failed ({response.status_code})",
                        status_code=response.status_code,
                        request_id=request_id,
                    )

                if response.status_code in OVERLOADED_STATUS_CODES:
                    claude_logger.overloaded(
                        model, response.status_code, request_id
                    )
                    await self._circuit_breaker.record_failure()
                    last_error = ClaudeOverloadedError(
                        f"Provider overloaded ({response.status_code})",
                        status_code=response.status_code,
                        request_id=request_id,
                    )
                    if retries_left:
                        await self._backoff(attempt, "overloaded")
                        continue
                    raise last_error

                if response.status_code >= 500:
                    error_msg = f"Server error ({response.status_code})"
                    claude_logger.api_call_error(
                        model,
                        duration_ms,
                        response.status_code,
                        error_msg,
                        "ServerError",
                        attempt=attempt,
                        request_id=request_id,
                    )
                    await self._circuit_breaker.record_failure()
                    last_error = ClaudeError(
                        error_msg,
                        status_code=response.status_code,
                        request_id=request_id,
                    )
                    if retries_left:
                        await self._backoff(attempt, "server_error")
                        continue
                    raise last_error

                if response.status_code >= 400:
                    # Client error - don't retry
                    error_msg, error_body = _error_message(response)
                    claude_logger.api_call_error(
                        model,
                        duration_ms,
                        response.status_code,
                        error_msg,
                        "ClientError",
                        attempt=attempt,
                        request_id=request_id,
                    )
                    raise ClaudeError(
                        f"Client error ({response.status_code}): {error_msg}",
                        status_code=response.status_code,
                        response_body=error_body,
                        request_id=request_id,
                    )

                try:
                    response_data = response.json()
                    content = response_data.get("content") or []
                    text = "".join(
                        block.get("text", "")
                        for block in content
                        if block.get("type", "text") == "text"
                    )
                    stop_reason = response_data.get("stop_reason")
                    usage = response_data.get("usage") or {}
                    input_tokens = usage.get("input_tokens")
                    output_tokens = usage.get("output_tokens")
                except (ValueError, AttributeError, TypeError) as e:
                    claude_logger.api_call_error(
                        model,
                        duration_ms,
                        response.status_code,
                        f"Unreadable response body: {type(e).__name__}",
                        "MalformedResponse",
                        attempt=attempt,
                        request_id=request_id,
                    )
                    await self._circuit_breaker.record_failure()
                    raise ClaudeMalformedResponseError(
                        "Malformed provider response",
                        status_code=response.status_code,
                        request_id=request_id,
                        raw_text=response.text,
                    ) from e

                claude_logger.api_call_success(
                    model,
                    duration_ms,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    request_id=request_id,
                )
                claude_logger.response_body(model, text, stop_reason=stop_reason)

                await self._circuit_breaker.record_success()

                return CompletionResult(
                    text=text,
                    stop_reason=stop_reason,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    request_id=request_id,
                    duration_ms=(time.monotonic() - start_time) * 1000,
                    model=model,
                )

            except httpx.TimeoutException:
                duration_ms = (time.monotonic() - attempt_start) * 1000
                claude_logger.timeout(model, self._timeout)
                await self._circuit_breaker.record_failure()
                last_error = ClaudeTimeoutError(
                    f"Request timed out after {self._timeout}s"
                )
                if retries_left:
                    await self._backoff(attempt, "timeout")
                    continue
                raise last_error from None

            except httpx.RequestError as e:
                duration_ms = (time.monotonic() - attempt_start) * 1000
                claude_logger.api_call_error(
                    model,
                    duration_ms,
                    None,
                    str(e),
                    type(e).__name__,
                    attempt=attempt,
                    request_id=request_id,
                )
                await self._circuit_breaker.record_failure()
                last_error = ClaudeError(f"Request failed: {e}")
                if retries_left:
                    await self._backoff(attempt, "request_error")
                    continue
                raise last_error from e

        raise last_error or ClaudeError("Request failed after all attempts")


# Global Claude client instance
claude_client: ClaudeClient | None = None


async def init_claude() -> ClaudeClient:
    """Initialize the global Claude client.

    Returns:
        Initialized ClaudeClient instance
    """
    global claude_client
    if claude_client is None:
        claude_client = ClaudeClient()
        if claude_client.available:
            logger.info(
                "Claude client initialized",
                extra={"model": claude_client.model},
            )
        else:
            logger.info("Claude not configured (missing API key)")
    return claude_client


async def close_claude() -> None:
    """Close the global Claude client."""
    global claude_client
    if claude_client:
        await claude_client.close()
        claude_client = None


async def get_claude() -> ClaudeClient:
    """Return the global Claude client, creating it on first use."""
    global claude_client
    if claude_client is None:
        await init_claude()
    return claude_client  # type: ignore[return-value]
