"""Structured error responses shared by v1 endpoints.

Every error body is ``{"error": str, "code": str, "request_id": str}`` plus
optional details.
"""

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


def get_request_id(request: Request) -> str:
    """Get request_id from request state."""
    return getattr(request.state, "request_id", "unknown")


def error_response(
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    headers: dict[str, str] | None = None,
    **details: Any,
) -> JSONResponse:
    """Build a structured error response."""
    content: dict[str, Any] = {
        "error": message,
        "code": code,
        "request_id": request_id,
    }
    content.update({k: v for k, v in details.items() if v is not None})
    return JSONResponse(status_code=status_code, content=content, headers=headers)
