"""Utility modules for the application.

This package contains shared utility functions and classes.
"""

from app.utils.json_extraction import (
    MalformedResponseError,
    extract_brace_span,
    parse_direct,
    parse_model_json,
    strip_code_fences,
)

__all__ = [
    "MalformedResponseError",
    "extract_brace_span",
    "parse_direct",
    "parse_model_json",
    "strip_code_fences",
]
