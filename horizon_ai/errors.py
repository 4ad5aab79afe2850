"""Errors raised by the Claude client."""
from __future__ import annotations

from typing import Mapping


class ClaudeAPIError(Exception):
    """Error response from the Anthropic Messages API.

    Carries the HTTP status, the provider error type (e.g. ``overloaded_error``)
    and the response headers so the retry engine can honour rate-limit hints.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (status {self.status_code}, type {self.error_type or 'unknown'})"
        return base
