from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    INVALID_INPUT = "INVALID_INPUT"

    # Safety policy
    SCHEME_NOT_ALLOWED = "SCHEME_NOT_ALLOWED"
    SSRF_BLOCKED = "SSRF_BLOCKED"
    ROBOTS_DISALLOWED = "ROBOTS_DISALLOWED"
    RATE_LIMITED = "RATE_LIMITED"

    # Network
    REDIRECT_LOOP_EXCEEDED = "REDIRECT_LOOP_EXCEEDED"
    FETCH_TIMEOUT = "FETCH_TIMEOUT"
    FETCH_NETWORK_ERROR = "FETCH_NETWORK_ERROR"
    HTTP_ERROR = "HTTP_ERROR"

    # Reported as warnings on an otherwise successful result
    SIZE_CAP_EXCEEDED = "SIZE_CAP_EXCEEDED"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"

    # Storage
    CACHE_IO_ERROR = "CACHE_IO_ERROR"
    CACHE_MISS = "CACHE_MISS"

    # Search provider
    SEARCH_NOT_CONFIGURED = "SEARCH_NOT_CONFIGURED"
    SEARCH_AUTH_FAILED = "SEARCH_AUTH_FAILED"
    SEARCH_FAILED = "SEARCH_FAILED"


class FetchGateError(Exception):
    """Raised for every expected failure on the search and fetch paths.

    Tool handlers let it propagate; server.py serialises it into the MCP
    error response so the agent receives a code, a message and a suggestion.
    ``retry_after`` is set (in seconds) when the caller may retry after a wait.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str,
        recoverable: bool = False,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        error: dict = {
            "code": self.code,
            "message": self.message,
            "suggestion": self.suggestion,
            "recoverable": self.recoverable,
        }
        if self.retry_after is not None:
            error["retry_after"] = round(self.retry_after, 3)
        return {"error": error}
