from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    INVALID_INPUT = "INVALID_INPUT"
    MODULE_NOT_FOUND = "MODULE_NOT_FOUND"
    SUBMODULE_NOT_FOUND = "SUBMODULE_NOT_FOUND"
    OPERATION_NOT_FOUND = "OPERATION_NOT_FOUND"
    PAGE_NOT_FOUND = "PAGE_NOT_FOUND"
    PAGE_FETCH_FAILED = "PAGE_FETCH_FAILED"
    URL_NOT_ALLOWED = "URL_NOT_ALLOWED"
    NO_DOCUMENTATION = "NO_DOCUMENTATION"
    EMPTY_RESULT = "EMPTY_RESULT"
    INDEX_STORE_ERROR = "INDEX_STORE_ERROR"


class AlegraDocsError(Exception):
    """Raised for every expected, request-scoped failure.

    Caught by server.py and serialised into the MCP error response.
    Business logic lets it propagate so the agent receives a structured
    error with a suggestion instead of a bare traceback.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
                "recoverable": self.recoverable,
            }
        }
