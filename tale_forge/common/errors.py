from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# code -> HTTP status
ERROR_STATUS: Dict[str, int] = {
    "VALIDATION_ERROR": 400,
    "UNAUTHORIZED": 401,
    "INSUFFICIENT_CREDITS": 402,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "RATE_LIMIT_EXCEEDED": 429,
    "AI_GENERATION_FAILED": 503,
    "SERVICE_UNAVAILABLE": 503,
    "DATABASE_ERROR": 500,
    "INTERNAL_ERROR": 500,
}

_STATUS_CODES: Dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    402: "INSUFFICIENT_CREDITS",
    403: "UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "VALIDATION_ERROR",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMIT_EXCEEDED",
    503: "SERVICE_UNAVAILABLE",
}


class TaleForgeError(Exception):
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def http_status(self) -> int:
        return ERROR_STATUS[self.code]


class ValidationError(TaleForgeError):
    code = "VALIDATION_ERROR"


class UnauthorizedError(TaleForgeError):
    code = "UNAUTHORIZED"


class InsufficientCreditsError(TaleForgeError):
    code = "INSUFFICIENT_CREDITS"


class NotFoundError(TaleForgeError):
    code = "NOT_FOUND"


class ConflictError(TaleForgeError):
    code = "CONFLICT"


class RateLimitError(TaleForgeError):
    code = "RATE_LIMIT_EXCEEDED"


class AIUnavailableError(TaleForgeError):
    code = "AI_GENERATION_FAILED"


class ServiceUnavailableError(TaleForgeError):
    code = "SERVICE_UNAVAILABLE"


class DatabaseError(TaleForgeError):
    code = "DATABASE_ERROR"


class ProviderError(Exception):
    """A single upstream AI call failed. Never leaves the orchestrator."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


@dataclass
class ErrorInfo:
    http_status: int
    code: str
    message: str
    details: Optional[Dict[str, Any]] = field(default=None)

    def body(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


def classify_error(exc: BaseException, *, dev: bool = False) -> ErrorInfo:
    """Map any exception onto the fixed error taxonomy.

    Upstream messages and stack traces only reach ``details`` when ``dev`` is
    set; otherwise unknown errors collapse to a generic INTERNAL_ERROR.
    """
    if isinstance(exc, TaleForgeError):
        details = dict(exc.details) if exc.details else None
        if dev and exc.__cause__ is not None:
            details = details or {}
            details["cause"] = repr(exc.__cause__)
        return ErrorInfo(exc.http_status, exc.code, exc.message, details)

    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status in _STATUS_CODES:
        code = _STATUS_CODES[status]
        detail = getattr(exc, "detail", None)
        message = detail if isinstance(detail, str) else code.replace("_", " ").capitalize()
        return ErrorInfo(ERROR_STATUS[code], code, message)

    details = None
    if dev:
        details = {
            "exception": repr(exc),
            "stack": "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        }
    return ErrorInfo(500, "INTERNAL_ERROR", "Internal server error", details)
