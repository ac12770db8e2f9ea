from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException


class ErrorKind(str, Enum):
    """Closed set of error kinds; each fixes an HTTP status and a stable code."""

    VALIDATION = "validation"
    MALFORMED_BODY = "malformed_body"
    UNAUTHENTICATED = "unauthenticated"
    PAYMENT_REQUIRED = "payment_required"
    FORBIDDEN = "forbidden"
    ORIGIN_REJECTED = "origin_rejected"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"

    @property
    def http_status(self) -> int:
        return _KIND_TABLE[self][0]

    @property
    def code(self) -> str:
        return _KIND_TABLE[self][1]

    @property
    def default_message(self) -> str:
        return _KIND_TABLE[self][2]


_KIND_TABLE: Dict[ErrorKind, tuple[int, str, str]] = {
    ErrorKind.VALIDATION: (400, "VALIDATION_ERROR", "Validation failed"),
    ErrorKind.MALFORMED_BODY: (400, "PARSE_ERROR", "Invalid JSON in request body"),
    ErrorKind.UNAUTHENTICATED: (401, "UNAUTHORIZED", "Authentication required"),
    ErrorKind.PAYMENT_REQUIRED: (402, "PAYMENT_REQUIRED", "Payment required"),
    ErrorKind.FORBIDDEN: (403, "FORBIDDEN", "Access denied"),
    ErrorKind.ORIGIN_REJECTED: (403, "CORS_ERROR", "Origin not allowed"),
    ErrorKind.NOT_FOUND: (404, "NOT_FOUND", "Resource not found"),
    ErrorKind.CONFLICT: (409, "CONFLICT", "Resource conflict"),
    ErrorKind.PAYLOAD_TOO_LARGE: (413, "PAYLOAD_TOO_LARGE", "Request body too large"),
    ErrorKind.RATE_LIMITED: (429, "RATE_LIMIT_EXCEEDED", "Too many requests. Please slow down."),
    ErrorKind.INTERNAL: (500, "INTERNAL_ERROR", "Internal server error"),
    ErrorKind.UPSTREAM_UNAVAILABLE: (503, "SERVICE_UNAVAILABLE", "Service temporarily unavailable"),
}

# HTTP statuses raised by the framework itself (routing, method mismatch).
_STATUS_TO_KIND: Dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHENTICATED,
    402: ErrorKind.PAYMENT_REQUIRED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    413: ErrorKind.PAYLOAD_TOO_LARGE,
    429: ErrorKind.RATE_LIMITED,
    503: ErrorKind.UPSTREAM_UNAVAILABLE,
}


class AppError(Exception):
    """The single error value of the request pipeline.

    ``kind`` determines ``http_status`` and ``code``. ``message`` is always safe
    to show to clients; ``details`` carries structured context such as the
    list of invalid fields. ``operational`` is False for programming defects.
    """

    def __init__(
        self,
        kind: ErrorKind = ErrorKind.INTERNAL,
        message: Optional[str] = None,
        *,
        details: Optional[Any] = None,
        operational: bool = True,
    ) -> None:
        self.kind = kind
        self.message = message or kind.default_message
        self.details = details
        self.operational = operational
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    @property
    def code(self) -> str:
        return self.kind.code

    def __repr__(self) -> str:
        return f"AppError(kind={self.kind.value!r}, message={self.message!r})"

    @classmethod
    def validation(
        cls, fields: Iterable[Dict[str, Any]], message: Optional[str] = None
    ) -> "AppError":
        return cls(ErrorKind.VALIDATION, message, details=list(fields))

    @classmethod
    def unauthenticated(cls, message: Optional[str] = None) -> "AppError":
        return cls(ErrorKind.UNAUTHENTICATED, message)

    @classmethod
    def forbidden(cls, message: Optional[str] = None) -> "AppError":
        return cls(ErrorKind.FORBIDDEN, message)

    @classmethod
    def not_found(cls, method: str, path: str) -> "AppError":
        return cls(
            ErrorKind.NOT_FOUND,
            f"Route {method} {path} not found",
            details={"method": method, "path": path},
        )

    @classmethod
    def rate_limited(cls, message: Optional[str] = None, *, retry_after: int | None = None) -> "AppError":
        details = {"retry_after": retry_after} if retry_after is not None else None
        return cls(ErrorKind.RATE_LIMITED, message, details=details)

    @classmethod
    def upstream_unavailable(cls, message: Optional[str] = None) -> "AppError":
        return cls(ErrorKind.UPSTREAM_UNAVAILABLE, message)


def _validation_fields(exc: RequestValidationError) -> list[Dict[str, Any]]:
    fields = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        fields.append(
            {
                "field": ".".join(loc) or "body",
                "message": err.get("msg", "invalid value"),
                "type": err.get("type"),
            }
        )
    return fields


def normalize_error(exc: BaseException) -> AppError:
    """Classify any exception as an ``AppError``.

    Pure classification: no logging and no reporting happen here.
    Unrecognized exceptions become ``internal`` with ``operational=False``.
    """
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, RequestValidationError):
        if any(err.get("type") == "json_invalid" for err in exc.errors()):
            return AppError(ErrorKind.MALFORMED_BODY)
        return AppError.validation(_validation_fields(exc))
    if isinstance(exc, json.JSONDecodeError):
        return AppError(ErrorKind.MALFORMED_BODY)
    if isinstance(exc, StarletteHTTPException):
        kind = _STATUS_TO_KIND.get(exc.status_code)
        if kind is None:
            kind = ErrorKind.INTERNAL if exc.status_code >= 500 else ErrorKind.VALIDATION
        message = exc.detail if isinstance(exc.detail, str) else None
        return AppError(kind, message, operational=exc.status_code < 500)
    return AppError(ErrorKind.INTERNAL, operational=False)
