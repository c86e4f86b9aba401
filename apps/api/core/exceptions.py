"""
Custom exception classes and error handling.

Ledger and state errors are raised as these exceptions and propagate to the
caller unmasked; main.py renders them as consistent JSON error responses.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Invalid completion, query or identifier."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper().replace('.', '_')}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )
        self.field = field


# Leading loc entries FastAPI adds to say where in the request a value came from
_REQUEST_LOCATIONS = {"body", "query", "path", "header", "cookie"}


def field_from_loc(loc) -> Optional[str]:
    """Dotted field name for a pydantic error location, without the request part."""
    parts = [str(p) for p in loc or ()]
    if parts and parts[0] in _REQUEST_LOCATIONS:
        parts = parts[1:]
    return ".".join(parts) or None
