"""
Error types shared by routers and services.

Services raise ``MatchingError`` subclasses and know nothing about HTTP.
Routers catch them and re-raise ``to_api_exception(e)``, which main.py
renders as ``{"detail", "error_code"}``.
"""
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class APIException(HTTPException):
    """HTTPException with a machine-readable error_code."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    def __init__(self, resource: str, identifier: str):
        super().__init__(status.HTTP_404_NOT_FOUND, f"{resource} not found: {identifier}", "NOT_FOUND")


class ValidationError(APIException):
    """422; ``field`` narrows the code, e.g. VALIDATION_ERROR_CASCADE."""

    def __init__(self, detail: str, field: Optional[str] = None):
        code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(status.HTTP_422_UNPROCESSABLE_ENTITY, detail, code)


class ConflictError(APIException):
    def __init__(self, detail: str):
        super().__init__(status.HTTP_409_CONFLICT, detail, "CONFLICT")


# Domain errors


class MatchingError(Exception):
    """Base class for matching and repair failures."""

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or [message]


class MatchingInputError(MatchingError):
    """
    Input rejected before any engine runs.

    Too few couples, malformed placement requests, unknown courses,
    insufficient aggregate host capacity.
    """


class CascadeError(MatchingError):
    """
    A repair could not be applied consistently.

    Always raised before the first write, so the caller's transaction
    holds no partial change.
    """


class ConcurrentMutationError(MatchingError):
    """Another mutation of the same match plan committed first."""


class PlacementConflictError(MatchingError):
    """A guest already holds a placement for the requested course."""


def to_api_exception(exc: MatchingError) -> APIException:
    """Translate a domain error for the HTTP boundary."""
    if isinstance(exc, (ConcurrentMutationError, PlacementConflictError)):
        return ConflictError(exc.message)
    field = "cascade" if isinstance(exc, CascadeError) else None
    return ValidationError(exc.message, field=field)
