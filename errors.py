"""Error kinds raised by the circulation core.

The API layer maps each kind to a transport status; the core itself never
deals in status codes.
"""

from typing import Optional


class LibraryError(Exception):
    """Base exception for circulation errors."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.message}


class ValidationError(LibraryError):
    """Input is malformed or breaks a business rule (bad dates, amounts, enum values)."""

    kind = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["field"] = self.field
        return payload


class NotFoundError(LibraryError):
    """A referenced loan, return, fine, copy or user does not exist."""

    kind = "not_found"


class ConflictError(LibraryError):
    """The operation would break a uniqueness or state invariant."""

    kind = "conflict"


class InfrastructureError(LibraryError):
    """The persistence layer failed. Not a business error."""

    kind = "infrastructure_error"
