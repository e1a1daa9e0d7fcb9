"""Error taxonomy shared by the revenue core.

Every error carries the HTTP status it maps to and, for client errors, the
name of the offending field so the caller can highlight it.
"""

from typing import Optional


class RevenueError(Exception):
    """Base exception for revenue core errors."""

    status_code = 500

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        body: dict = {"detail": self.message}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(RevenueError):
    """Bad input shape, out-of-range amount, missing conditional field."""

    status_code = 400


class NotFoundError(RevenueError):
    """Referenced category, method, assignment, revenue or installment is missing."""

    status_code = 404


class ConflictError(RevenueError):
    """Duplicate revenue transaction."""

    status_code = 409


class DependencyError(RevenueError):
    """A secondary effect (loan generation, audit, attachment upload) failed."""

    status_code = 502


class InternalError(RevenueError):
    status_code = 500
