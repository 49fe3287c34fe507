"""
Engine error taxonomy.

Every failure a request can surface maps to one EngineError subclass with a
fixed HTTP status. Batch operations attach the failing operation's index.
"""

from __future__ import annotations

from typing import Any


class ConfigurationError(ValueError):
    """Raised at startup when a registry or route setup is inconsistent."""


class EngineError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    default_message: str = "Server error."

    def __init__(
        self,
        message: str | None = None,
        errors: dict[str, list[str]] | None = None,
        index: int | None = None,
    ):
        self.message = message or self.default_message
        self.errors = errors
        self.index = index
        super().__init__(self.message)

    def at_index(self, index: int, prefix: str | None = None) -> EngineError:
        """Tag the error with a batch index, optionally prefixing error keys."""
        self.index = index
        if prefix and self.errors:
            self.errors = {f"{prefix}.{key}": value for key, value in self.errors.items()}
        return self

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        if self.errors is not None:
            body["errors"] = self.errors
        if self.index is not None:
            body["index"] = self.index
        return body


class StructuralError(EngineError):
    """Malformed request shape."""

    status_code = 422
    default_message = "Invalid structure."


class AuthorizationError(EngineError):
    """Denied capability."""

    status_code = 403
    default_message = "This action is unauthorized."


class NotFoundError(EngineError):
    """Unknown entity, missing row, or unavailable action."""

    status_code = 404
    default_message = "Resource not found."


class ValidationFailed(EngineError):
    """Payload failed its effective rule set."""

    status_code = 422
    default_message = "Validation failed."


class PersistenceError(EngineError):
    """Raised when a storage constraint (unique, FK, not null) is violated."""

    status_code = 422

    def __init__(
        self,
        message: str,
        field: str | None = None,
        constraint_type: str = "integrity",
        index: int | None = None,
    ):
        self.field = field
        self.constraint_type = constraint_type  # unique | foreign_key | not_null | integrity
        errors = {field: [message]} if field else None
        super().__init__(message, errors=errors, index=index)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["constraint_type"] = self.constraint_type
        return body


class StorageBusyError(EngineError):
    """Storage stayed locked by another writer past the wait timeout."""

    status_code = 503
    default_message = "The resource is busy. Please retry."
