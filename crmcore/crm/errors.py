from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base class for every failure the CRM core reports to its caller."""

    code = "crm_error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(CRMError):
    """A required field is missing, a value is out of range or cannot be coerced."""

    code = "validation_error"


class ReferenceError(CRMError):  # noqa: A001
    """A supplied foreign key does not resolve to an existing row."""

    code = "related_entity_not_found"

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"related entity not found: {field}", details={"field": field})


class NotFoundError(CRMError):
    """The targeted identifier does not exist."""

    code = "not_found"


class ConflictError(CRMError):
    """The requested state transition or write conflicts with current state."""

    code = "conflict"


class StorageError(CRMError):
    """The persistence layer failed; no partial write is visible."""

    code = "storage_error"
