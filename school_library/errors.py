"""Error kinds raised by the loan, waitlist and catalog services.

All of them are returned to the immediate caller; none is retried inside the
services because loan transitions are not safe to replay blindly.
"""
from __future__ import annotations

from typing import Optional


class LibraryError(Exception):
    """Base class for every error the library core raises."""


class ConflictError(LibraryError):
    """The borrower already holds an open loan, or the record already exists."""


class DuplicateError(ConflictError):
    """A (book, borrower) waitlist entry or another unique record already exists."""


class InvalidStateError(LibraryError):
    """An operation was attempted on a loan that is not in the required state."""

    def __init__(self, message: str, loan_id: Optional[int] = None, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.loan_id = loan_id
        self.status = status


class NotFoundError(LibraryError):
    """A referenced loan, book, waitlist entry, comment or notification does not exist."""


class StockAnomalyError(LibraryError):
    """Available stock would go below zero without an explicit force flag."""

    def __init__(self, message: str, book_id: Optional[int] = None, available: Optional[int] = None) -> None:
        super().__init__(message)
        self.book_id = book_id
        self.available = available


class ValidationError(LibraryError):
    """A command failed validation before it reached the services."""


class StorageUnavailableError(LibraryError):
    """The persistence boundary failed; nothing from the unit of work was committed."""


class SchemaError(StorageUnavailableError):
    """The store rejected a read for a schema or permission reason."""
