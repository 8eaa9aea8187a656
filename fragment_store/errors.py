"""
Error kinds raised by the fragment store.

Benign absence (missing fragment on get/update/delete, missing embedding)
is reported through return values, never through these exceptions.
"""

from typing import Optional


class FragmentStoreError(Exception):
    """Base class for every store failure."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


class ValidationError(FragmentStoreError, ValueError):
    """A required field is missing/blank or an argument is out of range."""


class NotFoundError(FragmentStoreError, LookupError):
    """The caller referenced an entity that must exist but does not."""


class ConsistencyError(FragmentStoreError, RuntimeError):
    """An invariant was violated inside a transaction (always rolled back)."""


class DecodeError(FragmentStoreError, ValueError):
    """A stored payload could not be decoded."""

    def __init__(self, operation: str, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(operation, message)


class StorageError(FragmentStoreError, RuntimeError):
    """The underlying database engine failed."""
