"""Structured storage failures raised by repository adapters."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from psycopg2 import errors as pg_errors


class StorageError(Exception):
    """Base class for failures surfaced by the persistence layer."""


class DuplicateKeyError(StorageError):
    """A unique constraint rejected the write."""

    def __init__(self, constraint: Optional[str], message: str = "duplicate key") -> None:
        super().__init__(message)
        self.constraint = constraint

    def violates(self, *constraints: str) -> bool:
        """Return ``True`` when the violated constraint is one of ``constraints``."""

        return self.constraint in constraints


class MissingFunctionError(StorageError):
    """A server-side function the caller relied on does not exist."""

    def __init__(self, function: str, message: str = "function does not exist") -> None:
        super().__init__(message)
        self.function = function


@contextmanager
def translate_storage_errors(*, function: str = "") -> Iterator[None]:
    """Re-raise driver exceptions as :class:`StorageError` kinds."""

    try:
        yield
    except pg_errors.UniqueViolation as exc:
        constraint = getattr(exc.diag, "constraint_name", None)
        raise DuplicateKeyError(constraint, str(exc).strip()) from exc
    except pg_errors.UndefinedFunction as exc:
        raise MissingFunctionError(function, str(exc).strip()) from exc


__all__ = [
    "DuplicateKeyError",
    "MissingFunctionError",
    "StorageError",
    "translate_storage_errors",
]
