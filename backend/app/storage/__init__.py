"""PostgreSQL plumbing shared by the domain repositories."""

from .connection import PostgresRepository, configure_connection_factory, get_conn, managed_connection
from .errors import DuplicateKeyError, MissingFunctionError, StorageError, translate_storage_errors

__all__ = [
    "DuplicateKeyError",
    "MissingFunctionError",
    "PostgresRepository",
    "StorageError",
    "configure_connection_factory",
    "get_conn",
    "managed_connection",
    "translate_storage_errors",
]
