"""Connection and cursor helpers shared by the PostgreSQL repositories."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .errors import translate_storage_errors

_connection_factory: Optional[Callable[[], PgConnection]] = None


def configure_connection_factory(factory: Callable[[], PgConnection]) -> None:
    """Register how repositories open connections when none is passed in."""

    global _connection_factory

    _connection_factory = factory


def get_conn() -> PgConnection:
    if _connection_factory is None:
        raise RuntimeError("Storage has not been configured with a connection factory")
    return _connection_factory()


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


class PostgresRepository:
    """Base class giving repositories a dict cursor with translated errors."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self, *, function: str = "") -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                with translate_storage_errors(function=function):
                    yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()


__all__ = ["PostgresRepository", "configure_connection_factory", "get_conn", "managed_connection"]
