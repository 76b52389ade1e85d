"""
Shared async PostgreSQL plumbing for the Postgres-backed stores.

Each backend owns its connection; this base only handles connect/close
and maps every psycopg.Error to the backend's "unavailable" error so
callers never see raw driver exceptions.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

import psycopg
from pgvector.psycopg import register_vector_async

from benefits_rag.core.errors import RagError, StoreUnavailableError

logger = logging.getLogger(__name__)


class PgBackend:
    """Base class for psycopg AsyncConnection backed stores."""

    unavailable_error: type[RagError] = StoreUnavailableError
    uses_vector: bool = False

    def __init__(self, connection_string: str):
        self.connection_string = connection_string
        self._conn: psycopg.AsyncConnection | None = None

    async def connect(self) -> None:
        """Establish database connection."""
        if self._conn is not None:
            return
        try:
            self._conn = await psycopg.AsyncConnection.connect(
                self.connection_string, autocommit=True
            )
            if self.uses_vector:
                await self._conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
                await register_vector_async(self._conn)
        except psycopg.Error as e:
            self._conn = None
            raise self.unavailable_error(f"Could not connect to PostgreSQL: {e}") from e
        logger.debug(f"{type(self).__name__} connected")

    async def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _execute(self, query: str, params: Sequence[Any] | None = None) -> psycopg.AsyncCursor:
        if self._conn is None:
            await self.connect()
        try:
            return await self._conn.execute(query, params)
        except psycopg.Error as e:
            raise self.unavailable_error(f"PostgreSQL operation failed: {e}") from e

    async def _executemany(self, query: str, rows: Sequence[Sequence[Any]]) -> int:
        if self._conn is None:
            await self.connect()
        try:
            async with self._conn.cursor() as cur:
                await cur.executemany(query, rows)
                return len(rows)
        except psycopg.Error as e:
            raise self.unavailable_error(f"PostgreSQL batch operation failed: {e}") from e
