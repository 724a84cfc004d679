"""PostgreSQL session - resolves a route to TimescaleDB and returns a native psycopg2 connection."""

from __future__ import annotations

import logging
from typing import Any

from obsbroker.base import BaseSession
from obsbroker.core.descriptor import ConnectionDescriptor
from obsbroker.core.exceptions import ConnectionError as BrokerConnectionError

logger = logging.getLogger("obsbroker.postgres")


class PostgresSession(BaseSession):
    """Session that returns the native ``psycopg2`` connection.

    Usage::

        session = PostgresSession(resolver=resolver, target=target)
        conn = session.connect()  # native psycopg2 connection
        cur = conn.cursor()
        cur.execute("SELECT 1")
        session.close()           # also closes the tunnel, if one was opened

        # Or with context manager:
        with PostgresSession(resolver=resolver, target=target) as conn:
            cur = conn.cursor()
            cur.execute("SELECT 1")
    """

    _db_label = "PostgreSQL"

    # -- BaseSession hooks -------------------------------------------------

    def _connect_native(self, descriptor: ConnectionDescriptor) -> Any:
        try:
            import psycopg2  # type: ignore[import-untyped]
        except ImportError as exc:
            raise BrokerConnectionError(
                "psycopg2 is required for PostgreSQL support. "
                "Install it with: pip install obsbroker[postgres]"
            ) from exc

        try:
            conn = psycopg2.connect(**descriptor.to_dsn_kwargs())
            conn.autocommit = True
        except Exception as exc:
            raise BrokerConnectionError(
                f"PostgreSQL connection to {descriptor.host}:{descriptor.port}/{descriptor.database} "
                f"as {descriptor.user} failed: {exc}"
            ) from exc

        return conn

    def _close_native(self, native_client: Any) -> None:
        native_client.close()
