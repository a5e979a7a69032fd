# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Provides a PostgreSQL loader using the native COPY command."""

import contextlib
import logging
from typing import Any

import psycopg
from psycopg import sql

from ..command import qualified_table
from ..exceptions import TransportError
from .base import BaseLoader, CopyStream

logger = logging.getLogger(__name__)


class PostgresCopyStream(CopyStream):
    """Keeps a psycopg ``Copy`` block open across many ``write`` calls.

    ``cursor.copy()`` is a context manager; the stream enters it when
    created and leaves it in :meth:`end_copy` or :meth:`abort`.
    """

    def __init__(self, conn: psycopg.Connection, command: Any) -> None:
        self._stack = contextlib.ExitStack()
        try:
            cursor = self._stack.enter_context(conn.cursor())
            self._copy = self._stack.enter_context(cursor.copy(command))
        except BaseException:
            self._stack.close()
            raise

    def write(self, data: bytes) -> None:
        self._copy.write(data)

    def flush(self) -> None:
        # psycopg's Copy keeps its own write buffer and has no public flush;
        # the buffer is pushed to the server when the copy block exits in
        # end_copy().
        pass

    def end_copy(self) -> None:
        """Send CopyDone and wait for the server to confirm the load."""
        self._stack.close()

    def abort(self, exc: BaseException | None = None) -> None:
        """Send CopyFail so the server discards the rows sent so far."""
        if exc is None:
            exc = RuntimeError("COPY abandoned")
        self._stack.__exit__(type(exc), exc, exc.__traceback__)


class PostgresLoader(BaseLoader):
    """A database loader for PostgreSQL that uses the native COPY command.

    Either opens its own connection from ``conn_string`` or works on a
    connection checked out by the caller (e.g. from a pool), which it then
    does not close.
    """

    def __init__(
        self,
        conn_string: str | None = None,
        conn: psycopg.Connection | None = None,
    ) -> None:
        """Initialize the loader.

        Args:
            conn_string: A libpq connection string (e.g., "dbname=test user=postgres").
            conn: An already open connection to use instead.

        """
        if conn_string is None and conn is None:
            msg = "Either a connection string or a connection is required."
            raise ValueError(msg)
        self.conn_string = conn_string
        self.conn: psycopg.Connection | None = conn
        self._owns_conn = conn is None

    def connect(self) -> None:
        if self.conn is None:
            try:
                self.conn = psycopg.connect(self.conn_string, autocommit=False)
            except psycopg.Error as exc:
                msg = f"Cannot connect to the database: {exc}"
                raise TransportError(msg) from exc

    def disconnect(self, rollback: bool = False) -> None:
        """Commit the transaction on success or roll back on error.

        Closes the database connection if the loader opened it.
        """
        if not self.conn:
            return

        try:
            if rollback:
                self.conn.rollback()
            else:
                self.conn.commit()
        finally:
            if self._owns_conn:
                self.conn.close()
                self.conn = None

    def _require_conn(self) -> psycopg.Connection:
        if not self.conn:
            msg = (
                "Connection is not available. "
                "The loader must be used as a context manager."
            )
            raise RuntimeError(msg)
        return self.conn

    def set_autocommit(self, enabled: bool) -> None:
        self._require_conn().autocommit = enabled

    def commit(self) -> None:
        self._require_conn().commit()

    def rollback(self) -> None:
        self._require_conn().rollback()

    def truncate_table(self, schema_name: str | None, table_name: str) -> None:
        conn = self._require_conn()
        truncate_sql = sql.SQL("TRUNCATE TABLE {table}").format(
            table=qualified_table(schema_name, table_name),
        )
        with conn.cursor() as cur:
            cur.execute(truncate_sql)

    def open_copy(self, command: Any) -> PostgresCopyStream:
        conn = self._require_conn()
        logger.debug("Opening COPY stream on %s", conn.info.dbname)
        return PostgresCopyStream(conn, command)
