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
"""Builds the COPY FROM STDIN command for a bulk load."""

from collections.abc import Sequence

from psycopg import sql
from psycopg.abc import AdaptContext

from .exceptions import ConfigurationError


def qualified_table(schema_name: str | None, table_name: str) -> sql.Identifier:
    """Return the (optionally schema-qualified) quoted table identifier."""
    if not table_name:
        msg = "No target table defined to load to database"
        raise ConfigurationError(msg)
    if schema_name:
        return sql.Identifier(schema_name, table_name)
    return sql.Identifier(table_name)


def build_copy_command(
    schema_name: str | None,
    table_name: str,
    columns: Sequence[str],
    delimiter: str = ",",
    enclosure: str = '"',
) -> sql.Composed:
    """Compose ``COPY <table> ( <cols> ) FROM STDIN WITH CSV ...``.

    Identifiers are quoted with PostgreSQL identifier rules; the delimiter and
    quote characters are passed as string literals.

    Raises:
        ConfigurationError: If there are no columns to load, or the delimiter
            or quote is not a single character.

    """
    if not columns:
        msg = "No fields defined to load to database"
        raise ConfigurationError(msg)
    for name, value in (("delimiter", delimiter), ("quote", enclosure)):
        if value is None or len(value) != 1:
            msg = f"The COPY {name} must be a single character, got {value!r}"
            raise ConfigurationError(msg)

    return sql.SQL(
        "COPY {table} ( {columns} ) FROM STDIN"
        " WITH CSV DELIMITER AS {delimiter} QUOTE AS {quote};",
    ).format(
        table=qualified_table(schema_name, table_name),
        columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
        delimiter=sql.Literal(delimiter),
        quote=sql.Literal(enclosure),
    )


def copy_command_text(
    schema_name: str | None,
    table_name: str,
    columns: Sequence[str],
    delimiter: str = ",",
    enclosure: str = '"',
    context: AdaptContext | None = None,
) -> str:
    """Render :func:`build_copy_command` as plain text.

    Pass a connection as ``context`` to quote with its encoding and
    server settings.
    """
    command = build_copy_command(schema_name, table_name, columns, delimiter, enclosure)
    return command.as_string(context)
