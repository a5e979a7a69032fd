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
"""Reads typed rows from a CSV file with a header line."""

import csv
import datetime
from collections.abc import Iterator
from decimal import Decimal, InvalidOperation
from typing import IO, Any

from .exceptions import ConfigurationError, EncodingError
from .models import FieldMeta, Row, RowSchema, ValueType

_TRUE_STRINGS = frozenset({"y", "yes", "true", "t", "1"})


def _parse_date(text: str, field: FieldMeta) -> datetime.date:
    if field.conversion_mask:
        parsed = datetime.datetime.strptime(text, field.conversion_mask)
    else:
        parsed = datetime.datetime.fromisoformat(text)
    if field.type is ValueType.DATE and parsed.time() == datetime.time():
        return parsed.date()
    return parsed


_PARSERS = {
    ValueType.STRING: lambda text, field: text,
    ValueType.INTEGER: lambda text, field: int(text),
    ValueType.NUMBER: lambda text, field: float(text),
    ValueType.BIGNUMBER: lambda text, field: Decimal(text),
    ValueType.BOOLEAN: lambda text, field: text.strip().lower() in _TRUE_STRINGS,
    ValueType.DATE: _parse_date,
    ValueType.TIMESTAMP: _parse_date,
}


def parse_value(text: str | None, field: FieldMeta) -> Any:
    """Convert one CSV cell to the Python value of the field's type.

    Empty cells are nulls, except for strings. Fields with binary storage
    keep the raw cell bytes.
    """
    if text is None:
        return None
    if field.binary_storage:
        return text.encode("utf-8") if text else None
    if text == "" and field.type is not ValueType.STRING:
        return None
    parser = _PARSERS.get(field.type)
    if parser is None:
        raise EncodingError(f"Cannot read values of type {field.type.value}", field.name)
    try:
        return parser(text, field)
    except (ValueError, InvalidOperation) as exc:
        raise EncodingError(f"Invalid {field.type.value} value '{text}'", field.name) from exc


def read_csv_rows(stream: IO[str], schema: RowSchema, delimiter: str = ",") -> Iterator[Row]:
    """Yield one typed row per CSV record, in schema field order."""
    reader = csv.DictReader(stream, delimiter=delimiter)
    if reader.fieldnames is None:
        return
    missing = [f.name for f in schema.fields if f.name not in reader.fieldnames]
    if missing:
        msg = f"Input file is missing columns: {', '.join(missing)}"
        raise ConfigurationError(msg)

    for record in reader:
        yield tuple(parse_value(record[f.name], f) for f in schema.fields)
