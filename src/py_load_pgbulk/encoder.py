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
"""Serializes typed row values into the CSV text accepted by COPY FROM STDIN.

Each supported ``(ValueType, DateMask)`` pair maps onto one small writer
function in :data:`FIELD_WRITERS`. Non-temporal types ignore the date mask
and are keyed with ``None``.
"""

import datetime
from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import Any

from .exceptions import ConfigurationError, EncodingError
from .models import TEMPORAL_TYPES, DateMask, FieldMeta, Row, RowSchema, ValueType

FieldWriter = Callable[["RowEncoder", Any, FieldMeta, bytearray], None]

_TRUE_STRINGS = frozenset({"Y", "YES", "TRUE", "T", "1"})


def _write_raw(value: Any, field: FieldMeta, buffer: bytearray) -> bool:
    """Append a pre-encoded value verbatim. Returns False if not applicable."""
    if not field.binary_storage:
        return False
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise EncodingError(
            f"Binary storage expects bytes, got {type(value).__name__}", field.name
        )
    buffer += value
    return True


def _format_date(value: datetime.date) -> str:
    # strftime("%Y") does not zero pad years below 1000 on every platform.
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def _format_datetime(value: datetime.date) -> str:
    if not isinstance(value, datetime.datetime):
        return _format_date(value) + " 00:00:00.000"
    return (
        f"{_format_date(value)} "
        f"{value.hour:02d}:{value.minute:02d}:{value.second:02d}."
        f"{value.microsecond // 1000:03d}"
    )


def _as_date(encoder: "RowEncoder", value: Any, field: FieldMeta) -> datetime.date:
    """Convert a temporal value, or its text form, into a date or datetime.

    Text comes either as ``str`` or, for binary storage, as encoded bytes.
    It is parsed with the field's conversion mask when there is one.
    """
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            value = bytes(value).decode(encoder.encoding)
        except UnicodeDecodeError as exc:
            raise EncodingError(
                f"Date value is not valid {encoder.encoding} text", field.name
            ) from exc
    if isinstance(value, str):
        try:
            if field.conversion_mask:
                return datetime.datetime.strptime(value, field.conversion_mask)
            return datetime.datetime.fromisoformat(value)
        except ValueError as exc:
            raise EncodingError(f"Invalid date value '{value}'", field.name) from exc
    raise EncodingError(
        f"Cannot convert {type(value).__name__} to a date", field.name
    )


def _write_string(encoder: "RowEncoder", value: Any, field: FieldMeta, buffer: bytearray) -> None:
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode(encoder.encoding)
    text = str(value)
    if encoder.enclosure:
        text = text.replace(encoder.enclosure, encoder.enclosure * 2)
    buffer += encoder.quote
    buffer += encoder.encode_text(text, field)
    buffer += encoder.quote


def _write_integer(encoder: "RowEncoder", value: Any, field: FieldMeta, buffer: bytearray) -> None:
    if _write_raw(value, field, buffer):
        return
    if isinstance(value, float) and not value.is_integer():
        raise EncodingError(f"Non-integral integer value {value!r}", field.name)
    if isinstance(value, Decimal) and value.is_finite() and value != value.to_integral_value():
        raise EncodingError(f"Non-integral integer value {value!r}", field.name)
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise EncodingError(f"Invalid integer value {value!r}", field.name) from exc
    buffer += str(number).encode("ascii")


def _write_number(encoder: "RowEncoder", value: Any, field: FieldMeta, buffer: bytearray) -> None:
    if _write_raw(value, field, buffer):
        return
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Invalid number value {value!r}", field.name) from exc
    buffer += repr(number).encode("ascii")


def _write_boolean(encoder: "RowEncoder", value: Any, field: FieldMeta, buffer: bytearray) -> None:
    if _write_raw(value, field, buffer):
        return
    if isinstance(value, str):
        value = value.strip().upper() in _TRUE_STRINGS
    buffer += b"t" if value else b"f"


def _write_bignumber(encoder: "RowEncoder", value: Any, field: FieldMeta, buffer: bytearray) -> None:
    if _write_raw(value, field, buffer):
        return
    if isinstance(value, float):
        value = repr(value)
    try:
        number = value if isinstance(value, Decimal) else Decimal(value)
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise EncodingError(f"Invalid decimal value {value!r}", field.name) from exc
    if not number.is_finite():
        raise EncodingError(f"Non-finite decimal value {value!r}", field.name)
    buffer += format(number, "f").encode("ascii")


def _write_temporal_pass_through(
    encoder: "RowEncoder", value: Any, field: FieldMeta, buffer: bytearray
) -> None:
    if _write_raw(value, field, buffer):
        return
    if isinstance(value, str):
        text = value
    elif field.conversion_mask and isinstance(value, datetime.date):
        text = value.strftime(field.conversion_mask)
    elif isinstance(value, datetime.datetime):
        text = value.isoformat(sep=" ")
    else:
        text = str(value)
    buffer += encoder.encode_text(text, field)


def _write_temporal_date(encoder: "RowEncoder", value: Any, field: FieldMeta, buffer: bytearray) -> None:
    buffer += _format_date(_as_date(encoder, value, field)).encode("ascii")


def _write_temporal_datetime(
    encoder: "RowEncoder", value: Any, field: FieldMeta, buffer: bytearray
) -> None:
    buffer += _format_datetime(_as_date(encoder, value, field)).encode("ascii")


FIELD_WRITERS: dict[tuple[ValueType, DateMask | None], FieldWriter] = {
    (ValueType.STRING, None): _write_string,
    (ValueType.INTEGER, None): _write_integer,
    (ValueType.NUMBER, None): _write_number,
    (ValueType.BOOLEAN, None): _write_boolean,
    (ValueType.BIGNUMBER, None): _write_bignumber,
}
for _temporal in TEMPORAL_TYPES:
    FIELD_WRITERS[(_temporal, DateMask.PASS_THROUGH)] = _write_temporal_pass_through
    FIELD_WRITERS[(_temporal, DateMask.DATE)] = _write_temporal_date
    FIELD_WRITERS[(_temporal, DateMask.DATETIME)] = _write_temporal_datetime


class RowEncoder:
    """Turns rows into COPY ... WITH CSV records.

    Args:
        delimiter: Field separator written between values.
        enclosure: Quote character wrapped around strings. Occurrences inside
                   a value are doubled, matching the QUOTE clause of COPY.
        record_terminator: Written after every record, including the last.
        encoding: Character encoding of the emitted bytes.

    """

    def __init__(
        self,
        delimiter: str = ",",
        enclosure: str = '"',
        record_terminator: str = "\n",
        encoding: str = "utf-8",
    ) -> None:
        self.delimiter = delimiter or ""
        self.enclosure = enclosure or ""
        self.encoding = encoding
        self.separator = self.delimiter.encode(encoding)
        self.quote = self.enclosure.encode(encoding)
        self.newline = record_terminator.encode(encoding)

    def encode_text(self, text: str, field: FieldMeta) -> bytes:
        try:
            return text.encode(self.encoding)
        except UnicodeEncodeError as exc:
            raise EncodingError(
                f"Value cannot be encoded as {self.encoding}", field.name
            ) from exc

    def encode_field(
        self,
        value: Any,
        field: FieldMeta,
        mode: DateMask | None,
        buffer: bytearray,
    ) -> None:
        """Append the wire form of one value to ``buffer``.

        ``None`` appends nothing at all: an absent value is an empty,
        unquoted field, which COPY ... CSV reads as NULL.
        """
        if value is None:
            return
        if field.type in TEMPORAL_TYPES:
            if not isinstance(mode, DateMask):
                raise ConfigurationError(
                    f"Unknown date mask {mode!r} for {field.type.value.lower()} "
                    f"field '{field.name}' (neither pass-through, date nor datetime)"
                )
            key = (field.type, mode)
        else:
            key = (field.type, None)
        writer = FIELD_WRITERS.get(key)
        if writer is None:
            raise EncodingError(
                f"Bulk loading doesn't handle the type {field.type.value}", field.name
            )
        writer(self, value, field, buffer)

    def encode_row(
        self,
        row: Row,
        schema: RowSchema,
        indexes: Sequence[int],
        modes: Sequence[DateMask],
    ) -> bytes:
        """Encode one complete record.

        Args:
            row: The input values, positionally matching ``schema``.
            schema: Field layout of ``row``.
            indexes: For each bound column, the position of its source field.
            modes: For each bound column, its date mask.

        Returns:
            The record bytes, terminator included.

        """
        buffer = bytearray()
        for i, index in enumerate(indexes):
            if i > 0:
                buffer += self.separator
            self.encode_field(row[index], schema.fields[index], modes[i], buffer)
        buffer += self.newline
        return bytes(buffer)
