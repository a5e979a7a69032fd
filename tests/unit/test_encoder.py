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

import datetime
import io
import re
from decimal import Decimal

import pytest

from py_load_pgbulk.encoder import FIELD_WRITERS, RowEncoder
from py_load_pgbulk.exceptions import ConfigurationError, EncodingError
from py_load_pgbulk.models import (
    TEMPORAL_TYPES,
    DateMask,
    FieldMeta,
    RowSchema,
    ValueType,
)
from py_load_pgbulk.source import read_csv_rows

pytestmark = pytest.mark.unit

UNSUPPORTED_TYPES = {ValueType.BINARY, ValueType.SERIALIZABLE, ValueType.INET}


@pytest.fixture
def encoder():
    return RowEncoder(delimiter=",", enclosure='"')


def encode(encoder, value, value_type, mode=None, **field_kwargs):
    buffer = bytearray()
    field = FieldMeta(name="f", type=value_type, **field_kwargs)
    if mode is None and value_type in TEMPORAL_TYPES:
        mode = DateMask.PASS_THROUGH
    encoder.encode_field(value, field, mode, buffer)
    return bytes(buffer)


def test_string_doubles_embedded_quotes(encoder):
    """A quote inside a string is escaped by doubling it."""
    assert encode(encoder, 'He said "hi"', ValueType.STRING) == b'"He said ""hi"""'


@pytest.mark.parametrize(
    "text",
    ['"', '""', 'a"b"c', 'trailing"', '"leading', "no quotes", "", 'comma, "and" quote'],
)
def test_string_quote_doubling_round_trips(encoder, text):
    encoded = encode(encoder, text, ValueType.STRING).decode("utf-8")
    assert encoded.startswith('"') and encoded.endswith('"')
    assert encoded[1:-1].replace('""', '"') == text


def test_string_does_not_escape_delimiter(encoder):
    assert encode(encoder, "a,b", ValueType.STRING) == b'"a,b"'


def test_string_with_custom_enclosure():
    encoder = RowEncoder(delimiter=";", enclosure="'")
    assert encode(encoder, "it's", ValueType.STRING) == b"'it''s'"


def test_string_is_encoded_with_configured_encoding():
    encoder = RowEncoder(encoding="latin-1")
    assert encode(encoder, "café", ValueType.STRING) == b'"caf\xe9"'


def test_string_that_cannot_be_encoded_fails():
    encoder = RowEncoder(encoding="ascii")
    with pytest.raises(EncodingError, match="field='f'"):
        encode(encoder, "café", ValueType.STRING)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0, b"0"), (123, b"123"), (-42, b"-42"), (10**20, b"100000000000000000000")],
)
def test_integer_minimal_decimal_text(encoder, value, expected):
    assert encode(encoder, value, ValueType.INTEGER) == expected


def test_integer_binary_storage_passes_through(encoder):
    assert encode(encoder, b"0042", ValueType.INTEGER, binary_storage=True) == b"0042"


def test_binary_storage_requires_bytes(encoder):
    with pytest.raises(EncodingError, match="expects bytes"):
        encode(encoder, 42, ValueType.INTEGER, binary_storage=True)


def test_invalid_integer_fails(encoder):
    with pytest.raises(EncodingError, match="Invalid integer"):
        encode(encoder, "twelve", ValueType.INTEGER)


@pytest.mark.parametrize("value", [3.7, -0.5, Decimal("2.25")])
def test_integer_rejects_fractional_values(encoder, value):
    with pytest.raises(EncodingError, match="Non-integral"):
        encode(encoder, value, ValueType.INTEGER)


@pytest.mark.parametrize("value", [float("inf"), float("nan"), Decimal("Infinity")])
def test_integer_rejects_non_finite_values(encoder, value):
    with pytest.raises(EncodingError):
        encode(encoder, value, ValueType.INTEGER)


@pytest.mark.parametrize(("value", "expected"), [(4.0, b"4"), (Decimal("12.000"), b"12")])
def test_integer_accepts_integral_floats_and_decimals(encoder, value, expected):
    assert encode(encoder, value, ValueType.INTEGER) == expected


@pytest.mark.parametrize("value", [19.99, 0.1, -1.5, 1e-300, 123456789.123, 2.0**60])
def test_number_text_parses_back_exactly(encoder, value):
    text = encode(encoder, value, ValueType.NUMBER).decode("ascii")
    assert float(text) == value


def test_number_is_plain_decimal_text(encoder):
    assert encode(encoder, 19.99, ValueType.NUMBER) == b"19.99"
    assert encode(encoder, 3, ValueType.NUMBER) == b"3.0"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (Decimal("12345678901234567890.000000001"), b"12345678901234567890.000000001"),
        (Decimal("1E+3"), b"1000"),
        (Decimal("-0.00010"), b"-0.00010"),
        (7, b"7"),
        ("3.14159265358979323846264338327950288", b"3.14159265358979323846264338327950288"),
    ],
)
def test_bignumber_exact_text(encoder, value, expected):
    encoded = encode(encoder, value, ValueType.BIGNUMBER)
    assert encoded == expected
    assert Decimal(encoded.decode("ascii")) == Decimal(value)


def test_bignumber_rejects_non_finite(encoder):
    with pytest.raises(EncodingError, match="Non-finite"):
        encode(encoder, Decimal("NaN"), ValueType.BIGNUMBER)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(True, b"t"), (False, b"f"), ("Y", b"t"), ("N", b"f"), ("true", b"t"), (0, b"f")],
)
def test_boolean_renders_as_t_or_f(encoder, value, expected):
    assert encode(encoder, value, ValueType.BOOLEAN) == expected


@pytest.mark.parametrize("value_type", sorted(TEMPORAL_TYPES))
def test_date_mode_formats_calendar_date(encoder, value_type):
    for value in (
        datetime.date(2024, 3, 1),
        datetime.datetime(2024, 3, 1, 23, 59, 59, 999999),
        datetime.date(5, 1, 9),
    ):
        text = encode(encoder, value, value_type, DateMask.DATE).decode("ascii")
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}", text)
    assert encode(encoder, datetime.date(2024, 3, 1), value_type, DateMask.DATE) == b"2024-03-01"


@pytest.mark.parametrize("value_type", sorted(TEMPORAL_TYPES))
def test_datetime_mode_formats_milliseconds(encoder, value_type):
    value = datetime.datetime(2024, 3, 1, 13, 5, 9, 123456)
    encoded = encode(encoder, value, value_type, DateMask.DATETIME).decode("ascii")
    assert encoded == "2024-03-01 13:05:09.123"
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{3}", encoded)


def test_datetime_mode_on_plain_date_uses_midnight(encoder):
    encoded = encode(encoder, datetime.date(2024, 3, 1), ValueType.DATE, DateMask.DATETIME)
    assert encoded == b"2024-03-01 00:00:00.000"


def test_date_mode_accepts_iso_strings(encoder):
    assert encode(encoder, "2024-03-01T10:00:00", ValueType.DATE, DateMask.DATE) == b"2024-03-01"


def test_date_mode_rejects_garbage(encoder):
    with pytest.raises(EncodingError, match="Invalid date"):
        encode(encoder, "yesterday", ValueType.DATE, DateMask.DATE)


@pytest.mark.parametrize(
    ("mode", "expected"),
    [
        (DateMask.DATE, b"2024-03-01"),
        (DateMask.DATETIME, b"2024-03-01 08:30:00.000"),
    ],
)
def test_formatted_modes_convert_binary_storage(encoder, mode, expected):
    encoded = encode(encoder, b"2024-03-01 08:30:00", ValueType.TIMESTAMP, mode, binary_storage=True)
    assert encoded == expected


@pytest.mark.parametrize(
    ("mode", "expected"),
    [
        (DateMask.DATE, b"2024-03-01"),
        (DateMask.DATETIME, b"2024-03-01 00:00:00.000"),
    ],
)
def test_binary_storage_cell_from_csv_reader_formats(encoder, mode, expected):
    field = FieldMeta(name="d", type=ValueType.DATE, binary_storage=True)
    schema = RowSchema(fields=(field,))
    (row,) = list(read_csv_rows(io.StringIO("d\n2024-03-01\n"), schema))

    buffer = bytearray()
    encoder.encode_field(row[0], field, mode, buffer)
    assert bytes(buffer) == expected


def test_binary_storage_that_is_not_text_fails():
    encoder = RowEncoder(encoding="ascii")
    with pytest.raises(EncodingError, match="not valid ascii"):
        encode(encoder, b"\xff\xfe", ValueType.DATE, DateMask.DATE, binary_storage=True)


@pytest.mark.parametrize(
    ("mode", "expected"),
    [
        (DateMask.DATE, b"2024-03-01"),
        (DateMask.DATETIME, b"2024-03-01 00:00:00.000"),
    ],
)
def test_formatted_modes_parse_strings_with_conversion_mask(encoder, mode, expected):
    encoded = encode(encoder, "01/03/2024", ValueType.DATE, mode, conversion_mask="%d/%m/%Y")
    assert encoded == expected


def test_conversion_mask_mismatch_is_invalid_date(encoder):
    with pytest.raises(EncodingError, match="Invalid date value '2024-03-01'"):
        encode(encoder, "2024-03-01", ValueType.DATE, DateMask.DATE, conversion_mask="%d/%m/%Y")


def test_pass_through_keeps_string_form(encoder):
    assert encode(encoder, "01/03/2024", ValueType.DATE) == b"01/03/2024"


def test_pass_through_binary_storage(encoder):
    encoded = encode(encoder, b"2024-03-01", ValueType.TIMESTAMP, binary_storage=True)
    assert encoded == b"2024-03-01"


def test_pass_through_uses_conversion_mask(encoder):
    value = datetime.datetime(2024, 3, 1, 13, 5)
    encoded = encode(encoder, value, ValueType.TIMESTAMP, conversion_mask="%d/%m/%Y %H:%M")
    assert encoded == b"01/03/2024 13:05"


def test_pass_through_without_mask_uses_iso_form(encoder):
    value = datetime.datetime(2024, 3, 1, 13, 5, 9)
    assert encode(encoder, value, ValueType.TIMESTAMP) == b"2024-03-01 13:05:09"


@pytest.mark.parametrize("bad_mode", ["DATE", 3, None])
def test_unknown_date_mask_is_configuration_error(encoder, bad_mode):
    field = FieldMeta(name="sold_on", type=ValueType.DATE)
    with pytest.raises(ConfigurationError, match="sold_on"):
        encoder.encode_field(datetime.date(2024, 3, 1), field, bad_mode, bytearray())


@pytest.mark.parametrize("value_type", sorted(UNSUPPORTED_TYPES))
def test_unsupported_type_names_the_type(encoder, value_type):
    with pytest.raises(EncodingError, match=value_type.value):
        encode(encoder, b"\x00", value_type)


@pytest.mark.parametrize("value_type", list(ValueType))
def test_null_writes_nothing(encoder, value_type):
    assert encode(encoder, None, value_type, DateMask.DATE) == b""


def test_dispatch_table_covers_every_supported_type():
    expected = set()
    for value_type in ValueType:
        if value_type in UNSUPPORTED_TYPES:
            continue
        if value_type in TEMPORAL_TYPES:
            expected.update((value_type, mask) for mask in DateMask)
        else:
            expected.add((value_type, None))
    assert set(FIELD_WRITERS) == expected


def test_encode_row_sales_scenario(encoder, sales_schema):
    row = (1, 19.99, datetime.date(2024, 3, 1))
    record = encoder.encode_row(
        row, sales_schema, indexes=[1, 2], modes=[DateMask.PASS_THROUGH, DateMask.DATE]
    )
    assert record == b"19.99,2024-03-01\n"


def test_encode_row_null_first_column_keeps_positions(encoder):
    schema = RowSchema(
        fields=(
            FieldMeta(name="a", type=ValueType.INTEGER),
            FieldMeta(name="b", type=ValueType.INTEGER),
        )
    )
    modes = [DateMask.PASS_THROUGH] * 2
    assert encoder.encode_row((None, 123), schema, [0, 1], modes) == b",123\n"
    assert encoder.encode_row((123, None), schema, [0, 1], modes) == b"123,\n"
    assert encoder.encode_row((None, None), schema, [0, 1], modes) == b",\n"


def test_encode_row_separator_and_terminator_counts():
    encoder = RowEncoder(delimiter="|", enclosure='"')
    columns = 5
    schema = RowSchema(
        fields=tuple(FieldMeta(name=f"c{i}", type=ValueType.INTEGER) for i in range(columns))
    )
    rows = [tuple(range(n, n + columns)) for n in range(7)]
    modes = [DateMask.PASS_THROUGH] * columns
    records = [encoder.encode_row(r, schema, list(range(columns)), modes) for r in rows]

    for record in records:
        assert record.count(b"|") == columns - 1
        assert record.count(b"\n") == 1
        assert record.endswith(b"\n")
    assert b"".join(records).count(b"\n") == len(rows)


def test_encode_row_follows_binding_order_not_schema_order(encoder):
    schema = RowSchema(
        fields=(
            FieldMeta(name="a", type=ValueType.STRING),
            FieldMeta(name="b", type=ValueType.INTEGER),
        )
    )
    modes = [DateMask.PASS_THROUGH] * 2
    assert encoder.encode_row(("x", 1), schema, [1, 0], modes) == b'1,"x"\n'


def test_encode_row_custom_record_terminator():
    encoder = RowEncoder(record_terminator="\r\n")
    schema = RowSchema(fields=(FieldMeta(name="a", type=ValueType.INTEGER),))
    assert encoder.encode_row((1,), schema, [0], [DateMask.PASS_THROUGH]) == b"1\r\n"
