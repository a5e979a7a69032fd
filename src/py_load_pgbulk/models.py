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
"""Defines the Pydantic data models for the application."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ConfigurationError

# A row is a positional tuple of values matching a RowSchema.
Row = tuple[Any, ...]


class ValueType(str, Enum):
    """Semantic type tag carried by every field of an input row."""

    STRING = "String"
    INTEGER = "Integer"
    NUMBER = "Number"
    BIGNUMBER = "BigNumber"
    BOOLEAN = "Boolean"
    DATE = "Date"
    TIMESTAMP = "Timestamp"
    # Known to the upstream type system but not loadable through COPY.
    BINARY = "Binary"
    SERIALIZABLE = "Serializable"
    INET = "Internet Address"


TEMPORAL_TYPES = frozenset({ValueType.DATE, ValueType.TIMESTAMP})


class DateMask(str, Enum):
    """How a DATE or TIMESTAMP field is rendered on the wire."""

    PASS_THROUGH = "PASS THROUGH"
    DATE = "DATE"
    DATETIME = "DATETIME"

    @classmethod
    def from_config(cls, value: "str | DateMask | None") -> "DateMask":
        """Parse a configured mask name; an empty value means pass-through."""
        if isinstance(value, DateMask):
            return value
        if value is None or not value.strip():
            return cls.PASS_THROUGH
        normalized = value.strip().upper().replace("_", " ")
        for mask in cls:
            if mask.value == normalized:
                return mask
        msg = f"Unknown date mask '{value}', expected one of: " + ", ".join(
            m.value for m in cls
        )
        raise ConfigurationError(msg)


class LoadAction(str, Enum):
    INSERT = "insert"
    TRUNCATE = "truncate"


class SessionState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    OPEN = "OPEN"
    CLOSED_OK = "CLOSED_OK"
    CLOSED_ERROR = "CLOSED_ERROR"


class FieldMeta(BaseModel):
    """Describes one field of the incoming rows."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ValueType
    binary_storage: bool = Field(
        default=False,
        description="Values are already wire-encoded bytes, written verbatim.",
    )
    conversion_mask: str | None = Field(
        default=None,
        description="strftime pattern for temporal values in pass-through mode.",
    )

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, value: Any) -> Any:
        if isinstance(value, str) and not isinstance(value, ValueType):
            wanted = value.strip().lower()
            for tag in ValueType:
                if wanted in (tag.name.lower(), tag.value.lower()):
                    return tag
        return value


class RowSchema(BaseModel):
    """Ordered field layout shared by every row of one input stream."""

    model_config = ConfigDict(frozen=True)

    fields: tuple[FieldMeta, ...]

    def index_of(self, name: str) -> int:
        """Return the position of a field, or -1 when it does not exist."""
        for index, field in enumerate(self.fields):
            if field.name == name:
                return index
        return -1

    def __len__(self) -> int:
        return len(self.fields)


class ColumnBinding(BaseModel):
    """Maps one input field onto one column of the target table."""

    model_config = ConfigDict(frozen=True)

    field_stream: str
    field_table: str
    date_mask: DateMask = DateMask.PASS_THROUGH

    @field_validator("date_mask", mode="before")
    @classmethod
    def _parse_date_mask(cls, value: Any) -> DateMask:
        try:
            return DateMask.from_config(value)
        except ConfigurationError as exc:
            # Pydantic only converts ValueError into a validation error.
            raise ValueError(str(exc)) from exc


class LoadContext(BaseModel):
    """Identity of one worker within a (possibly parallel) load."""

    model_config = ConfigDict(frozen=True)

    copy_nr: int = Field(default=0, ge=0, description="Zero-based worker ordinal.")
    copies: int = Field(default=1, ge=1, description="Number of parallel workers.")
    unique_step_nr: int = Field(
        default=0, ge=0, description="Ordinal unique across the whole fleet."
    )
    partition_id: str | None = None
    unique_connections: bool = True

    @property
    def is_partitioned(self) -> bool:
        return bool(self.partition_id)
