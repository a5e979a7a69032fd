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
"""Manages the application's configuration using Pydantic."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .models import ColumnBinding, FieldMeta, LoadAction, RowSchema


class Settings(BaseSettings):
    """Manages connection configuration for the application.

    Reads settings from environment variables with the prefix 'PGBULK_'.
    """

    model_config = SettingsConfigDict(env_prefix="PGBULK_")

    # Database connection settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    # S105: Hardcoded password is used for local development.
    # In production, this should be set via environment variables.
    db_password: str = "postgres"
    db_name: str = "postgres"

    # Upper bound of the connection pool used when workers share connections.
    pool_max_size: int = 4

    @computed_field
    @property
    def db_connection_string(self) -> str:
        """Construct the libpq connection string from individual settings."""
        return (
            f"host='{self.db_host}' port='{self.db_port}' "
            f"user='{self.db_user}' password='{self.db_password}' "
            f"dbname='{self.db_name}'"
        )


class LoadConfig(BaseModel):
    """Resolved description of one bulk load into one table."""

    schema_name: str | None = None
    table_name: str
    bindings: list[ColumnBinding] = Field(min_length=1)
    delimiter: str = Field(default=",", min_length=1, max_length=1)
    enclosure: str = Field(default='"', min_length=1, max_length=1)
    load_action: LoadAction = LoadAction.INSERT
    encoding: str = "utf-8"
    record_terminator: str = "\n"
    feedback_size: int = Field(
        default=50000, ge=0, description="Log progress every N rows; 0 disables."
    )
    # Field layout of the input file, used by the command line source.
    row_schema: list[FieldMeta] | None = None

    @field_validator("load_action", mode="before")
    @classmethod
    def _normalize_load_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def target_table(self) -> str:
        if self.schema_name:
            return f"{self.schema_name}.{self.table_name}"
        return self.table_name

    @property
    def stream_fields(self) -> list[str]:
        return [binding.field_stream for binding in self.bindings]

    @property
    def table_fields(self) -> list[str]:
        return [binding.field_table for binding in self.bindings]

    def input_schema(self) -> RowSchema:
        if not self.row_schema:
            msg = "The configuration has no row_schema describing the input fields"
            raise ConfigurationError(msg)
        return RowSchema(fields=tuple(self.row_schema))


def load_config(config_file: str | Path) -> LoadConfig:
    """Load and validate a load configuration from a YAML file."""
    try:
        with open(config_file) as f:
            raw = yaml.safe_load(f) or {}
    except OSError as exc:
        msg = f"Cannot read config file {config_file}: {exc}"
        raise ConfigurationError(msg) from exc
    except yaml.YAMLError as exc:
        msg = f"Invalid YAML in config file {config_file}: {exc}"
        raise ConfigurationError(msg) from exc
    return parse_config(raw)


def parse_config(raw: dict[str, Any]) -> LoadConfig:
    """Validate a configuration mapping, reporting problems as ConfigurationError."""
    try:
        return LoadConfig.model_validate(raw)
    except ValidationError as exc:
        msg = f"Invalid load configuration: {exc}"
        raise ConfigurationError(msg) from exc
