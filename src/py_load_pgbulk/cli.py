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
"""Command line entry point for PostgreSQL bulk loads."""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

import typer

from .command import copy_command_text
from .config import Settings, load_config
from .exceptions import BulkLoadError
from .pipeline import run_load
from .source import read_csv_rows

# Basic structured logging setup
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = typer.Typer(help="Stream CSV rows into PostgreSQL with COPY FROM STDIN.")


@app.command()
def load(
    config_file: Path = typer.Argument(..., help="Path to the YAML load configuration."),
    input_file: Path = typer.Argument(..., help="CSV file with a header line."),
    copies: int = typer.Option(1, min=1, help="Number of parallel workers."),
    db_dsn_override: str = typer.Option(None, "--dsn", help="Override database DSN."),
    pooled: bool = typer.Option(
        False, help="Check connections out of a shared pool instead of opening one per worker."
    ),
    input_delimiter: str = typer.Option(",", help="Delimiter of the input CSV file."),
):
    """Load a CSV file into the configured table."""
    start_time = datetime.now(timezone.utc)
    load_id = str(uuid.uuid4())
    logger.info("Starting bulk load run with load_id: %s", load_id)

    try:
        config = load_config(config_file)
        schema = config.input_schema()
        with open(input_file, newline="", encoding=config.encoding) as f:
            result = run_load(
                config,
                schema,
                read_csv_rows(f, schema, delimiter=input_delimiter),
                Settings(),
                copies=copies,
                unique_connections=not pooled,
                dsn=db_dsn_override,
            )
    except Exception as e:
        logger.error("Bulk load failed: %s", e, exc_info=True)
        raise typer.Exit(code=1) from e
    finally:
        duration = datetime.now(timezone.utc) - start_time
        logger.info("Bulk load run %s finished in %s.", load_id, duration)

    typer.echo(f"Loaded {result.rows_loaded} rows into {result.target_table}")


@app.command("show-command")
def show_command(
    config_file: Path = typer.Argument(..., help="Path to the YAML load configuration."),
):
    """Print the COPY command a load would run."""
    try:
        config = load_config(config_file)
        command = copy_command_text(
            config.schema_name,
            config.table_name,
            config.table_fields,
            config.delimiter,
            config.enclosure,
        )
    except BulkLoadError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo(command)


def main():
    app()


if __name__ == "__main__":
    main()
