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
"""Coordinates the transaction around one worker's COPY stream.

A worker is driven explicitly: ``initialize()`` once, ``feed()`` for every
input row, ``finish()`` at end of input. Several workers may load the same
table in parallel; they only share a stop signal and a :class:`TruncateGate`.
"""

import logging
import threading
from collections.abc import Callable, Hashable

from .command import copy_command_text
from .config import LoadConfig
from .encoder import RowEncoder
from .exceptions import ConfigurationError, TransactionError
from .loader.base import BaseLoader
from .models import LoadAction, LoadContext, Row, RowSchema
from .session import CopySession

logger = logging.getLogger(__name__)


class TruncateGate:
    """Grants the truncate of a table to exactly one worker per scope.

    The scope is the partition id for partitioned loads, otherwise the whole
    table. A gate must be created once per logical load, before any worker
    starts, and shared by all of them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed: set[Hashable] = set()

    def claim(self, scope: Hashable = None) -> bool:
        """Return True for the first claimant of ``scope`` only."""
        with self._lock:
            if scope in self._claimed:
                return False
            self._claimed.add(scope)
            return True


class LoadCoordinator:
    """Runs one worker of a bulk load.

    Args:
        config: What to load, and where.
        loader: The worker's own transactional connection.
        context: Identity of this worker among its siblings.
        stop_event: Shared "stop all" signal, set by the first failing worker.
        gate: Shared truncate election; without one, eligibility relies on
              the worker ordinals alone.
        on_row: Called with every row after it was written, to pass it on.

    """

    def __init__(
        self,
        config: LoadConfig,
        loader: BaseLoader,
        context: LoadContext | None = None,
        stop_event: threading.Event | None = None,
        gate: TruncateGate | None = None,
        on_row: Callable[[Row], None] | None = None,
    ) -> None:
        self.config = config
        self.loader = loader
        self.context = context or LoadContext()
        self.stop_event = stop_event or threading.Event()
        self.gate = gate
        self.on_row = on_row
        self.encoder = RowEncoder(
            delimiter=config.delimiter,
            enclosure=config.enclosure,
            record_terminator=config.record_terminator,
            encoding=config.encoding,
        )

        self.session: CopySession | None = None
        self.lines_output = 0
        self.errors = 0
        self.truncated = False
        self.output_done = False
        self._indexes: list[int] = []
        self._modes = [binding.date_mask for binding in config.bindings]

    @property
    def failed(self) -> bool:
        return self.errors > 0

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def copy_command(self) -> str:
        return copy_command_text(
            self.config.schema_name,
            self.config.table_name,
            self.config.table_fields,
            self.config.delimiter,
            self.config.enclosure,
        )

    def is_truncate_eligible(self) -> bool:
        """Apply the truncate-once rule to this worker's identity.

        Only the first worker of the fleet truncates, unless the load is
        partitioned, in which case every partition truncates its own scope.
        """
        if self.config.load_action is not LoadAction.TRUNCATE:
            return False
        ctx = self.context
        return (ctx.copy_nr == 0 and ctx.unique_step_nr == 0) or ctx.is_partitioned

    def initialize(self) -> None:
        """Open the transaction and truncate the target table if required."""
        try:
            try:
                self.loader.set_autocommit(False)
            except Exception as exc:
                msg = f"Cannot disable autocommit: {exc}"
                raise TransactionError(msg) from exc

            if self.is_truncate_eligible() and (
                self.gate is None or self.gate.claim(self.context.partition_id)
            ):
                self._truncate()
        except Exception as exc:
            self._fail(exc, "An error occurred initialising the bulk load")
            raise

    def _truncate(self) -> None:
        logger.info("Truncating TABLE %s", self.config.target_table)
        try:
            self.loader.truncate_table(self.config.schema_name, self.config.table_name)
            # A single copy keeps truncate and COPY in one transaction. With
            # several copies the truncate's exclusive lock would block them.
            if self.context.copies > 1:
                self.loader.commit()
        except Exception as exc:
            msg = f"Error truncating table {self.config.target_table}: {exc}"
            raise TransactionError(msg) from exc
        self.truncated = True

    def _start(self, schema: RowSchema) -> None:
        indexes = []
        for field_name in self.config.stream_fields:
            index = schema.index_of(field_name)
            if index < 0:
                msg = f"Field '{field_name}' not found in the input row"
                raise ConfigurationError(msg)
            indexes.append(index)
        self._indexes = indexes
        self._open_session()

    def _open_session(self) -> None:
        command = self.copy_command()
        logger.info("Launching command: %s", command)
        self.session = CopySession(self.loader, command, self.encoder)
        self.session.open()

    def feed(self, row: Row, schema: RowSchema) -> bool:
        """Write one row into the COPY stream.

        Returns:
            False if the load was stopped and the row was not written.

        """
        if self.stopped:
            return False
        if self.output_done:
            msg = "Cannot feed rows to a finished bulk load"
            raise RuntimeError(msg)

        try:
            if self.session is None:
                self._start(schema)
            self.session.write_row(row, schema, self._indexes, self._modes)
            if self.on_row is not None:
                self.on_row(row)
        except Exception as exc:
            self._fail(exc, "Error in bulk load step")
            raise

        self.lines_output += 1
        if self.config.feedback_size and self.lines_output % self.config.feedback_size == 0:
            logger.info(
                "Worker %d: %d rows written to %s",
                self.context.copy_nr,
                self.lines_output,
                self.config.target_table,
            )
        return True

    def finish(self) -> bool:
        """End the COPY and commit.

        Returns:
            True once the load is committed, False if it was stopped by a
            sibling worker, in which case the transaction is rolled back.

        """
        if self.failed:
            return False
        if self.output_done:
            msg = "The bulk load is already finished"
            raise RuntimeError(msg)

        if self.stopped:
            self.output_done = True
            if self.session is not None:
                self.session.abort()
            self.loader.rollback()
            logger.warning(
                "Worker %d stopped after %d rows", self.context.copy_nr, self.lines_output
            )
            return False

        try:
            if self.session is None:
                # Empty input still runs an (empty) COPY.
                self._open_session()
            self.session.close()
            try:
                self.loader.commit()
            except Exception as exc:
                msg = f"Error committing the bulk load: {exc}"
                raise TransactionError(msg) from exc
        except Exception as exc:
            self._fail(exc, "Error finishing the bulk load")
            raise

        self.output_done = True
        logger.info(
            "Worker %d finished: %d rows loaded into %s",
            self.context.copy_nr,
            self.lines_output,
            self.config.target_table,
        )
        return True

    def _fail(self, exc: BaseException, message: str) -> None:
        logger.error("%s: %s", message, exc, exc_info=exc)
        self.errors += 1
        self.stop_event.set()
        if self.session is not None:
            self.session.abort(exc)
        self.output_done = True
