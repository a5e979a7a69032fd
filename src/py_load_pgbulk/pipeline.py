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
"""Runs a bulk load with one or more parallel workers.

Every worker gets its own connection, coordinator and COPY stream. All
workers initialize (and the elected one truncates and commits) before any
of them writes a row; rows are then dealt to the workers, round-robin by
default, through bounded queues.
"""

import concurrent.futures
import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from contextlib import AbstractContextManager, ExitStack, contextmanager
from typing import Iterator

import psycopg
from psycopg_pool import ConnectionPool
from pydantic import BaseModel

from .config import LoadConfig, Settings
from .coordinator import LoadCoordinator, TruncateGate
from .exceptions import TransportError
from .loader.base import BaseLoader
from .loader.postgres import PostgresLoader
from .models import LoadContext, Row, RowSchema

logger = logging.getLogger(__name__)

LoaderFactory = Callable[[int], AbstractContextManager[BaseLoader]]

_POLL_INTERVAL = 0.1
_END = object()


class WorkerResult(BaseModel):
    copy_nr: int
    partition_id: str | None = None
    rows_loaded: int = 0
    committed: bool = False
    truncated: bool = False
    errors: int = 0


class LoadResult(BaseModel):
    """Outcome of a complete (possibly parallel) bulk load."""

    target_table: str
    rows_read: int
    rows_loaded: int
    duration_seconds: float
    workers: list[WorkerResult]

    @property
    def errors(self) -> int:
        return sum(worker.errors for worker in self.workers)


def dedicated_loaders(conn_string: str) -> LoaderFactory:
    """One freshly opened connection per worker."""

    def factory(copy_nr: int) -> AbstractContextManager[BaseLoader]:
        return PostgresLoader(conn_string)

    return factory


def pooled_loaders(pool: ConnectionPool) -> LoaderFactory:
    """Connections checked out of a shared pool for the duration of a worker."""

    @contextmanager
    def factory(copy_nr: int) -> Iterator[BaseLoader]:
        with ExitStack() as stack:
            try:
                conn = stack.enter_context(pool.connection())
            except psycopg.Error as exc:
                msg = f"Cannot check out a pooled connection for worker {copy_nr}: {exc}"
                raise TransportError(msg) from exc
            yield stack.enter_context(PostgresLoader(conn=conn))

    return factory


def _put(target: queue.Queue, item: object, stop_event: threading.Event) -> bool:
    while not stop_event.is_set():
        try:
            target.put(item, timeout=_POLL_INTERVAL)
            return True
        except queue.Full:
            continue
    return False


def run_parallel_load(
    config: LoadConfig,
    schema: RowSchema,
    rows: Iterable[Row],
    loader_factory: LoaderFactory,
    copies: int = 1,
    unique_connections: bool = True,
    partition_ids: Sequence[str] | None = None,
    partitioner: Callable[[Row], int] | None = None,
    on_row: Callable[[Row], None] | None = None,
    queue_size: int = 1000,
) -> LoadResult:
    """Load ``rows`` into the configured table with ``copies`` workers.

    Args:
        config: The load configuration.
        schema: Field layout shared by all rows.
        rows: The input rows; consumed once.
        loader_factory: Returns a context manager yielding a connected loader
                        for a given worker ordinal.
        copies: Number of parallel workers.
        unique_connections: Recorded in each worker's context; selects
                            dedicated rather than pooled connections.
        partition_ids: One partition id per worker for partitioned tables.
        partitioner: Maps a row to a worker ordinal; round-robin if omitted.
        on_row: Receives each row once it has been written.
        queue_size: Maximum rows buffered per worker.

    Raises:
        BulkLoadError: The first error raised by any worker.

    """
    if copies < 1:
        msg = f"At least one worker copy is required, got {copies}"
        raise ValueError(msg)
    if partition_ids is not None and len(partition_ids) != copies:
        msg = "partition_ids must name exactly one partition per worker copy"
        raise ValueError(msg)

    start_time = time.monotonic()
    stop_event = threading.Event()
    gate = TruncateGate()
    barrier = threading.Barrier(copies)
    queues: list[queue.Queue] = [queue.Queue(maxsize=queue_size) for _ in range(copies)]

    def worker(copy_nr: int) -> WorkerResult:
        context = LoadContext(
            copy_nr=copy_nr,
            copies=copies,
            unique_step_nr=copy_nr,
            partition_id=partition_ids[copy_nr] if partition_ids else None,
            unique_connections=unique_connections,
        )
        result = WorkerResult(copy_nr=copy_nr, partition_id=context.partition_id)
        coordinator: LoadCoordinator | None = None
        try:
            with loader_factory(copy_nr) as loader:
                coordinator = LoadCoordinator(
                    config, loader, context, stop_event=stop_event, gate=gate, on_row=on_row
                )
                coordinator.initialize()
                try:
                    barrier.wait()
                except threading.BrokenBarrierError:
                    coordinator.finish()
                    return result
                result.truncated = coordinator.truncated

                inbox = queues[copy_nr]
                while True:
                    try:
                        row = inbox.get(timeout=_POLL_INTERVAL)
                    except queue.Empty:
                        if stop_event.is_set():
                            break
                        continue
                    if row is _END or not coordinator.feed(row, schema):
                        break
                result.committed = coordinator.finish()
        except BaseException as exc:
            stop_event.set()
            barrier.abort()
            if coordinator is None:
                # Failed while acquiring a connection, before any coordinator.
                result.errors = 1
                logger.error("Worker %d failed before loading: %s", copy_nr, exc)
            raise
        finally:
            if coordinator is not None:
                result.rows_loaded = coordinator.lines_output if result.committed else 0
                result.errors = coordinator.errors
        return result

    rows_read = 0
    results: list[WorkerResult | None] = [None] * copies
    first_exc: BaseException | None = None
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=copies, thread_name_prefix="pgbulk"
    ) as executor:
        future_to_index = {executor.submit(worker, i): i for i in range(copies)}
        try:
            for row in rows:
                target = partitioner(row) % copies if partitioner else rows_read % copies
                if not _put(queues[target], row, stop_event):
                    break
                rows_read += 1
            for inbox in queues:
                _put(inbox, _END, stop_event)
        except BaseException as exc:
            # The producer failed: stop the workers so they roll back.
            stop_event.set()
            first_exc = exc

        for future in concurrent.futures.as_completed(future_to_index):
            index = future_to_index[future]
            try:
                results[index] = future.result()
            except BaseException as exc:  # noqa: BLE001 - propagate first failure
                if first_exc is None:
                    first_exc = exc

    if first_exc is not None:
        raise first_exc

    worker_results = [r for r in results if r is not None]
    load_result = LoadResult(
        target_table=config.target_table,
        rows_read=rows_read,
        rows_loaded=sum(r.rows_loaded for r in worker_results),
        duration_seconds=time.monotonic() - start_time,
        workers=worker_results,
    )
    logger.info(
        "Loaded %d rows into %s with %d worker(s) in %.2fs",
        load_result.rows_loaded,
        load_result.target_table,
        copies,
        load_result.duration_seconds,
    )
    return load_result


def run_load(
    config: LoadConfig,
    schema: RowSchema,
    rows: Iterable[Row],
    settings: Settings,
    copies: int = 1,
    unique_connections: bool = True,
    dsn: str | None = None,
    **kwargs,
) -> LoadResult:
    """Run :func:`run_parallel_load` against the database named by ``settings``."""
    conn_string = dsn or settings.db_connection_string
    if unique_connections:
        return run_parallel_load(
            config,
            schema,
            rows,
            dedicated_loaders(conn_string),
            copies=copies,
            unique_connections=True,
            **kwargs,
        )

    with ConnectionPool(
        conn_string, min_size=1, max_size=max(settings.pool_max_size, copies), open=True
    ) as pool:
        return run_parallel_load(
            config,
            schema,
            rows,
            pooled_loaders(pool),
            copies=copies,
            unique_connections=False,
            **kwargs,
        )
