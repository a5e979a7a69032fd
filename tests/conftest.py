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

import threading

import pytest

from py_load_pgbulk.config import LoadConfig
from py_load_pgbulk.loader.base import BaseLoader, CopyStream
from py_load_pgbulk.models import ColumnBinding, FieldMeta, RowSchema, ValueType


class FakeCopyStream(CopyStream):
    """Collects COPY data in memory."""

    def __init__(self, command, fail_on_write=None):
        self.command = command
        self.data = bytearray()
        self.writes = 0
        self.flushed = False
        self.ended = False
        self.aborted_with = None
        self.fail_on_write = fail_on_write

    def write(self, data):
        self.writes += 1
        if self.fail_on_write is not None and self.writes >= self.fail_on_write:
            raise OSError("connection reset by peer")
        self.data += data

    def flush(self):
        self.flushed = True

    def end_copy(self):
        assert self.flushed, "end_copy must follow flush"
        self.ended = True

    def abort(self, exc=None):
        self.aborted_with = exc


class FakeLoader(BaseLoader):
    """Records every transport call instead of talking to PostgreSQL."""

    def __init__(self, fail_on=None, fail_on_write=None):
        self.calls = []
        self.streams = []
        self.fail_on = fail_on or set()
        self.fail_on_write = fail_on_write
        self.autocommit = True
        self._lock = threading.Lock()

    def _record(self, name, *args):
        with self._lock:
            self.calls.append((name, *args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def connect(self):
        self._record("connect")

    def disconnect(self, rollback=False):
        self._record("disconnect", rollback)

    def set_autocommit(self, enabled):
        self._record("set_autocommit", enabled)
        self.autocommit = enabled

    def commit(self):
        self._record("commit")

    def rollback(self):
        self._record("rollback")

    def truncate_table(self, schema_name, table_name):
        self._record("truncate", schema_name, table_name)

    def open_copy(self, command):
        self._record("open_copy", command)
        stream = FakeCopyStream(command, fail_on_write=self.fail_on_write)
        self.streams.append(stream)
        return stream

    def call_names(self):
        return [call[0] for call in self.calls]

    @property
    def data(self):
        return b"".join(bytes(s.data) for s in self.streams)


@pytest.fixture
def fake_loader():
    return FakeLoader()


@pytest.fixture
def sales_schema():
    return RowSchema(
        fields=(
            FieldMeta(name="id", type=ValueType.INTEGER),
            FieldMeta(name="amt", type=ValueType.NUMBER),
            FieldMeta(name="d", type=ValueType.DATE),
        )
    )


@pytest.fixture
def sales_config():
    return LoadConfig(
        schema_name="public",
        table_name="sales",
        bindings=[
            ColumnBinding(field_stream="amt", field_table="amount"),
            ColumnBinding(field_stream="d", field_table="sale_date", date_mask="DATE"),
        ],
    )


@pytest.fixture
def make_loader():
    """Build a FakeLoader with injected failures."""
    return FakeLoader
