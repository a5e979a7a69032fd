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
"""Defines the abstract base classes for destination transports."""

import abc
import types
from typing import Any


class CopyStream(abc.ABC):
    """A writable byte sink bound to one running COPY FROM STDIN."""

    @abc.abstractmethod
    def write(self, data: bytes) -> None:
        """Send bytes to the server as part of the COPY data."""
        raise NotImplementedError

    @abc.abstractmethod
    def flush(self) -> None:
        """Push any buffered bytes towards the server."""
        raise NotImplementedError

    @abc.abstractmethod
    def end_copy(self) -> None:
        """Signal end-of-copy so the server finalizes the bulk insert."""
        raise NotImplementedError

    @abc.abstractmethod
    def abort(self, exc: BaseException | None = None) -> None:
        """Abandon the copy without signalling a successful end.

        Args:
            exc: The error that caused the copy to be abandoned, if any.

        """
        raise NotImplementedError


class BaseLoader(abc.ABC):
    """Abstract Base Class for all database loaders.

    This class defines the transactional connection a bulk load runs on.
    It acts as a context manager: entering it connects, leaving it
    commits on success or rolls back on error, and disconnects.
    """

    def __enter__(self) -> "BaseLoader":
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.disconnect(rollback=exc_type is not None)

    @abc.abstractmethod
    def connect(self) -> None:
        """Establish the database connection."""
        raise NotImplementedError

    @abc.abstractmethod
    def disconnect(self, rollback: bool = False) -> None:
        """Finish the pending transaction and release the connection.

        Args:
            rollback: Roll back instead of committing.

        """
        raise NotImplementedError

    @abc.abstractmethod
    def set_autocommit(self, enabled: bool) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def commit(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def truncate_table(self, schema_name: str | None, table_name: str) -> None:
        """Empty the target table within the current transaction."""
        raise NotImplementedError

    @abc.abstractmethod
    def open_copy(self, command: Any) -> CopyStream:
        """Start a COPY FROM STDIN and return the stream to write into.

        This is a critical performance path and MUST use the database's
        native bulk loading protocol. Standard SQL INSERTs are not acceptable.

        Args:
            command: The COPY command, as text or a composed SQL object.

        """
        raise NotImplementedError
