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
"""Lifecycle of one COPY FROM STDIN stream.

    UNINITIALIZED --open()--> OPEN --close()--> CLOSED_OK
                                 \\--abort()/any error--> CLOSED_ERROR

COPY has no way to resynchronize in the middle of a stream, so the first
failing row ends the whole session.
"""

import logging
from collections.abc import Sequence
from typing import Any

from .encoder import RowEncoder
from .exceptions import BulkLoadError, EncodingError, TransportError
from .loader.base import BaseLoader, CopyStream
from .models import DateMask, Row, RowSchema, SessionState

logger = logging.getLogger(__name__)


class CopySession:
    """Writes encoded rows into one COPY stream.

    Args:
        loader: The transactional connection the COPY runs on.
        command: The COPY command, as text or a composed SQL object.
        encoder: Serializes rows into the stream's wire format.

    """

    def __init__(self, loader: BaseLoader, command: Any, encoder: RowEncoder) -> None:
        self.loader = loader
        self.command = command
        self.encoder = encoder
        self.state = SessionState.UNINITIALIZED
        self.rows_written = 0
        self._stream: CopyStream | None = None

    def _require_state(self, expected: SessionState, action: str) -> None:
        if self.state is not expected:
            msg = f"Cannot {action} a copy session in state {self.state.value}"
            raise RuntimeError(msg)

    def open(self) -> None:
        """Acquire the COPY stream from the loader."""
        self._require_state(SessionState.UNINITIALIZED, "open")
        try:
            self._stream = self.loader.open_copy(self.command)
        except Exception as exc:
            self.state = SessionState.CLOSED_ERROR
            msg = f"Error while preparing the COPY: {exc}"
            raise TransportError(msg) from exc
        self.state = SessionState.OPEN

    def write_row(
        self,
        row: Row,
        schema: RowSchema,
        indexes: Sequence[int],
        modes: Sequence[DateMask],
    ) -> None:
        """Encode one row completely, then write it to the stream.

        Any failure abandons the session before the error is re-raised.
        """
        self._require_state(SessionState.OPEN, "write to")
        try:
            record = self.encoder.encode_row(row, schema, indexes, modes)
        except BulkLoadError as exc:
            self.abort(exc)
            raise
        except Exception as exc:
            self.abort(exc)
            msg = "Error serializing rows of data to the COPY command"
            raise EncodingError(msg) from exc

        try:
            self._stream.write(record)
        except Exception as exc:
            self.abort(exc)
            msg = f"Error writing row {self.rows_written + 1} to the COPY stream: {exc}"
            raise TransportError(msg) from exc
        self.rows_written += 1

    def close(self) -> None:
        """Flush pending bytes and signal end-of-copy."""
        self._require_state(SessionState.OPEN, "close")
        try:
            self._stream.flush()
            self._stream.end_copy()
        except Exception as exc:
            self.state = SessionState.CLOSED_ERROR
            msg = f"Error finishing the COPY after {self.rows_written} rows: {exc}"
            raise TransportError(msg) from exc
        self.state = SessionState.CLOSED_OK
        logger.debug("COPY finished, %d rows written", self.rows_written)

    def abort(self, exc: BaseException | None = None) -> None:
        """Abandon the stream without a successful end-of-copy.

        Aborting a session that is not open only marks it failed.
        """
        if self.state is SessionState.OPEN and self._stream is not None:
            try:
                self._stream.abort(exc)
            except Exception:
                logger.warning("Failed to abandon the COPY stream", exc_info=True)
        if self.state is not SessionState.CLOSED_OK:
            self.state = SessionState.CLOSED_ERROR
