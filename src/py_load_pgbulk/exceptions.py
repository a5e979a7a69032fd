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
"""Exception hierarchy for the bulk loader.

Every failure surfaces as a subclass of :class:`BulkLoadError`. The original
cause, when there is one, is chained with ``raise ... from`` so the full
cause chain reaches whoever drives the load.
"""


class BulkLoadError(Exception):
    """Base exception for all bulk load errors."""


class ConfigurationError(BulkLoadError):
    """Raised for invalid load configuration.

    Examples are an empty column mapping, a binding that names a field the
    input rows do not have, or an unknown date format mode.
    """


class EncodingError(BulkLoadError):
    """Raised when a value cannot be serialized to the COPY wire format.

    Args:
        message: Error description
        field_name: Name of the field being encoded (optional)
    """

    def __init__(self, message: str, field_name: str | None = None) -> None:
        self.field_name = field_name
        if field_name:
            message = f"{message} (field='{field_name}')"
        super().__init__(message)


class TransportError(BulkLoadError):
    """Raised when the COPY stream cannot be opened, written or finished."""


class TransactionError(BulkLoadError):
    """Raised when a commit or truncate fails."""
