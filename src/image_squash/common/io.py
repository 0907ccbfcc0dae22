# Copyright 2025 TIER IV, INC. All rights reserved.
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
"""Common shared helper functions for IO."""

from __future__ import annotations

import hashlib
import io
from typing import IO, Callable, Optional


class HashingWriter(io.RawIOBase):
    """A write-only stream wrapper that hashes and counts everything written.

    Optionally, <observer> is called with the total written bytes after each write.
    """

    def __init__(
        self,
        _dst: IO[bytes],
        *,
        observer: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._dst = _dst
        self._hasher = hashlib.sha256()
        self._observer = observer
        self.bytes_written = 0

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        _written = self._dst.write(data)
        # NOTE: some file objects return None on write
        if _written is None:
            _written = len(data)
        self._hasher.update(memoryview(data)[:_written])
        self.bytes_written += _written
        if self._observer:
            self._observer(self.bytes_written)
        return _written

    def flush(self) -> None:
        self._dst.flush()

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()
