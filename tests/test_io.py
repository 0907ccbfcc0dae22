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

import hashlib
import io

from image_squash.common.io import HashingWriter


class _NoneReturningWriter(io.RawIOBase):
    """A sink whose write returns None, like some file-like objects do."""

    def __init__(self) -> None:
        self.data = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, data):
        self.data.extend(data)


class TestHashingWriter:
    def test_hash_and_count(self):
        """Test everything written is forwarded, hashed and counted."""
        _sink = io.BytesIO()
        _writer = HashingWriter(_sink)

        _writer.write(b"Hello, ")
        _writer.write(memoryview(b"World!"))

        assert _sink.getvalue() == b"Hello, World!"
        assert _writer.bytes_written == 13
        assert _writer.hexdigest() == hashlib.sha256(b"Hello, World!").hexdigest()

    def test_empty(self):
        _writer = HashingWriter(io.BytesIO())

        assert _writer.bytes_written == 0
        assert _writer.hexdigest() == hashlib.sha256(b"").hexdigest()

    def test_observer(self):
        """Test observer receives the accumulated written bytes."""
        _observed = []
        _writer = HashingWriter(io.BytesIO(), observer=_observed.append)

        for _chunk in (b"a" * 10, b"b" * 5, b"c"):
            _writer.write(_chunk)

        assert _observed == [10, 15, 16]

    def test_sink_returns_none(self):
        _sink = _NoneReturningWriter()
        _writer = HashingWriter(_sink)

        assert _writer.write(b"abc") == 3
        assert _writer.bytes_written == 3
        assert bytes(_sink.data) == b"abc"
