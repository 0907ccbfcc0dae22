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
"""Write a UnionView as a single uncompressed layer tar stream."""

from __future__ import annotations

import copy
import logging
import tarfile
from typing import IO, Callable, Optional

from image_squash.common.io import HashingWriter
from image_squash.consts import READ_SIZE
from image_squash.errors import WriteError
from image_squash.squash.resolver import UnionView

logger = logging.getLogger(__name__)

# pax keys that are regenerated from the new header
REGENERATED_PAX_KEYS = ("path", "linkpath", "size")
# GNU sparse pax keys, sparse members are written as plain regular files
GNU_SPARSE_PAX_PREFIX = "GNU.sparse."


class LayerWriteResult:
    """Summary of a written squashed layer."""

    def __init__(self, *, size: int, diff_id: str, entries_count: int) -> None:
        self.size = size
        self.diff_id = diff_id
        self.entries_count = entries_count

    def __repr__(self) -> str:
        return (
            f"LayerWriteResult(size={self.size}, diff_id={self.diff_id}, "
            f"entries_count={self.entries_count})"
        )


def _prepare_header(tarinfo: tarfile.TarInfo, path: str, linkpath: str | None):
    _new = copy.copy(tarinfo)
    _new.name = path
    if linkpath is not None:
        _new.linkname = linkpath
    if _new.type in (tarfile.GNUTYPE_SPARSE, tarfile.CONTTYPE):
        _new.type = tarfile.REGTYPE
    _new.pax_headers = {
        _key: _value
        for _key, _value in tarinfo.pax_headers.items()
        if _key not in REGENERATED_PAX_KEYS
        and not _key.startswith(GNU_SPARSE_PAX_PREFIX)
    }
    return _new


def write_squashed_layer(
    view: UnionView,
    sink: IO[bytes],
    *,
    observer: Optional[Callable[[int], None]] = None,
    read_size: int = READ_SIZE,
) -> LayerWriteResult:
    """Write all visible entries of <view> into <sink> as a PAX tar stream.

    The output is deterministic, the same <view> always results in the same bytes.

    Args:
        view: the resolved union view.
        sink: a writable byte stream, only sequential writes are performed.
        observer: if specified, called with the total written bytes.
        read_size: buffer size used when copying file contents.

    Raises:
        WriteError on any failure when reading contents or writing the sink.
    """
    _dst = HashingWriter(sink, observer=observer)
    _count, _current_path = 0, None
    try:
        with tarfile.open(
            fileobj=_dst,
            mode="w|",
            format=tarfile.PAX_FORMAT,
            copybufsize=read_size,
        ) as _tar:
            for _entry in view.iter_entries():
                _current_path = _entry.path
                _header = _prepare_header(
                    _entry.tarinfo, _entry.path, _entry.linkpath
                )
                if _header.isreg():
                    with _entry.open() as _content:
                        _tar.addfile(_header, _content)
                else:
                    _header.size = 0
                    _tar.addfile(_header)
                _count += 1
    except (OSError, EOFError, ValueError, tarfile.TarError) as e:
        raise WriteError(
            f"failed to write squashed layer: {e!r}", path=_current_path
        ) from e

    logger.debug(f"wrote {_count} entries, {_dst.bytes_written} bytes")
    return LayerWriteResult(
        size=_dst.bytes_written,
        diff_id=_dst.hexdigest(),
        entries_count=_count,
    )
