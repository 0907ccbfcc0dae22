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
"""Stage layer blobs as uncompressed tar files, and read entries from them."""

from __future__ import annotations

import gzip
import logging
import tarfile
import zlib
from pathlib import Path
from typing import IO, Callable, Iterator, Optional

import zstandard

from image_squash.common.io import HashingWriter
from image_squash.common.oci_spec import Sha256Digest
from image_squash.consts import STAGE_READ_SIZE
from image_squash.errors import ResolutionError, SourceReadError
from image_squash.source._common import SourceImage
from image_squash.squash.entries import FsEntry

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"

STAGED_LAYER_FNAME = "layer-{index}.tar"


def detect_compression(magic: bytes) -> str | None:
    """Detect the compression algorithm by the leading magic bytes of a blob."""
    if magic.startswith(GZIP_MAGIC):
        return "gzip"
    if magic.startswith(ZSTD_MAGIC):
        return "zstd"


def _open_decompressed(src: IO[bytes], compression: str | None) -> IO[bytes]:
    if compression == "gzip":
        return gzip.GzipFile(fileobj=src, mode="rb")  # type: ignore[return-value]
    if compression == "zstd":
        return zstandard.ZstdDecompressor().stream_reader(
            src, read_across_frames=True, closefd=False
        )  # type: ignore[return-value]
    return src


def stage_layer(
    blob: IO[bytes],
    dst: Path,
    *,
    read_size: int = STAGE_READ_SIZE,
    observer: Optional[Callable[[int], None]] = None,
) -> Sha256Digest:
    """Decompress a layer <blob> into an uncompressed tar file at <dst>.

    The compression(gzip, zstd or none) is detected by magic bytes,
        <blob> MUST be seekable.

    Returns:
        The diff-id(sha256 digest of the uncompressed tar) of this layer.

    Raises:
        SourceReadError if the blob is corrupted.
    """
    try:
        _magic = blob.read(len(ZSTD_MAGIC))
        blob.seek(0)
    except OSError as e:
        raise SourceReadError(f"failed to read layer blob: {e!r}") from e

    _compression = detect_compression(_magic)
    logger.debug(f"stage layer to {dst}, {_compression=}")
    try:
        _src = _open_decompressed(blob, _compression)
        with open(dst, "wb") as _dst:
            _writer = HashingWriter(_dst, observer=observer)
            while data := _src.read(read_size):
                _writer.write(data)
    except (OSError, EOFError, zlib.error, zstandard.ZstdError) as e:
        raise SourceReadError(f"failed to decompress layer blob: {e!r}") from e
    return Sha256Digest(_writer.hexdigest())


class LayerArchive:
    """A staged, uncompressed layer tar file.

    The archive stays open while entries from it are in use, as
        the content of entries is read lazily from the archive.
    """

    def __init__(self, index: int, fpath: Path, *, diff_id: Sha256Digest | None = None):
        self.index = index
        self.fpath = fpath
        self.diff_id = diff_id
        self._tar: tarfile.TarFile | None = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __iter__(self) -> Iterator[FsEntry]:
        return self.iter_entries()

    def close(self) -> None:
        if self._tar is not None:
            self._tar.close()
            self._tar = None

    def _opener(self, member: tarfile.TarInfo) -> Callable[[], IO[bytes]]:
        def _open() -> IO[bytes]:
            assert self._tar is not None, f"layer {self.index} is closed"
            _f = self._tar.extractfile(member)
            if _f is None:
                raise SourceReadError(
                    "no content stream", path=member.name, layer_index=self.index
                )
            return _f

        return _open

    def iter_entries(self) -> Iterator[FsEntry]:
        """Yield entries of this layer in archive order.

        Raises:
            SourceReadError if the archive is corrupted.
            ResolutionError if an entry has an invalid path or an unsupported type.
        """
        try:
            if self._tar is None:
                self._tar = tarfile.open(self.fpath, mode="r:")
            for _member in self._tar:
                try:
                    yield FsEntry.from_tarinfo(
                        _member,
                        layer_index=self.index,
                        opener=self._opener(_member) if _member.isreg() else None,
                    )
                except ValueError as e:
                    raise ResolutionError(
                        str(e), path=_member.name, layer_index=self.index
                    ) from e
        except (OSError, tarfile.TarError) as e:
            raise SourceReadError(
                f"failed to read layer archive: {e!r}", layer_index=self.index
            ) from e


def stage_layers(
    image: SourceImage,
    staging_dir: Path,
    *,
    read_size: int = STAGE_READ_SIZE,
    observer: Optional[Callable[[int], None]] = None,
) -> list[LayerArchive]:
    """Stage all layers of <image> into <staging_dir>, verifying their diff-ids.

    Raises:
        SourceReadError if any layer cannot be staged, or the diff-ids
            don't match the `rootfs.diff_ids` of the image config.
    """
    _expected = image.config.diff_ids
    if len(_expected) != len(image.layers):
        raise SourceReadError(
            f"image has {len(image.layers)} layers, "
            f"but config lists {len(_expected)} diff_ids"
        )

    _staged_bytes = 0

    def _on_progress(_layer_bytes: int) -> None:
        if observer:
            observer(_staged_bytes + _layer_bytes)

    res: list[LayerArchive] = []
    for _layer, _expected_diff_id in zip(image.layers, _expected):
        _dst = staging_dir / STAGED_LAYER_FNAME.format(index=_layer.index)
        try:
            with _layer.opener() as _blob:
                _diff_id = stage_layer(
                    _blob, _dst, read_size=read_size, observer=_on_progress
                )
        except SourceReadError as e:
            e.layer_index = _layer.index
            raise
        except OSError as e:
            raise SourceReadError(
                f"failed to open layer blob: {e!r}", layer_index=_layer.index
            ) from e

        if _diff_id != _expected_diff_id:
            raise SourceReadError(
                f"diff_id mismatch, expect {_expected_diff_id}, get {_diff_id}",
                layer_index=_layer.index,
            )
        _staged_bytes += _dst.stat().st_size
        logger.debug(f"layer {_layer.index} staged, {_diff_id=}")
        res.append(LayerArchive(_layer.index, _dst, diff_id=_diff_id))
    return res
