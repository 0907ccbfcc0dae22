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
"""Read a local image archive, as produced by `docker save`.

Two layouts are supported:
1. legacy docker layout, described by the `manifest.json` at the archive root.
2. OCI image layout, described by the `index.json` at the archive root.

When both files present(newer docker releases write both), `manifest.json` is used.
Only single-image archives are supported.
"""

from __future__ import annotations

import logging
import tarfile
from os import PathLike
from typing import IO, Callable

from pydantic import ValidationError

from image_squash.common.oci_spec import Sha256Digest
from image_squash.errors import SourceReadError, UnsupportedImageError
from image_squash.oci.consts import (
    ANNOTATION_CONTAINERD_IMAGE_NAME,
    DOCKER_ARCHIVE_MANIFEST_FNAME,
    IMAGE_INDEX_FNAME,
    RESOURCE_DIR,
)
from image_squash.oci.docker_archive.schema import (
    DockerArchiveManifestEntry,
    parse_docker_archive_manifest,
)
from image_squash.oci.image_index.schema import ImageIndex
from image_squash.oci.image_manifest.schema import ImageManifest
from image_squash.source._common import SourceImage, SourceLayer
from image_squash.squash.rebuild import parse_image_config
from image_squash.squash.entries import normalize_path

logger = logging.getLogger(__name__)


class ImageArchiveReader:
    """Helper class for reading a local image archive.

    This class is NOT safe for multi-thread.
    """

    def __init__(self, _f: PathLike | str, *, close_on_exit: bool = True) -> None:
        self._fpath = _f
        try:
            self._tar = tarfile.open(_f, mode="r:*")
            self._members = {
                normalize_path(_member.name): _member
                for _member in self._tar.getmembers()
            }
        except (OSError, ValueError, tarfile.TarError) as e:
            raise SourceReadError(f"failed to open image archive {_f}: {e!r}") from e
        self._close_on_exit = close_on_exit

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._close_on_exit:
            self.close()
        return False

    def close(self) -> None:
        self._tar.close()

    def is_docker_archive(self) -> bool:
        return DOCKER_ARCHIVE_MANIFEST_FNAME in self._members

    def is_oci_layout(self) -> bool:
        return IMAGE_INDEX_FNAME in self._members

    def open_file(self, fname: str) -> IO[bytes]:
        """Open a file in the archive."""
        try:
            _member = self._members[normalize_path(fname)]
        except (KeyError, ValueError):
            raise FileNotFoundError(f"{fname} not found in {self._fpath}") from None
        _f = self._tar.extractfile(_member)
        if _f is None:
            raise FileNotFoundError(f"{fname} in {self._fpath} is not a regular file")
        return _f

    def read_file(self, fname: str) -> bytes:
        with self.open_file(fname) as _f:
            return _f.read()

    def open_blob(self, digest: Sha256Digest) -> IO[bytes]:
        """Open a blob in the blob storage of the OCI layout."""
        return self.open_file(f"{RESOURCE_DIR}/{digest.digest_hex}")

    def read_blob(self, digest: Sha256Digest) -> bytes:
        with self.open_blob(digest) as _f:
            return _f.read()

    def _file_opener(self, fname: str) -> Callable[[], IO[bytes]]:
        return lambda: self.open_file(fname)

    def _blob_opener(self, digest: Sha256Digest) -> Callable[[], IO[bytes]]:
        return lambda: self.open_blob(digest)

    def parse_docker_manifest(self) -> DockerArchiveManifestEntry:
        _entries = parse_docker_archive_manifest(
            self.read_file(DOCKER_ARCHIVE_MANIFEST_FNAME)
        )
        if not _entries:
            raise SourceReadError(f"no image found in {self._fpath}")
        if len(_entries) > 1:
            raise UnsupportedImageError(
                f"{self._fpath} holds {len(_entries)} images, only single image is supported"
            )
        return _entries[0]

    def parse_index(self) -> ImageIndex:
        return ImageIndex.parse_metafile(self.read_file(IMAGE_INDEX_FNAME))

    def select_image_manifest(self, _index: ImageIndex) -> ImageManifest.Descriptor:
        if _nested := _index.nested_indexes:
            raise UnsupportedImageError(
                f"{self._fpath} holds an image index({_nested[0].mediaType}), "
                "multi-platform image is not supported"
            )
        _manifests = _index.image_manifests
        if not _manifests:
            raise SourceReadError(f"no image manifest found in {self._fpath}")
        if len(_manifests) > 1:
            raise UnsupportedImageError(
                f"{self._fpath} holds {len(_manifests)} manifests, only single image is supported"
            )
        return _manifests[0]

    def _load_docker_archive(self) -> SourceImage:
        _entry = self.parse_docker_manifest()
        _config = parse_image_config(self.read_file(_entry.config))
        return SourceImage(
            config=_config,
            layers=[
                SourceLayer(index=_idx, opener=self._file_opener(_layer_fname))
                for _idx, _layer_fname in enumerate(_entry.layers)
            ],
            repo_tags=tuple(_entry.repo_tags or ()),
        )

    def _load_oci_layout(self) -> SourceImage:
        _descriptor = self.select_image_manifest(self.parse_index())
        _manifest = ImageManifest.parse_metafile(self.read_blob(_descriptor.digest))
        _config = parse_image_config(self.read_blob(_manifest.config.digest))

        _repo_tags = ()
        if _descriptor.annotations and (
            _name := _descriptor.annotations.get(ANNOTATION_CONTAINERD_IMAGE_NAME)
        ):
            _repo_tags = (_name,)
        return SourceImage(
            config=_config,
            layers=[
                SourceLayer(
                    index=_idx,
                    opener=self._blob_opener(_layer.digest),
                    media_type=_layer.mediaType,
                    digest=_layer.digest,
                )
                for _idx, _layer in enumerate(_manifest.layers)
            ],
            repo_tags=_repo_tags,
        )

    def load_image(self) -> SourceImage:
        """Load the image config and layer openers from the archive.

        Raises:
            UnsupportedImageError if the archive holds more than one image.
            SourceReadError if the archive or its metadata is invalid.
        """
        try:
            if self.is_docker_archive():
                logger.debug(f"load {self._fpath} as docker archive")
                return self._load_docker_archive()
            if self.is_oci_layout():
                logger.debug(f"load {self._fpath} as OCI image layout")
                return self._load_oci_layout()
        except (OSError, ValidationError, tarfile.TarError) as e:
            raise SourceReadError(f"invalid image archive {self._fpath}: {e}") from e
        raise SourceReadError(
            f"{self._fpath} is not an image archive, "
            f"neither {DOCKER_ARCHIVE_MANIFEST_FNAME} nor {IMAGE_INDEX_FNAME} found"
        )
