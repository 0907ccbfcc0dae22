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
"""Write the squashed image as an image archive.

The archive is loadable by `docker load`, and is also a valid OCI image layout:

    blobs/sha256/<config>
    blobs/sha256/<layer>
    blobs/sha256/<manifest>
    index.json
    manifest.json
    oci-layout

The archive build is reproducible, all entries have fixed permission bits,
    ownership and mtime, and are arranged in alphabet order.
"""

from __future__ import annotations

import logging
import os
import tarfile
from pathlib import Path
from typing import Callable, Optional

from image_squash.common._common import tmp_fname
from image_squash.common.io import HashingWriter
from image_squash.consts import (
    DEFAULT_TIMESTAMP,
    DIR_PERMISSION,
    FILE_PERMISSION,
    READ_SIZE,
)
from image_squash.errors import WriteError
from image_squash.oci.consts import (
    ANNOTATION_CONTAINERD_IMAGE_NAME,
    ANNOTATION_REF_NAME,
    DOCKER_ARCHIVE_MANIFEST_FNAME,
    IMAGE_INDEX_FNAME,
    OCI_LAYOUT_F_CONTENT,
    OCI_LAYOUT_FNAME,
    RESOURCE_DIR,
)
from image_squash.oci.docker_archive.schema import (
    DockerArchiveManifestEntry,
    export_docker_archive_manifest,
)
from image_squash.oci.image_config.schema import ImageConfig
from image_squash.oci.image_index.schema import ImageIndex
from image_squash.oci.image_manifest.schema import ImageManifest, LayerDescriptor
from image_squash.source.reference import ImageReference

logger = logging.getLogger(__name__)

LAYOUT_DNAME = "layout"


def build_image_layout(
    layout_dir: Path,
    *,
    reference: ImageReference,
    config: ImageConfig,
    manifest: ImageManifest,
    layer_fpath: Path,
) -> ImageManifest.Descriptor:
    """Populate <layout_dir> with the squashed image.

    <layer_fpath> is moved into the blob storage, it MUST be at the same
        filesystem as <layout_dir>.
    """
    resource_dir = layout_dir / RESOURCE_DIR
    resource_dir.mkdir(parents=True, exist_ok=True)

    _layer = LayerDescriptor.add_file_to_resource_dir(
        layer_fpath, resource_dir, digest=manifest.layers[0].digest
    )
    if _layer.size != manifest.layers[0].size:
        raise WriteError(
            f"layer size mismatch: expect {manifest.layers[0].size}, get {_layer.size}"
        )

    _config = ImageConfig.Descriptor.export_metafile_to_resource_dir(
        config, resource_dir
    )
    if _config.digest != manifest.config.digest:
        raise WriteError(
            f"config digest mismatch: expect {manifest.config.digest}, get {_config.digest}"
        )

    _manifest_descriptor = ImageManifest.Descriptor.export_metafile_to_resource_dir(
        manifest,
        resource_dir,
        annotations={
            ANNOTATION_REF_NAME: reference.reference,
            ANNOTATION_CONTAINERD_IMAGE_NAME: reference.canonical_name(),
        },
    )

    _index = ImageIndex(manifests=[_manifest_descriptor])
    (layout_dir / IMAGE_INDEX_FNAME).write_text(_index.export_metafile())

    _docker_manifest = DockerArchiveManifestEntry(
        config=f"{RESOURCE_DIR}/{_config.digest.digest_hex}",
        repo_tags=[reference.familiar_name()],
        layers=[f"{RESOURCE_DIR}/{_layer.digest.digest_hex}"],
    )
    (layout_dir / DOCKER_ARCHIVE_MANIFEST_FNAME).write_bytes(
        export_docker_archive_manifest([_docker_manifest])
    )
    (layout_dir / OCI_LAYOUT_FNAME).write_text(OCI_LAYOUT_F_CONTENT)
    return _manifest_descriptor


def _reproducible_tarinfo(arcname: str, *, is_dir: bool, size: int = 0):
    _info = tarfile.TarInfo(arcname)
    _info.mtime = DEFAULT_TIMESTAMP
    _info.uid = _info.gid = 0
    _info.uname = _info.gname = ""
    if is_dir:
        _info.type = tarfile.DIRTYPE
        _info.mode = DIR_PERMISSION
    else:
        _info.mode = FILE_PERMISSION
        _info.size = size
    return _info


def pack_image_archive(
    layout_dir: Path,
    output: Path,
    *,
    read_size: int = READ_SIZE,
    observer: Optional[Callable[[int], None]] = None,
) -> int:
    """Pack the image layout at <layout_dir> into a tar archive at <output>.

    Returns:
        The size of the archive in bytes.
    """
    with open(output, "wb") as _output_f:
        _dst = HashingWriter(_output_f, observer=observer)
        with tarfile.open(
            fileobj=_dst,
            mode="w|",
            format=tarfile.PAX_FORMAT,
            copybufsize=read_size,
        ) as _tar:
            for curdir, dirnames, fnames in os.walk(layout_dir):
                dirnames.sort()
                curdir = Path(curdir)
                relative_curdir = curdir.relative_to(layout_dir)

                if curdir != layout_dir:
                    _tar.addfile(
                        _reproducible_tarinfo(str(relative_curdir), is_dir=True)
                    )
                for _fname in sorted(fnames):
                    _src = curdir / _fname
                    _info = _reproducible_tarinfo(
                        str(relative_curdir / _fname),
                        is_dir=False,
                        size=_src.stat().st_size,
                    )
                    with open(_src, "rb") as _src_f:
                        _tar.addfile(_info, _src_f)
        return _dst.bytes_written


def write_image_archive(
    dest: Path,
    *,
    workdir: Path,
    reference: ImageReference,
    config: ImageConfig,
    manifest: ImageManifest,
    layer_fpath: Path,
    read_size: int = READ_SIZE,
    observer: Optional[Callable[[int], None]] = None,
) -> int:
    """Write the squashed image archive to <dest>.

    The archive is written to a temporary file next to <dest> first, and only
        renamed to <dest> when completely written. On failure, no file is left at <dest>.

    Returns:
        The size of the archive in bytes.

    Raises:
        WriteError on any failure.
    """
    _layout_dir = workdir / LAYOUT_DNAME
    _tmp_output = dest.parent / tmp_fname(dest.name, prefix=".tmp")
    try:
        build_image_layout(
            _layout_dir,
            reference=reference,
            config=config,
            manifest=manifest,
            layer_fpath=layer_fpath,
        )
        _size = pack_image_archive(
            _layout_dir, _tmp_output, read_size=read_size, observer=observer
        )
        os.replace(_tmp_output, dest)
    except (OSError, tarfile.TarError) as e:
        raise WriteError(f"failed to write image archive: {e!r}", path=str(dest)) from e
    finally:
        _tmp_output.unlink(missing_ok=True)

    logger.debug(f"image archive written to {dest}, {_size} bytes")
    return _size
