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
"""Shared test fixtures for docker-squash tests.

Layers and image archives are built in memory with tarfile, so that tests
    don't depend on a docker daemon or any network access.
"""

from __future__ import annotations

import gzip
import io
import json
import tarfile
from hashlib import sha256
from pathlib import Path
from typing import Any, Iterable, NamedTuple, Optional

import pytest
import zstandard

from image_squash.oci.media_types import (
    IMAGE_CONFIG,
    IMAGE_INDEX,
    IMAGE_LAYER,
    IMAGE_LAYER_GZIP,
    IMAGE_LAYER_ZSTD,
    IMAGE_MANIFEST,
)
from image_squash.squash.entries import FsEntry

FIXED_MTIME = 1700000000

LAYER_MEDIA_TYPES = {
    None: IMAGE_LAYER,
    "gzip": IMAGE_LAYER_GZIP,
    "zstd": IMAGE_LAYER_ZSTD,
}


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for a single test."""
    return tmp_path


# ------ layer entries ------ #


class TarEntry(NamedTuple):
    tarinfo: tarfile.TarInfo
    data: Optional[bytes] = None


def _tarinfo(path: str, type_: bytes, mode: int) -> tarfile.TarInfo:
    _info = tarfile.TarInfo(path)
    _info.type = type_
    _info.mode = mode
    _info.mtime = FIXED_MTIME
    _info.uid = _info.gid = 0
    _info.uname = _info.gname = "root"
    return _info


def regular(
    path: str,
    data: bytes = b"",
    *,
    mode: int = 0o644,
    uid: int = 0,
    pax_headers: Optional[dict[str, str]] = None,
) -> TarEntry:
    _info = _tarinfo(path, tarfile.REGTYPE, mode)
    _info.size = len(data)
    _info.uid = _info.gid = uid
    if pax_headers:
        _info.pax_headers = dict(pax_headers)
    return TarEntry(_info, data)


def directory(path: str, *, mode: int = 0o755) -> TarEntry:
    return TarEntry(_tarinfo(path, tarfile.DIRTYPE, mode))


def symlink(path: str, target: str) -> TarEntry:
    _info = _tarinfo(path, tarfile.SYMTYPE, 0o777)
    _info.linkname = target
    return TarEntry(_info)


def hardlink(path: str, target: str) -> TarEntry:
    _info = _tarinfo(path, tarfile.LNKTYPE, 0o644)
    _info.linkname = target
    return TarEntry(_info)


def fifo(path: str) -> TarEntry:
    return TarEntry(_tarinfo(path, tarfile.FIFOTYPE, 0o644))


def whiteout(path: str) -> TarEntry:
    """A whiteout marker that removes <path>."""
    _parent, _, _name = path.rpartition("/")
    _marker = f"{_parent}/.wh.{_name}" if _parent else f".wh.{_name}"
    return regular(_marker)


def opaque(dirpath: str) -> TarEntry:
    """An opaque marker for <dirpath>."""
    return regular(f"{dirpath}/.wh..wh..opq")


def fs_entries(entries: Iterable[TarEntry], *, layer_index: int = 0) -> list[FsEntry]:
    """Convert <entries> into in-memory FsEntry, for resolver tests."""
    res = []
    for _entry in entries:
        _opener = None
        if _entry.tarinfo.isreg():
            _data = _entry.data or b""
            _opener = lambda _data=_data: io.BytesIO(_data)  # noqa: E731
        res.append(
            FsEntry.from_tarinfo(
                _entry.tarinfo, layer_index=layer_index, opener=_opener
            )
        )
    return res


# ------ layer blobs ------ #


class LayerBlob(NamedTuple):
    blob: bytes
    diff_id: str
    """Hex sha256 of the uncompressed tar."""
    compression: Optional[str] = None

    @property
    def digest(self) -> str:
        return sha256(self.blob).hexdigest()

    @property
    def media_type(self) -> str:
        return LAYER_MEDIA_TYPES[self.compression]


def build_tar(entries: Iterable[TarEntry]) -> bytes:
    _buf = io.BytesIO()
    with tarfile.open(fileobj=_buf, mode="w", format=tarfile.PAX_FORMAT) as _tar:
        for _entry in entries:
            if _entry.tarinfo.isreg():
                _tar.addfile(_entry.tarinfo, io.BytesIO(_entry.data or b""))
            else:
                _tar.addfile(_entry.tarinfo)
    return _buf.getvalue()


def build_layer(
    entries: Iterable[TarEntry], *, compression: Optional[str] = None
) -> LayerBlob:
    _raw = build_tar(entries)
    _diff_id = sha256(_raw).hexdigest()
    if compression == "gzip":
        _raw = gzip.compress(_raw, mtime=0)
    elif compression == "zstd":
        _raw = zstandard.ZstdCompressor().compress(_raw)
    return LayerBlob(_raw, _diff_id, compression)


def read_tar_members(src: bytes | Path) -> dict[str, tuple[tarfile.TarInfo, bytes]]:
    """Read all members of a tar, mapping name to (header, content)."""
    if isinstance(src, Path):
        src = src.read_bytes()
    res = {}
    with tarfile.open(fileobj=io.BytesIO(src), mode="r:*") as _tar:
        for _member in _tar:
            _data = b""
            if _member.isreg():
                _f = _tar.extractfile(_member)
                assert _f is not None
                _data = _f.read()
            res[_member.name] = (_member, _data)
    return res


# ------ image config and archives ------ #


def make_config(layers: Iterable[LayerBlob], **extra: Any) -> dict[str, Any]:
    _layers = list(layers)
    _config: dict[str, Any] = {
        "created": "2024-01-01T00:00:00Z",
        "author": "tester",
        "architecture": "amd64",
        "os": "linux",
        "config": {
            "Env": ["PATH=/usr/local/bin:/usr/bin:/bin"],
            "Cmd": ["/bin/sh"],
            "WorkingDir": "/app",
            "Labels": {"maintainer": "tester"},
        },
        "rootfs": {
            "type": "layers",
            "diff_ids": [f"sha256:{_layer.diff_id}" for _layer in _layers],
        },
        "history": [
            {"created": "2024-01-01T00:00:00Z", "created_by": f"RUN step {_idx}"}
            for _idx in range(len(_layers))
        ],
    }
    _config.update(extra)
    return _config


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    _info = tarfile.TarInfo(name)
    _info.size = len(data)
    _info.mtime = FIXED_MTIME
    _info.mode = 0o644
    tar.addfile(_info, io.BytesIO(data))


def build_docker_archive(
    dst: Path,
    layers: list[LayerBlob],
    *,
    config: Optional[dict[str, Any]] = None,
    repo_tags: Optional[list[str]] = None,
    images: int = 1,
) -> Path:
    """Write a legacy `docker save` archive, described by `manifest.json`."""
    _config_raw = json.dumps(config or make_config(layers)).encode()
    _config_fname = f"{sha256(_config_raw).hexdigest()}.json"

    with tarfile.open(dst, mode="w") as _tar:
        _layer_fnames = []
        for _layer in layers:
            _fname = f"{_layer.digest}/layer.tar"
            _layer_fnames.append(_fname)
            _add_bytes(_tar, _fname, _layer.blob)
        _add_bytes(_tar, _config_fname, _config_raw)

        _manifest = [
            {
                "Config": _config_fname,
                "RepoTags": repo_tags or ["test/app:latest"],
                "Layers": _layer_fnames,
            }
            for _ in range(images)
        ]
        _add_bytes(_tar, "manifest.json", json.dumps(_manifest).encode())
    return dst


def build_oci_archive(
    dst: Path,
    layers: list[LayerBlob],
    *,
    config: Optional[dict[str, Any]] = None,
    manifests: int = 1,
    annotations: Optional[dict[str, str]] = None,
) -> Path:
    """Write an OCI image layout archive, described by `index.json`."""
    _config_raw = json.dumps(config or make_config(layers)).encode()
    _manifest_raw = json.dumps(
        {
            "schemaVersion": 2,
            "mediaType": IMAGE_MANIFEST,
            "config": {
                "mediaType": IMAGE_CONFIG,
                "size": len(_config_raw),
                "digest": f"sha256:{sha256(_config_raw).hexdigest()}",
            },
            "layers": [
                {
                    "mediaType": _layer.media_type,
                    "size": len(_layer.blob),
                    "digest": f"sha256:{_layer.digest}",
                }
                for _layer in layers
            ],
        }
    ).encode()
    _manifest_descriptor: dict[str, Any] = {
        "mediaType": IMAGE_MANIFEST,
        "size": len(_manifest_raw),
        "digest": f"sha256:{sha256(_manifest_raw).hexdigest()}",
    }
    if annotations:
        _manifest_descriptor["annotations"] = annotations
    _index = {
        "schemaVersion": 2,
        "mediaType": IMAGE_INDEX,
        "manifests": [_manifest_descriptor] * manifests,
    }

    with tarfile.open(dst, mode="w") as _tar:
        _add_bytes(_tar, "oci-layout", b'{"imageLayoutVersion": "1.0.0"}')
        _add_bytes(_tar, "index.json", json.dumps(_index).encode())
        for _blob in (_config_raw, _manifest_raw, *(_l.blob for _l in layers)):
            _add_bytes(_tar, f"blobs/sha256/{sha256(_blob).hexdigest()}", _blob)
    return dst


# ------ common scenarios ------ #


@pytest.fixture
def two_layers() -> list[LayerBlob]:
    """layer 0 = {/etc/a: "1"}, layer 1 = {/etc/a: "2", /etc/b: "3"}."""
    return [
        build_layer([directory("etc"), regular("etc/a", b"1")]),
        build_layer(
            [regular("etc/a", b"2"), regular("etc/b", b"3")], compression="gzip"
        ),
    ]


@pytest.fixture
def docker_archive(temp_dir: Path, two_layers: list[LayerBlob]) -> Path:
    return build_docker_archive(temp_dir / "docker-save.tar", two_layers)


@pytest.fixture
def oci_archive(temp_dir: Path, two_layers: list[LayerBlob]) -> Path:
    return build_oci_archive(temp_dir / "oci-layout.tar", two_layers)
