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
"""Filesystem entries of a layer, and the whiteout conventions.

ref: https://github.com/opencontainers/image-spec/blob/main/layer.md#whiteouts
"""

from __future__ import annotations

import copy
import tarfile
from enum import Enum
from typing import IO, Callable, Optional

WHITEOUT_PREFIX = ".wh."
OPAQUE_MARKER = ".wh..wh..opq"
# aufs metadata, like `.wh..wh.plnk` and `.wh..wh.aufs`, never part of the rootfs
AUFS_META_PREFIX = ".wh..wh."

ContentOpener = Callable[[], IO[bytes]]


class EntryKind(str, Enum):
    regular = "regular"
    directory = "directory"
    symlink = "symlink"
    hardlink = "hardlink"
    chardev = "chardev"
    blockdev = "blockdev"
    fifo = "fifo"


def entry_kind(tarinfo: tarfile.TarInfo) -> EntryKind:
    # NOTE: GNU sparse members and contiguous files are regular files
    if tarinfo.isreg():
        return EntryKind.regular
    if tarinfo.isdir():
        return EntryKind.directory
    if tarinfo.issym():
        return EntryKind.symlink
    if tarinfo.islnk():
        return EntryKind.hardlink
    if tarinfo.ischr():
        return EntryKind.chardev
    if tarinfo.isblk():
        return EntryKind.blockdev
    if tarinfo.isfifo():
        return EntryKind.fifo
    raise ValueError(f"unsupported tar member type {tarinfo.type!r}")


def normalize_path(name: str) -> str:
    """Normalize a tar member name to a relative posix path.

    Leading `/` and `./`, duplicated and trailing `/` are removed, `..` is resolved.
    The root directory normalizes to an empty string.

    Raises:
        ValueError if <name> escapes the root.
    """
    _parts: list[str] = []
    for _component in name.split("/"):
        if _component in ("", "."):
            continue
        if _component == "..":
            if not _parts:
                raise ValueError(f"{name!r} escapes the root")
            _parts.pop()
            continue
        _parts.append(_component)
    return "/".join(_parts)


def parent_path(path: str) -> str:
    return path.rpartition("/")[0]


def base_name(path: str) -> str:
    return path.rpartition("/")[2]


def ancestors(path: str) -> list[str]:
    """Return ancestors of <path> from top to bottom, the root excluded."""
    _parts = path.split("/")[:-1]
    return ["/".join(_parts[: _idx + 1]) for _idx in range(len(_parts))]


def sort_key(path: str) -> list[str]:
    """Order paths by their components, a directory always precedes its children."""
    return path.split("/")


class FsEntry:
    """One filesystem entry from a layer archive.

    Attributes:
        path: normalized path of this entry.
        tarinfo: the tar header of this entry, holding type, mode, ownership, times,
            link target, device numbers and pax headers(xattrs).
        layer_index: index of the layer this entry comes from, bottom layer is 0.
        linkpath: for hardlink, the normalized path of the link target.
    """

    __slots__ = ("path", "tarinfo", "layer_index", "linkpath", "_opener")

    def __init__(
        self,
        path: str,
        tarinfo: tarfile.TarInfo,
        *,
        layer_index: int = 0,
        opener: Optional[ContentOpener] = None,
        linkpath: Optional[str] = None,
    ) -> None:
        self.path = path
        self.tarinfo = tarinfo
        self.layer_index = layer_index
        self.linkpath = linkpath
        self._opener = opener

    @classmethod
    def from_tarinfo(
        cls,
        tarinfo: tarfile.TarInfo,
        *,
        layer_index: int = 0,
        opener: Optional[ContentOpener] = None,
    ) -> FsEntry:
        """Create an FsEntry from a tar header.

        Raises:
            ValueError if the member name or hardlink target escapes the root,
                or the member type is not supported.
        """
        entry_kind(tarinfo)
        _linkpath = None
        if tarinfo.islnk():
            _linkpath = normalize_path(tarinfo.linkname)
        return cls(
            normalize_path(tarinfo.name),
            tarinfo,
            layer_index=layer_index,
            opener=opener,
            linkpath=_linkpath,
        )

    def __repr__(self) -> str:
        return f"FsEntry({self.path!r}, {self.kind.value}, layer={self.layer_index})"

    @property
    def kind(self) -> EntryKind:
        return entry_kind(self.tarinfo)

    @property
    def name(self) -> str:
        return base_name(self.path)

    @property
    def size(self) -> int:
        return self.tarinfo.size if self.tarinfo.isreg() else 0

    @property
    def is_dir(self) -> bool:
        return self.tarinfo.isdir()

    @property
    def is_hardlink(self) -> bool:
        return self.tarinfo.islnk()

    @property
    def is_regular(self) -> bool:
        return self.tarinfo.isreg()

    @property
    def is_opaque_marker(self) -> bool:
        return self.name == OPAQUE_MARKER

    @property
    def is_aufs_meta(self) -> bool:
        """Whether this entry is, or is below, an aufs metadata entry."""
        if self.is_opaque_marker:
            return False
        return any(
            _component.startswith(AUFS_META_PREFIX)
            for _component in self.path.split("/")
        )

    @property
    def is_whiteout(self) -> bool:
        _name = self.name
        return _name.startswith(WHITEOUT_PREFIX) and not _name.startswith(
            AUFS_META_PREFIX
        )

    @property
    def whiteout_target(self) -> str:
        """The path removed by this whiteout marker, empty if the marker has no name."""
        _target_name = self.name[len(WHITEOUT_PREFIX) :]
        if not _target_name:
            return ""
        _parent = parent_path(self.path)
        return f"{_parent}/{_target_name}" if _parent else _target_name

    def open(self) -> IO[bytes]:
        """Open the content stream of this regular file entry."""
        if self._opener is None:
            raise ValueError(f"{self.path} has no content stream")
        return self._opener()

    def replace(self, **kwargs) -> FsEntry:
        """Return a copy of this entry with the fields in <kwargs> replaced.

        The tar header is copied, so modifying the new entry's tarinfo
            never affects this entry.
        """
        _fields = {
            "path": self.path,
            "tarinfo": copy.copy(self.tarinfo),
            "layer_index": self.layer_index,
            "opener": self._opener,
            "linkpath": self.linkpath,
        }
        _fields.update(kwargs)
        _path = _fields.pop("path")
        _tarinfo = _fields.pop("tarinfo")
        return FsEntry(_path, _tarinfo, **_fields)
