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
"""Replay layers bottom to top into a union view of the filesystem.

Rules applied while replaying layer L:
1. Within a layer, the last entry at a path wins.
2. A whiteout marker `D/.wh.N` removes D/N and everything below D/N
    that comes from layers < L.
3. An opaque marker `D/.wh..wh..opq` removes everything below D that comes
    from layers < L, regardless of where the marker appears in layer L.
4. A non-directory entry replacing a directory removes everything below it,
    the directory may be implicit, only existing through its descendants.
5. An entry added below a path held by a non-directory entry turns
    that path into an implicit directory, the non-directory entry is removed.
6. A lower layer directory is kept when anything below it survives a removal.

Hardlinks are collapsed to their final target. A hardlink whose target
    is still visible in the final view is kept as is. Otherwise it falls back to
    a regular file with the content its target had when the link was recorded,
    links that saw the same content keep sharing it. Without known content,
    BrokenLinkError is raised.
"""

from __future__ import annotations

import logging
import tarfile
from collections import defaultdict
from typing import Iterable, Iterator

from image_squash.errors import BrokenLinkError, ResolutionError
from image_squash.squash.entries import FsEntry, ancestors, parent_path, sort_key

logger = logging.getLogger(__name__)


class UnionView:
    """The resolved filesystem, a mapping from path to its winning entry."""

    def __init__(self) -> None:
        self._entries: dict[str, FsEntry] = {}
        self._children: defaultdict[str, set[str]] = defaultdict(set)
        self.deleted: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __getitem__(self, path: str) -> FsEntry:
        return self._entries[path]

    def get(self, path: str) -> FsEntry | None:
        return self._entries.get(path)

    @property
    def paths(self) -> list[str]:
        return sorted(self._entries, key=sort_key)

    @property
    def entries_count(self) -> int:
        return len(self._entries)

    @property
    def total_size(self) -> int:
        return sum(_entry.size for _entry in self._entries.values())

    def iter_entries(self) -> Iterator[FsEntry]:
        """Yield entries in output order.

        Non-hardlink entries come first ordered by path components,
            followed by hardlinks in the same order, so that a hardlink's
            target is always emitted before the hardlink.
        """
        _links = []
        for _path in self.paths:
            _entry = self._entries[_path]
            if _entry.is_hardlink:
                _links.append(_entry)
                continue
            yield _entry
        yield from _links

    # ------ mutation, used by the resolver ------ #

    def _set(self, entry: FsEntry) -> None:
        self._entries[entry.path] = entry
        self.deleted.discard(entry.path)

        # link the whole chain, ancestors without an entry are implicit directories
        _path = entry.path
        while _path:
            _parent = parent_path(_path)
            _siblings = self._children[_parent]
            if _path in _siblings:
                break
            _siblings.add(_path)
            _path = _parent

    def _pop(self, path: str) -> FsEntry | None:
        _entry = self._entries.pop(path, None)
        if _entry is not None:
            self._prune(path)
        return _entry

    def _prune(self, path: str) -> None:
        """Unlink <path> and its implicit ancestors with nothing left below them."""
        while path and path not in self._entries and not self._children.get(path):
            self._children.pop(path, None)
            _parent = parent_path(path)
            if _siblings := self._children.get(_parent):
                _siblings.discard(path)
                if not _siblings:
                    del self._children[_parent]
            path = _parent

    def _subtree(self, path: str) -> list[str]:
        """Return all paths below <path> in pre-order, implicit directories included."""
        _res: list[str] = []
        _stack = list(self._children.get(path, ()))
        while _stack:
            _cur = _stack.pop()
            _res.append(_cur)
            _stack.extend(self._children.get(_cur, ()))
        return _res

    def _drop(self, path: str, *, below_layer: int, include_self: bool) -> None:
        """Remove entries from layers < <below_layer> at and below <path>.

        A removed-candidate directory that still has surviving entries below
            it is kept, as the parent of those entries.
        """
        _candidates = self._subtree(path)
        if include_self:
            _candidates.insert(0, path)

        # reversed pre-order visits descendants before their ancestors
        for _cur in reversed(_candidates):
            _entry = self._entries.get(_cur)
            if _entry is None or _entry.layer_index >= below_layer:
                continue
            if self._children.get(_cur):
                continue
            self._pop(_cur)


def _add_entry(view: UnionView, entry: FsEntry) -> None:
    for _ancestor in ancestors(entry.path):
        _existing = view.get(_ancestor)
        if _existing is not None and not _existing.is_dir:
            logger.debug(f"{_existing} becomes an implicit directory for {entry}")
            view._drop(_ancestor, below_layer=entry.layer_index + 1, include_self=True)

    # the path may be an explicit or an implicit directory
    if not entry.is_dir and view._children.get(entry.path):
        view._drop(entry.path, below_layer=entry.layer_index + 1, include_self=False)
    view._set(entry)


class _LinkTracker:
    """Track hardlinks and the last known content of their targets."""

    def __init__(self) -> None:
        self.link_targets: dict[str, str] = {}
        # for a hardlink, the content of its target at the time it was recorded
        self.last_known: dict[str, FsEntry] = {}

    def record(self, view: UnionView, entry: FsEntry) -> FsEntry:
        """Record <entry>, return the entry to put into <view>."""
        if not entry.is_hardlink:
            self.link_targets.pop(entry.path, None)
            if entry.is_regular:
                self.last_known[entry.path] = entry
            else:
                self.last_known.pop(entry.path, None)
            return entry

        _target = entry.linkpath or ""
        _target_entry = view.get(_target)
        if (
            _target_entry is not None
            and _target_entry.is_hardlink
            and _target in self.link_targets
        ):
            _target = self.link_targets[_target]
        if _target == entry.path:
            raise ResolutionError(
                "hardlink points to itself",
                path=entry.path,
                layer_index=entry.layer_index,
            )
        self.link_targets[entry.path] = _target
        # the link shares its content with the target
        if _content := self.last_known.get(_target):
            self.last_known[entry.path] = _content
        else:
            self.last_known.pop(entry.path, None)
        if entry.linkpath != _target:
            entry = entry.replace(linkpath=_target)
        return entry

    def finalize(self, view: UnionView) -> None:
        _fallback_groups: defaultdict[tuple[str, int], list[FsEntry]] = defaultdict(
            list
        )
        for _path in view.paths:
            _link = view[_path]
            if not _link.is_hardlink:
                continue

            _target = self.link_targets[_path]
            _target_entry = view.get(_target)
            if (
                _target_entry is not None
                and not _target_entry.is_dir
                and not _target_entry.is_hardlink
            ):
                continue

            if (_content := self.last_known.get(_path)) is None:
                raise BrokenLinkError(
                    f"hardlink target {_target!r} is not visible and has no known content",
                    path=_link.path,
                    layer_index=_link.layer_index,
                )
            # links that saw the same content of the same target share one copy
            _fallback_groups[(_target, id(_content))].append(_link)

        for (_target, _), _links in _fallback_groups.items():
            _first, *_rest = _links
            _content = self.last_known[_first.path]
            logger.debug(
                f"hardlink target {_target} vanished, {_first.path} becomes a copy of it"
            )
            view._set(
                _content.replace(path=_first.path, layer_index=_first.layer_index)
            )
            for _link in _rest:
                view._set(_link.replace(linkpath=_first.path))


def resolve(layers: Iterable[Iterable[FsEntry]]) -> UnionView:
    """Replay <layers>, ordered from bottom to top, into a UnionView.

    The index of a layer is its position in <layers>, and is
        assigned to every entry in that layer.

    Raises:
        ResolutionError on malformed whiteout markers.
        BrokenLinkError if a hardlink target cannot be resolved.
    """
    view = UnionView()
    links = _LinkTracker()

    for layer_index, layer in enumerate(layers):
        _opaque_dirs: set[str] = set()

        for entry in layer:
            if entry.layer_index != layer_index:
                entry = entry.replace(layer_index=layer_index)
            if not entry.path or entry.is_aufs_meta:
                continue

            if entry.is_opaque_marker:
                _opaque_dirs.add(parent_path(entry.path))
                continue

            if entry.is_whiteout:
                if entry.tarinfo.type == tarfile.DIRTYPE:
                    raise ResolutionError(
                        "whiteout marker must not be a directory",
                        path=entry.path,
                        layer_index=layer_index,
                    )
                if not (_target := entry.whiteout_target):
                    raise ResolutionError(
                        "whiteout marker without target name",
                        path=entry.path,
                        layer_index=layer_index,
                    )
                view._drop(_target, below_layer=layer_index, include_self=True)
                if _target not in view:
                    view.deleted.add(_target)
                continue

            entry = links.record(view, entry)
            _add_entry(view, entry)

        # opaque markers hide lower layers only, so they can be applied
        #   after the whole layer is replayed.
        for _opaque_dir in _opaque_dirs:
            logger.debug(f"layer {layer_index}: {_opaque_dir or '/'} is opaque")
            view._drop(_opaque_dir, below_layer=layer_index, include_self=False)

    links.finalize(view)
    logger.debug(
        f"resolved {view.entries_count} entries, {view.total_size} bytes, "
        f"{len(view.deleted)} paths deleted"
    )
    return view
