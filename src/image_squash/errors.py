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
"""Errors raised while squashing an image.

Every error may carry the offending path, the index of the layer it was
found in, and the pipeline stage that failed. The context is rendered as
part of the error message.
"""

from __future__ import annotations


class SquashError(Exception):
    """Base class for all errors raised by image_squash."""

    def __init__(
        self,
        msg: str,
        *,
        path: str | None = None,
        layer_index: int | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(msg)
        self.msg = msg
        self.path = path
        self.layer_index = layer_index
        self.stage = stage

    def __str__(self) -> str:
        _ctx = []
        if self.layer_index is not None:
            _ctx.append(f"layer={self.layer_index}")
        if self.path is not None:
            _ctx.append(f"path={self.path!r}")

        _msg = self.msg
        if _ctx:
            _msg = f"{_msg} ({', '.join(_ctx)})"
        if self.stage:
            _msg = f"{self.stage}: {_msg}"
        return _msg


class SourceReadError(SquashError):
    """Cannot load or parse the input image."""


class UnsupportedImageError(SourceReadError):
    """The input exposes more than one manifest or platform."""


class ResolutionError(SquashError):
    """Inconsistent layer data, like malformed whiteout markers."""


class BrokenLinkError(ResolutionError):
    """A hardlink target cannot be resolved."""


class WriteError(SquashError):
    """Failed to produce the squashed layer or the final image archive."""


class InvalidConfigError(SquashError):
    """The image config is malformed or cannot be serialized."""
