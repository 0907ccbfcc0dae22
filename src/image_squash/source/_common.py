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

from __future__ import annotations

from typing import IO, Callable, List, NamedTuple, Optional, Tuple

from image_squash.common.oci_spec import Sha256Digest
from image_squash.oci.image_config.schema import ImageConfig


class SourceLayer(NamedTuple):
    """A layer blob of the source image, from bottom(index 0) to top."""

    index: int
    opener: Callable[[], IO[bytes]]
    media_type: Optional[str] = None
    digest: Optional[Sha256Digest] = None


class SourceImage(NamedTuple):
    """The loaded source image."""

    config: ImageConfig
    layers: List[SourceLayer]
    repo_tags: Tuple[str, ...] = ()
