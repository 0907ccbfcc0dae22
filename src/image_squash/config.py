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
"""Runtime configuration of squashing."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from image_squash.consts import DEFAULT_REGISTRY_TIMEOUT, DEFAULT_TAG_PREFIX, READ_SIZE
from image_squash.source.reference import ImageReference, parse_reference


def default_tag() -> str:
    return f"{DEFAULT_TAG_PREFIX}{time.time_ns()}"


class SquashConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    tag: str = Field(default_factory=default_tag)
    """Reference of the output image, tag defaults to `latest`."""
    tmp_dir: Optional[Path] = None
    """Parent dir of the working dir, default to the system temp dir."""
    read_size: int = Field(default=READ_SIZE, gt=0)
    registry_timeout: int = Field(default=DEFAULT_REGISTRY_TIMEOUT, gt=0)
    quiet: bool = False

    @field_validator("tag")
    @classmethod
    def _check_tag(cls, value: str) -> str:
        parse_reference(value)
        return value

    @property
    def reference(self) -> ImageReference:
        return parse_reference(self.tag)
