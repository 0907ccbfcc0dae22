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
"""OCI/Docker image configuration.

ref: https://github.com/opencontainers/image-spec/blob/main/config.md

Only the fields that the squashing touches or inspects are modeled explicitly,
    all other fields are preserved as is.
"""

from __future__ import annotations

from typing import Any, Dict, List, Union

from pydantic import ConfigDict, Field, field_validator

from image_squash.common.metafile_base import MetaFileBase, MetaFileDescriptor
from image_squash.common.model_spec import AliasEnabledModel, MediaTypeWithAlt
from image_squash.common.oci_spec import Sha256Digest
from image_squash.oci.consts import ROOTFS_TYPE
from image_squash.oci.media_types import DOCKER_CONFIG, IMAGE_CONFIG


class RootFS(AliasEnabledModel):
    model_config = ConfigDict(extra="allow")

    type: str = ROOTFS_TYPE
    diff_ids: List[Sha256Digest]

    @field_validator("type")
    @classmethod
    def _check_rootfs_type(cls, value: str) -> str:
        if value != ROOTFS_TYPE:
            raise ValueError(f"expect rootfs type {ROOTFS_TYPE}, get {value!r}")
        return value


class ImageConfig(MetaFileBase):
    class Descriptor(MetaFileDescriptor["ImageConfig"]):
        MediaType = MediaTypeWithAlt[IMAGE_CONFIG, DOCKER_CONFIG]

    model_config = ConfigDict(extra="allow")

    created: Union[str, None] = None
    author: Union[str, None] = None
    architecture: Union[str, None] = None
    os: Union[str, None] = None
    os_version: Union[str, None] = Field(alias="os.version", default=None)
    variant: Union[str, None] = None
    config: Union[Dict[str, Any], None] = None
    rootfs: RootFS
    history: Union[List[Dict[str, Any]], None] = None

    @property
    def diff_ids(self) -> list[Sha256Digest]:
        return self.rootfs.diff_ids

    @property
    def platform(self) -> str:
        _platform = f"{self.os or 'unknown'}/{self.architecture or 'unknown'}"
        if self.variant:
            _platform = f"{_platform}/{self.variant}"
        return _platform
