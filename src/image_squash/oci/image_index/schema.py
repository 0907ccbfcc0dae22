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

from typing import List, Union

from image_squash.common import (
    MediaTypeWithAlt,
    OCIDescriptor,
    SchemaVersion,
    VersionedMetaFile,
)
from image_squash.common.model_spec import AnnotationsField
from image_squash.oci.image_manifest.schema import ImageManifest
from image_squash.oci.media_types import DOCKER_MANIFEST_LIST, IMAGE_INDEX


class NestedIndexDescriptor(OCIDescriptor):
    """Descriptor pointing to another image index or a Docker manifest list."""

    MediaType = MediaTypeWithAlt[IMAGE_INDEX, DOCKER_MANIFEST_LIST]


class ImageIndex(VersionedMetaFile):
    SchemaVersion = SchemaVersion[2]
    MediaType = MediaTypeWithAlt[IMAGE_INDEX, DOCKER_MANIFEST_LIST]

    manifests: List[Union[ImageManifest.Descriptor, NestedIndexDescriptor]]
    annotations: Union[AnnotationsField, None] = None

    @property
    def image_manifests(self) -> list[ImageManifest.Descriptor]:
        return [
            _entry
            for _entry in self.manifests
            if isinstance(_entry, ImageManifest.Descriptor)
        ]

    @property
    def nested_indexes(self) -> list[NestedIndexDescriptor]:
        return [
            _entry
            for _entry in self.manifests
            if isinstance(_entry, NestedIndexDescriptor)
        ]
