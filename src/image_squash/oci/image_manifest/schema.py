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
    MetaFileDescriptor,
    OCIDescriptor,
    SchemaVersion,
    VersionedMetaFile,
)
from image_squash.common.model_spec import AnnotationsField
from image_squash.oci.image_config.schema import ImageConfig
from image_squash.oci.media_types import (
    DOCKER_LAYER,
    DOCKER_LAYER_FOREIGN_GZIP,
    DOCKER_LAYER_GZIP,
    DOCKER_MANIFEST,
    IMAGE_LAYER,
    IMAGE_LAYER_GZIP,
    IMAGE_LAYER_NONDIST,
    IMAGE_LAYER_NONDIST_GZIP,
    IMAGE_LAYER_NONDIST_ZSTD,
    IMAGE_LAYER_ZSTD,
    IMAGE_MANIFEST,
)


class LayerDescriptor(OCIDescriptor):
    """Descriptor of a layer blob.

    The canonical media type is the uncompressed OCI layer, which is what
        the squashed layer is exported as.
    """

    # fmt: off
    MediaType = MediaTypeWithAlt[
        IMAGE_LAYER, IMAGE_LAYER_GZIP, IMAGE_LAYER_ZSTD,
        IMAGE_LAYER_NONDIST, IMAGE_LAYER_NONDIST_GZIP, IMAGE_LAYER_NONDIST_ZSTD,
        DOCKER_LAYER, DOCKER_LAYER_GZIP, DOCKER_LAYER_FOREIGN_GZIP,
    ]
    # fmt: on


class ImageManifest(VersionedMetaFile):
    class Descriptor(MetaFileDescriptor["ImageManifest"]):
        MediaType = MediaTypeWithAlt[IMAGE_MANIFEST, DOCKER_MANIFEST]

    SchemaVersion = SchemaVersion[2]
    MediaType = MediaTypeWithAlt[IMAGE_MANIFEST, DOCKER_MANIFEST]

    config: ImageConfig.Descriptor
    layers: List[LayerDescriptor]
    annotations: Union[AnnotationsField, None] = None
