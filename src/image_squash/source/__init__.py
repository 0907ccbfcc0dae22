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
"""Load the source image, from a local image archive or a registry."""

from image_squash.source.archive_reader import ImageArchiveReader
from image_squash.source.layer_reader import LayerArchive, stage_layer, stage_layers
from image_squash.source.reference import (
    DOCKER_URL_PREFIX,
    BadReferenceError,
    ImageReference,
    parse_reference,
)
from image_squash.source.registry import RegistryPuller, pull_image

__all__ = [
    "DOCKER_URL_PREFIX",
    "BadReferenceError",
    "ImageArchiveReader",
    "ImageReference",
    "LayerArchive",
    "RegistryPuller",
    "parse_reference",
    "pull_image",
    "stage_layer",
    "stage_layers",
]
