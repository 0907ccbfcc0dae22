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
"""The `manifest.json` of the legacy `docker save` archive layout.

The file holds a JSON list, each entry describes one image in the archive::

    [{"Config": "<config path>", "RepoTags": ["repo:tag"], "Layers": ["<layer path>", ...]}]
"""

from __future__ import annotations

from typing import List, Union

from pydantic import ConfigDict, Field, TypeAdapter

from image_squash.common.model_spec import AliasEnabledModel


class DockerArchiveManifestEntry(AliasEnabledModel):
    model_config = ConfigDict(extra="allow")

    config: str = Field(alias="Config")
    repo_tags: Union[List[str], None] = Field(alias="RepoTags", default=None)
    layers: List[str] = Field(alias="Layers")


DockerArchiveManifest = TypeAdapter(List[DockerArchiveManifestEntry])


def parse_docker_archive_manifest(_input: str | bytes) -> list[DockerArchiveManifestEntry]:
    return DockerArchiveManifest.validate_json(_input)


def export_docker_archive_manifest(entries: list[DockerArchiveManifestEntry]) -> bytes:
    return DockerArchiveManifest.dump_json(entries, by_alias=True, exclude_none=True)
