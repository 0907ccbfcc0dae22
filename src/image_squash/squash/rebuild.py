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
"""Rebuild the image config and manifest for the squashed single layer."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from image_squash.common.oci_spec import Sha256Digest
from image_squash.errors import InvalidConfigError
from image_squash.oci.image_config.schema import ImageConfig
from image_squash.oci.image_manifest.schema import ImageManifest, LayerDescriptor

logger = logging.getLogger(__name__)


def format_created(_dt: datetime | None = None) -> str:
    """Format <_dt>(default now) as RFC 3339 UTC time, like `2025-01-01T00:00:00.123456Z`."""
    _dt = _dt or datetime.now(timezone.utc)
    if _dt.tzinfo is None:
        _dt = _dt.replace(tzinfo=timezone.utc)
    return _dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_image_config(raw: str | bytes) -> ImageConfig:
    try:
        return ImageConfig.parse_metafile(raw)
    except ValidationError as e:
        raise InvalidConfigError(f"invalid image config: {e}") from e


def export_image_config(config: ImageConfig) -> bytes:
    try:
        return config.export_metafile().encode("utf-8")
    except (PydanticSerializationError, ValueError) as e:
        raise InvalidConfigError(f"failed to serialize image config: {e!r}") from e


def rebuild_config(
    original: ImageConfig,
    new_layer_diff_id: Sha256Digest,
    *,
    created: datetime | None = None,
) -> ImageConfig:
    """Return a new config for the squashed image, <original> is never modified.

    `rootfs.diff_ids` only contains <new_layer_diff_id>, `history` is cleared
        and `created` is set to <created>(default now). All other fields are preserved.
    """
    _rootfs = original.rootfs.model_copy(
        deep=True, update={"diff_ids": [new_layer_diff_id]}
    )
    return original.model_copy(
        deep=True,
        update={
            "rootfs": _rootfs,
            "history": [],
            "created": format_created(created),
        },
    )


def rebuild_descriptors(
    original: ImageConfig,
    new_layer_diff_id: Sha256Digest,
    new_layer_size: int,
    new_layer_digest: Sha256Digest,
    *,
    created: datetime | None = None,
) -> tuple[ImageConfig, ImageManifest]:
    """Build the config and the single-layer manifest of the squashed image.

    The squashed layer is exported uncompressed, so its digest
        normally equals to its diff-id.

    Raises:
        InvalidConfigError if the new config cannot be serialized.
    """
    _config = rebuild_config(original, new_layer_diff_id, created=created)
    _config_raw = export_image_config(_config)

    _manifest = ImageManifest(
        config=ImageConfig.Descriptor(
            size=len(_config_raw),
            digest=Sha256Digest(Sha256Digest.sha256_impl(_config_raw).hexdigest()),
        ),
        layers=[LayerDescriptor(size=new_layer_size, digest=new_layer_digest)],
    )
    logger.debug(f"rebuilt config: {_manifest.config.digest}")
    return _config, _manifest
