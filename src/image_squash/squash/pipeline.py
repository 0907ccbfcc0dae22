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
"""Orchestrate the squashing, from loading the source image to writing the output archive.

Stages, in order: load -> resolve -> write-layer -> rebuild -> write-image.
Errors raised in a stage are labelled with the stage name. All intermediate
    files live in one working dir, which is removed on every exit path.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Callable, ContextManager, Iterator, NamedTuple, Optional, Type

from image_squash.common._common import tmp_fname
from image_squash.common.oci_spec import Sha256Digest
from image_squash.config import SquashConfig
from image_squash.errors import (
    InvalidConfigError,
    ResolutionError,
    SourceReadError,
    SquashError,
    WriteError,
)
from image_squash.oci.image_config.schema import ImageConfig
from image_squash.source._common import SourceImage
from image_squash.source.archive_reader import ImageArchiveReader
from image_squash.source.layer_reader import LayerArchive, stage_layers
from image_squash.source.reference import DOCKER_URL_PREFIX
from image_squash.source.registry import pull_image
from image_squash.squash.image_writer import write_image_archive
from image_squash.squash.rebuild import rebuild_descriptors
from image_squash.squash.resolver import resolve
from image_squash.squash.writer import write_squashed_layer

logger = logging.getLogger(__name__)

Observer = Callable[[int], None]
ProgressFactory = Callable[[str], ContextManager[Optional[Observer]]]
"""Create a progress observer for a stage, called with the stage description."""

WORKDIR_PREFIX = ".docker-squash-"
PULLED_BLOBS_DNAME = "pulled"
STAGED_LAYERS_DNAME = "layers"

STAGE_LOAD = "load"
STAGE_RESOLVE = "resolve"
STAGE_WRITE_LAYER = "write-layer"
STAGE_REBUILD = "rebuild"
STAGE_WRITE_IMAGE = "write-image"


class SquashResult(NamedTuple):
    dest: Path
    reference: str
    manifest_digest: Sha256Digest
    config_digest: Sha256Digest
    layer_diff_id: Sha256Digest
    layer_size: int
    image_size: int
    entries_count: int


@contextmanager
def no_progress(_desc: str) -> Iterator[Optional[Observer]]:
    yield None


@contextmanager
def _stage(name: str, wrap_as: Type[SquashError]) -> Iterator[None]:
    """Label errors raised in this stage with <name>.

    OSError not yet converted is wrapped as <wrap_as>.
    """
    logger.debug(f"enter stage {name}")
    try:
        yield
    except SquashError as e:
        if e.stage is None:
            e.stage = name
        raise
    except OSError as e:
        _path = str(e.filename) if e.filename is not None else None
        raise wrap_as(f"{e!r}", path=_path, stage=name) from e


def load_source_image(
    source: str | Path,
    workdir: Path,
    *,
    config: SquashConfig,
    stack: ExitStack,
    progress: ProgressFactory = no_progress,
) -> tuple[ImageConfig, list[LayerArchive]]:
    """Load <source>, and stage its layers into <workdir>.

    <source> is either a path to a local image archive, or `docker://<reference>`.
    Staged layers are registered to <stack>, and closed with it.

    Returns:
        A tuple of the original image config and the staged layers, from bottom to top.
    """
    _staging_dir = workdir / STAGED_LAYERS_DNAME
    _staging_dir.mkdir(exist_ok=True)

    def _stage_layers(_image: SourceImage) -> list[LayerArchive]:
        with progress("staging layers") as _observer:
            _layers = stage_layers(
                _image, _staging_dir, read_size=config.read_size, observer=_observer
            )
        for _layer in _layers:
            stack.enter_context(_layer)
        return _layers

    if isinstance(source, str) and source.startswith(DOCKER_URL_PREFIX):
        _blobs_dir = workdir / PULLED_BLOBS_DNAME
        _blobs_dir.mkdir(exist_ok=True)
        logger.info(f"pulling {source} ...")
        with progress("pulling") as _observer:
            _image = pull_image(
                source,
                _blobs_dir,
                timeout=config.registry_timeout,
                read_size=config.read_size,
                observer=_observer,
            )
        return _image.config, _stage_layers(_image)

    logger.info(f"loading {source} ...")
    with ImageArchiveReader(source) as _reader:
        _image = _reader.load_image()
        return _image.config, _stage_layers(_image)


def squash_image(
    source: str | Path,
    dest: str | Path,
    config: SquashConfig | None = None,
    *,
    progress: ProgressFactory | None = None,
) -> SquashResult:
    """Squash all layers of <source> image into one, write the result to <dest>.

    Args:
        source: path to a local image archive, or `docker://<reference>`.
        dest: where to write the output image archive.
        config: runtime config, including the reference of the output image.
        progress: if specified, used to create a byte count observer for each stage.

    Raises:
        SquashError subclasses, labelled with the failing stage. <dest> is
            left untouched on failure.
    """
    config = config or SquashConfig()
    progress = progress or no_progress
    dest = Path(dest)
    _ref = config.reference

    with TemporaryDirectory(dir=config.tmp_dir, prefix=WORKDIR_PREFIX) as _tmp:
        workdir = Path(_tmp)
        logger.debug(f"working dir: {workdir}")

        with ExitStack() as stack:
            with _stage(STAGE_LOAD, SourceReadError):
                _original_config, _layers = load_source_image(
                    source, workdir, config=config, stack=stack, progress=progress
                )
            logger.info(f"loaded image with {len(_layers)} layers")

            with _stage(STAGE_RESOLVE, ResolutionError):
                _view = resolve(_layers)
            logger.info(
                f"resolved {_view.entries_count} entries ({_view.total_size} bytes), "
                f"{len(_view.deleted)} paths deleted"
            )

            _layer_fpath = workdir / tmp_fname("squashed_layer", suffix=".tar")
            with _stage(STAGE_WRITE_LAYER, WriteError), open(
                _layer_fpath, "wb"
            ) as _f, progress("writing layer") as _observer:
                _layer_res = write_squashed_layer(
                    _view, _f, observer=_observer, read_size=config.read_size
                )
            logger.info(
                f"squashed layer written: {_layer_res.size} bytes, "
                f"{_layer_res.entries_count} entries"
            )
        # NOTE: staged layers are closed from here

        with _stage(STAGE_REBUILD, InvalidConfigError):
            _diff_id = Sha256Digest(_layer_res.diff_id)
            _new_config, _manifest = rebuild_descriptors(
                _original_config, _diff_id, _layer_res.size, _diff_id
            )

        with _stage(STAGE_WRITE_IMAGE, WriteError), progress(
            "writing image"
        ) as _observer:
            _image_size = write_image_archive(
                dest,
                workdir=workdir,
                reference=_ref,
                config=_new_config,
                manifest=_manifest,
                layer_fpath=_layer_fpath,
                read_size=config.read_size,
                observer=_observer,
            )

    _manifest_raw = _manifest.export_metafile().encode("utf-8")
    res = SquashResult(
        dest=dest,
        reference=_ref.familiar_name(),
        manifest_digest=Sha256Digest(
            Sha256Digest.sha256_impl(_manifest_raw).hexdigest()
        ),
        config_digest=_manifest.config.digest,
        layer_diff_id=_diff_id,
        layer_size=_layer_res.size,
        image_size=_image_size,
        entries_count=_layer_res.entries_count,
    )
    logger.info(f"image {res.reference} written to {dest}, {res.image_size} bytes")
    return res
