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

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from image_squash.config import SquashConfig, default_tag
from image_squash.errors import SquashError
from image_squash.source.reference import DOCKER_URL_PREFIX
from image_squash.squash.pipeline import squash_image
from image_squash_tools._progress import tqdm_progress_factory
from image_squash_tools._utils import (
    INTERRUPTED_EXIT_CODE,
    exit_with_err_msg,
    install_sigterm_handler,
)

if TYPE_CHECKING:
    from argparse import ArgumentParser, Namespace

logger = logging.getLogger(__name__)


def squash_cmd(args: Namespace) -> None:
    logger.debug("calling squash ...")
    if len(args.paths) != 2:
        args.parser.print_usage(sys.stderr)
        exit_with_err_msg(
            f"expect exactly 2 positional args: SOURCE DEST, get {len(args.paths)}"
        )
    _source, _dest = args.paths

    try:
        _config = SquashConfig(
            tag=args.tag or default_tag(),
            tmp_dir=args.tmp_dir,
            quiet=args.quiet,
        )
    except ValidationError as e:
        exit_with_err_msg(f"invalid --tag {args.tag!r}: {e.errors()[0]['msg']}")

    _source_path = Path(_source)
    if not _source.startswith(DOCKER_URL_PREFIX) and not _source_path.is_file():
        exit_with_err_msg(f"{_source} is not a local image archive or docker:// reference")
    _dest_path = Path(_dest)
    if _dest_path.is_dir():
        exit_with_err_msg(f"{_dest} is a directory")

    install_sigterm_handler()
    try:
        _res = squash_image(
            _source if _source.startswith(DOCKER_URL_PREFIX) else _source_path,
            _dest_path,
            _config,
            progress=tqdm_progress_factory(quiet=args.quiet),
        )
    except KeyboardInterrupt:
        exit_with_err_msg("interrupted", INTERRUPTED_EXIT_CODE)
    except SquashError as e:
        logger.debug("squash failed", exc_info=e)
        exit_with_err_msg(str(e))

    if not args.quiet:
        print(
            f"Squashed image {_res.reference} written to {_res.dest}:\n"
            f"  manifest: {_res.manifest_digest}\n"
            f"  layer diff_id: {_res.layer_diff_id}\n"
            f"  {_res.entries_count} entries, {_res.image_size} bytes"
        )


def squash_cmd_args(parser: ArgumentParser) -> None:
    parser.add_argument(
        "paths",
        nargs="*",
        metavar="SOURCE DEST",
        help="SOURCE is a local image archive or `docker://<reference>`, "
        "DEST is where the squashed image archive is written to.",
    )
    parser.add_argument(
        "-tag",
        "--tag",
        default=None,
        help="Reference of the squashed image, default to `docker-squash-<unix time in ns>`.",
    )
    parser.add_argument(
        "-q",
        "-quiet",
        "--quiet",
        action="store_true",
        help="Don't show progress bars and status lines.",
    )
    parser.add_argument(
        "--tmp-dir",
        type=Path,
        default=None,
        help="Parent dir of the working dir, default to the system temp dir.",
    )
    parser.set_defaults(handler=squash_cmd, parser=parser)
