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


def main(argv=None):
    import argparse
    import logging
    from collections.abc import Callable

    from image_squash import version
    from image_squash_tools._utils import configure_logging
    from image_squash_tools.cmds import squash_cmd_args

    logger = logging.getLogger(__name__)

    arg_parser = argparse.ArgumentParser(
        prog="docker-squash",
        description="Squash all layers of a container image into a single layer.",
        add_help=False,
    )

    # ------ top-level parser ------ #
    arg_parser.add_argument(
        "-h",
        "-help",
        "--help",
        action="help",
        help="Show this help message and exit.",
    )
    arg_parser.add_argument(
        "--version",
        action="version",
        version=f"docker-squash v{version}",
    )
    arg_parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug logging for this script",
    )
    squash_cmd_args(arg_parser)

    # ------ top-level args parsing ----- #
    args = arg_parser.parse_args(argv)
    if args.debug:
        configure_logging(logging.DEBUG)
        logger.debug("Set to debug logging.")
    elif args.quiet:
        configure_logging(logging.WARNING)
    else:
        configure_logging(logging.INFO)

    # ------ execute command ------ #
    handler: Callable = args.handler
    handler(args)


if __name__ == "__main__":
    main()
