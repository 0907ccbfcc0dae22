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
"""Progress bars for the squashing stages."""

from __future__ import annotations

import sys
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from tqdm import tqdm


def _is_tty() -> bool:
    try:
        return sys.stderr.isatty()
    except (AttributeError, ValueError):
        return False


def tqdm_progress_factory(*, quiet: bool = False):
    """Create a progress factory that shows each stage as a tqdm bar on stderr.

    The observer receives the accumulated byte count of the stage.
    """
    _disabled = quiet or not _is_tty()

    @contextmanager
    def _progress(desc: str) -> Iterator[Optional[Callable[[int], None]]]:
        if _disabled:
            yield None
            return

        with tqdm(
            desc=desc,
            unit="B",
            unit_scale=True,
            unit_divisor=1024,
            file=sys.stderr,
            leave=False,
        ) as _bar:

            def _observer(_count: int) -> None:
                _bar.update(_count - _bar.n)

            yield _observer

    return _progress
