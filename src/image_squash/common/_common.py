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

import os
from typing import Any

from .model_fields import ConstFieldMeta

DEFAULT_TMP_FNAME_PREFIX = "tmp"

# (field name in the document, const field attr name on the model class)
CONST_FIELDS = (("schemaVersion", "SchemaVersion"), ("mediaType", "MediaType"))


def tmp_fname(
    hint: str = "",
    prefix: str = DEFAULT_TMP_FNAME_PREFIX,
    suffix: str = "",
    sep: str = "_",
    *,
    random_bytes: int = 4,
) -> str:
    return f"{prefix}{sep}{hint}{sep}{os.urandom(random_bytes).hex()}{suffix}"


def _lookup_const_field(cls: type, attr_name: str) -> ConstFieldMeta | None:
    # bypass descriptor protocol, the const field class itself is needed here
    for _klass in cls.__mro__:
        if attr_name in _klass.__dict__:
            _attr = _klass.__dict__[attr_name]
            return _attr if isinstance(_attr, ConstFieldMeta) else None


def const_fields_before_validator(cls: type, data: Any) -> Any:
    """Fill in or validate the `schemaVersion` and `mediaType` of input.

    Missing const fields are set to the canonical value defined by <cls>,
        present fields must match one of the expected values.
    """
    if not isinstance(data, dict):
        return data

    data = dict(data)
    for _field_name, _attr_name in CONST_FIELDS:
        if not (_checker := _lookup_const_field(cls, _attr_name)):
            continue
        if data.get(_field_name) is None:
            data[_field_name] = _checker.canonical
        else:
            _checker.validate(data[_field_name])
    return data
