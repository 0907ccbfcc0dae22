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
"""Integration tests for metafile_base module."""

import json
from typing import Optional

import pytest
from pydantic import ValidationError

from image_squash.common.metafile_base import (
    MetaFileBase,
    MetaFileDescriptor,
    VersionedMetaFile,
)
from image_squash.common.model_spec import MediaType, SchemaVersion

SAMPLE_MEDIA_TYPE = "application/vnd.test.metafile.v1+json"
VERSIONED_MEDIA_TYPE = "application/vnd.test.versioned.v1+json"


class SampleMetaFile(MetaFileBase):
    test_field: str
    optional_field: Optional[str] = None


class SampleMetaFileDescriptor(MetaFileDescriptor[SampleMetaFile]):
    MediaType = MediaType[SAMPLE_MEDIA_TYPE]


class SampleVersionedMetaFile(VersionedMetaFile):
    SchemaVersion = SchemaVersion[2]
    MediaType = MediaType[VERSIONED_MEDIA_TYPE]

    test_field: str
    optional_field: Optional[str] = None


class TestMetaFileDescriptor:
    def test_export_metafile_to_resource_dir(self, temp_dir):
        """Test exporting metafile to resource directory."""
        metafile = SampleMetaFile(test_field="test_value")

        descriptor = SampleMetaFileDescriptor.export_metafile_to_resource_dir(
            metafile, temp_dir, annotations={"key": "value"}
        )

        assert descriptor.mediaType == SAMPLE_MEDIA_TYPE
        assert descriptor.annotations == {"key": "value"}
        blob_path = temp_dir / descriptor.digest.digest_hex
        assert descriptor.size == blob_path.stat().st_size
        assert json.loads(blob_path.read_text()) == {"test_field": "test_value"}

    def test_load_metafile_from_resource_dir(self, temp_dir):
        """Test loading metafile from resource directory."""
        descriptor = SampleMetaFileDescriptor.export_metafile_to_resource_dir(
            SampleMetaFile(test_field="test_value"), temp_dir
        )

        retrieved = descriptor.load_metafile_from_resource_dir(temp_dir)

        assert isinstance(retrieved, SampleMetaFile)
        assert retrieved.test_field == "test_value"

    def test_load_metafile_not_found(self, temp_dir):
        descriptor = SampleMetaFileDescriptor.export_metafile_to_resource_dir(
            SampleMetaFile(test_field="test_value"), temp_dir
        )
        (temp_dir / descriptor.digest.digest_hex).unlink()

        with pytest.raises(FileNotFoundError):
            descriptor.load_metafile_from_resource_dir(temp_dir)

    def test_metafile_type_resolution(self):
        """Test that metafile_type correctly resolves the type."""
        assert SampleMetaFileDescriptor.metafile_type() is SampleMetaFile

    def test_reject_unexpected_media_type(self):
        with pytest.raises(ValidationError):
            SampleMetaFileDescriptor.model_validate(
                {
                    "mediaType": "application/json",
                    "size": 1,
                    "digest": f"sha256:{'0' * 64}",
                }
            )


class TestMetaFileBase:
    def test_export_only_set_fields(self):
        """Test fields not set are not exported."""
        metafile = SampleMetaFile(test_field="json_test")

        assert json.loads(metafile.export_metafile()) == {"test_field": "json_test"}

    def test_explicitly_set_none_exported(self):
        metafile = SampleMetaFile.parse_metafile(
            '{"test_field": "parsed", "optional_field": null}'
        )

        assert json.loads(metafile.export_metafile()) == {
            "test_field": "parsed",
            "optional_field": None,
        }

    def test_parse_metafile_bytes(self):
        metafile = SampleMetaFile.parse_metafile(b'{"test_field": "parsed_value"}')

        assert metafile.test_field == "parsed_value"

    def test_parse_invalid_metafile(self):
        with pytest.raises(ValidationError):
            SampleMetaFile.parse_metafile('{"optional_field": "missing required"}')


class TestVersionedMetaFile:
    def test_const_fields_exported(self):
        metafile = SampleVersionedMetaFile(test_field="versioned")

        assert json.loads(metafile.export_metafile()) == {
            "schemaVersion": 2,
            "mediaType": VERSIONED_MEDIA_TYPE,
            "test_field": "versioned",
        }

    def test_parse_without_const_fields(self):
        metafile = SampleVersionedMetaFile.parse_metafile('{"test_field": "parsed"}')

        assert metafile.schemaVersion == 2
        assert metafile.mediaType == VERSIONED_MEDIA_TYPE

    def test_reject_unexpected_schema_version(self):
        with pytest.raises(ValidationError):
            SampleVersionedMetaFile.parse_metafile(
                json.dumps(
                    {
                        "schemaVersion": 1,
                        "mediaType": VERSIONED_MEDIA_TYPE,
                        "test_field": "parsed",
                    }
                )
            )
