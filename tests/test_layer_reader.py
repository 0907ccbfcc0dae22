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

import io
import json
import tarfile
from hashlib import sha256

import pytest

from image_squash.errors import ResolutionError, SourceReadError
from image_squash.source._common import SourceImage, SourceLayer
from image_squash.source.layer_reader import (
    GZIP_MAGIC,
    LayerArchive,
    detect_compression,
    stage_layer,
    stage_layers,
)
from image_squash.squash.rebuild import parse_image_config
from tests.conftest import build_layer, build_tar, directory, make_config, regular


def _source_image(layers, *, config=None) -> SourceImage:
    _config = parse_image_config(json.dumps(config or make_config(layers)))
    return SourceImage(
        config=_config,
        layers=[
            SourceLayer(index=_idx, opener=lambda _blob=_layer.blob: io.BytesIO(_blob))
            for _idx, _layer in enumerate(layers)
        ],
    )


class TestDetectCompression:
    @pytest.mark.parametrize(
        "compression",
        (None, "gzip", "zstd"),
    )
    def test_detect(self, compression):
        _layer = build_layer([regular("a", b"x")], compression=compression)

        assert detect_compression(_layer.blob[:4]) == compression


class TestStageLayer:
    @pytest.mark.parametrize("compression", (None, "gzip", "zstd"))
    def test_stage_layer(self, temp_dir, compression):
        """Test a layer blob is staged as uncompressed tar with its diff_id."""
        _entries = [directory("etc"), regular("etc/a", b"hello" * 1000)]
        _layer = build_layer(_entries, compression=compression)
        _dst = temp_dir / "layer.tar"

        _diff_id = stage_layer(io.BytesIO(_layer.blob), _dst, read_size=512)

        assert _diff_id.digest_hex == _layer.diff_id
        assert _dst.read_bytes() == build_tar(_entries)

    def test_observer(self, temp_dir):
        _layer = build_layer([regular("a", b"x" * 4096)], compression="gzip")
        _counts: list[int] = []

        stage_layer(
            io.BytesIO(_layer.blob),
            temp_dir / "layer.tar",
            read_size=1024,
            observer=_counts.append,
        )

        assert _counts == sorted(_counts)
        assert _counts[-1] == (temp_dir / "layer.tar").stat().st_size

    def test_corrupted_gzip(self, temp_dir):
        with pytest.raises(SourceReadError):
            stage_layer(
                io.BytesIO(GZIP_MAGIC + b"\x08\x00garbage" * 10),
                temp_dir / "layer.tar",
            )


class TestStageLayers:
    def test_stage_layers(self, temp_dir, two_layers):
        _image = _source_image(two_layers)

        _staged = stage_layers(_image, temp_dir)

        assert [_l.index for _l in _staged] == [0, 1]
        for _archive, _layer in zip(_staged, two_layers):
            assert _archive.diff_id.digest_hex == _layer.diff_id
            assert _archive.fpath.is_file()

    def test_diff_id_mismatch(self, temp_dir, two_layers):
        """Test a layer not matching the config diff_ids is rejected."""
        _config = make_config(two_layers)
        _config["rootfs"]["diff_ids"][1] = f"sha256:{sha256(b'other').hexdigest()}"

        with pytest.raises(SourceReadError, match="diff_id mismatch") as exc_info:
            stage_layers(_source_image(two_layers, config=_config), temp_dir)
        assert exc_info.value.layer_index == 1

    def test_layers_count_mismatch(self, temp_dir, two_layers):
        _config = make_config(two_layers[:1])

        with pytest.raises(SourceReadError):
            stage_layers(_source_image(two_layers, config=_config), temp_dir)

    def test_blob_open_failure(self, temp_dir, two_layers):
        def _missing_blob():
            raise FileNotFoundError("layer.tar")

        _image = _source_image(two_layers)
        _image.layers[0] = SourceLayer(index=0, opener=_missing_blob)

        with pytest.raises(SourceReadError) as exc_info:
            stage_layers(_image, temp_dir)
        assert exc_info.value.layer_index == 0


class TestLayerArchive:
    def test_iter_entries(self, temp_dir):
        _fpath = temp_dir / "layer.tar"
        _fpath.write_bytes(
            build_tar([directory("./etc"), regular("./etc/hosts", b"127.0.0.1")])
        )

        with LayerArchive(3, _fpath) as _archive:
            _entries = list(_archive)
            assert [_e.path for _e in _entries] == ["etc", "etc/hosts"]
            assert all(_e.layer_index == 3 for _e in _entries)
            with _entries[1].open() as _f:
                assert _f.read() == b"127.0.0.1"

    def test_path_escape(self, temp_dir):
        """Test an entry escaping the root is rejected."""
        _fpath = temp_dir / "layer.tar"
        _fpath.write_bytes(build_tar([regular("../evil", b"x")]))

        with LayerArchive(0, _fpath) as _archive:
            with pytest.raises(ResolutionError) as exc_info:
                list(_archive)
        assert exc_info.value.path == "../evil"

    def test_corrupted_archive(self, temp_dir):
        _fpath = temp_dir / "layer.tar"
        _fpath.write_bytes(b"definitely not a tar archive" * 100)

        with LayerArchive(0, _fpath) as _archive:
            with pytest.raises(SourceReadError):
                list(_archive)

    def test_close(self, temp_dir):
        _fpath = temp_dir / "layer.tar"
        _fpath.write_bytes(build_tar([regular("a")]))
        _archive = LayerArchive(0, _fpath)
        list(_archive)

        _archive.close()
        _archive.close()

        assert _archive._tar is None


def test_members_are_plain_tarinfo(temp_dir):
    """Test entries keep the original tar headers."""
    _fpath = temp_dir / "layer.tar"
    _fpath.write_bytes(build_tar([regular("a", b"x", mode=0o600)]))

    with LayerArchive(0, _fpath) as _archive:
        (_entry,) = list(_archive)
    assert isinstance(_entry.tarinfo, tarfile.TarInfo)
    assert _entry.tarinfo.mode == 0o600
