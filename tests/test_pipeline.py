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
from contextlib import contextmanager
from hashlib import sha256
from pathlib import Path

import pytest

from image_squash.config import SquashConfig
from image_squash.errors import SourceReadError, UnsupportedImageError
from image_squash.source._common import SourceImage, SourceLayer
from image_squash.squash.pipeline import WORKDIR_PREFIX, squash_image
from image_squash.squash.rebuild import parse_image_config
from tests.conftest import (
    build_docker_archive,
    build_layer,
    build_oci_archive,
    directory,
    make_config,
    opaque,
    read_tar_members,
    regular,
    whiteout,
)


def _load_output(dest: Path):
    """Return the docker manifest entry, the config and the layer members of <dest>."""
    members = read_tar_members(dest)
    _manifest = json.loads(members["manifest.json"][1])
    assert len(_manifest) == 1
    _config = json.loads(members[_manifest[0]["Config"]][1])
    assert len(_manifest[0]["Layers"]) == 1
    _layer_raw = members[_manifest[0]["Layers"][0]][1]
    return _manifest[0], _config, _layer_raw


@pytest.fixture
def squash_config(temp_dir: Path) -> SquashConfig:
    _tmp_dir = temp_dir / "tmp"
    _tmp_dir.mkdir()
    return SquashConfig(tag="squashed:v1", tmp_dir=_tmp_dir)


class TestSquashImage:
    @pytest.mark.parametrize("archive", ["docker_archive", "oci_archive"])
    def test_squash_image_archive(self, archive, request, temp_dir, squash_config):
        _src = request.getfixturevalue(archive)
        _dest = temp_dir / "out.tar"

        res = squash_image(_src, _dest, squash_config)

        _manifest, _config, _layer_raw = _load_output(_dest)
        _layer = read_tar_members(_layer_raw)
        assert set(_layer) == {"etc", "etc/a", "etc/b"}
        assert _layer["etc/a"][1] == b"2"
        assert _layer["etc/b"][1] == b"3"

        assert _manifest["RepoTags"] == ["squashed:v1"]
        assert _config["rootfs"]["diff_ids"] == [
            f"sha256:{sha256(_layer_raw).hexdigest()}"
        ]
        assert _config["history"] == []
        assert _config["architecture"] == "amd64"
        assert _config["config"]["Cmd"] == ["/bin/sh"]
        assert _config["config"]["WorkingDir"] == "/app"

        assert res.dest == _dest
        assert res.reference == "squashed:v1"
        assert str(res.layer_diff_id) == _config["rootfs"]["diff_ids"][0]
        assert res.layer_size == len(_layer_raw)
        assert res.image_size == _dest.stat().st_size
        assert res.entries_count == 3
        assert f"blobs/sha256/{res.manifest_digest.digest_hex}" in read_tar_members(
            _dest
        )

    def test_whiteout_applied(self, temp_dir, squash_config):
        _layers = [
            build_layer(
                [directory("app"), regular("app/keep", b"k"), regular("app/gone", b"g")]
            ),
            build_layer([whiteout("app/gone")], compression="zstd"),
        ]
        _src = build_docker_archive(temp_dir / "src.tar", _layers)
        _dest = temp_dir / "out.tar"

        squash_image(_src, _dest, squash_config)

        _, _, _layer_raw = _load_output(_dest)
        assert set(read_tar_members(_layer_raw)) == {"app", "app/keep"}

    def test_layers_without_directory_members(self, temp_dir, squash_config):
        """Test removals reach entries below directories with no tar member."""
        _layers = [
            build_layer(
                [regular("etc/conf.d/a", b"a"), regular("var/lib/x/y", b"y")]
            ),
            build_layer([opaque("etc"), whiteout("var"), regular("opt/z", b"z")]),
        ]
        _src = build_docker_archive(temp_dir / "src.tar", _layers)
        _dest = temp_dir / "out.tar"

        squash_image(_src, _dest, squash_config)

        _, _, _layer_raw = _load_output(_dest)
        assert set(read_tar_members(_layer_raw)) == {"opt/z"}

    def test_deterministic_layer(self, temp_dir, docker_archive, squash_config):
        """Test squashing the same image twice results in the same layer."""
        _first = squash_image(docker_archive, temp_dir / "out1.tar", squash_config)
        _second = squash_image(docker_archive, temp_dir / "out2.tar", squash_config)

        assert _first.layer_diff_id == _second.layer_diff_id

    def test_workdir_removed(self, temp_dir, docker_archive, squash_config):
        squash_image(docker_archive, temp_dir / "out.tar", squash_config)

        assert squash_config.tmp_dir
        assert not list(squash_config.tmp_dir.glob(f"{WORKDIR_PREFIX}*"))

    def test_progress(self, temp_dir, docker_archive, squash_config):
        _descs, _counts = [], {}

        @contextmanager
        def _progress(desc: str):
            _descs.append(desc)
            _counts[desc] = []
            yield _counts[desc].append

        res = squash_image(
            docker_archive, temp_dir / "out.tar", squash_config, progress=_progress
        )

        assert _descs == ["staging layers", "writing layer", "writing image"]
        assert _counts["writing layer"][-1] == res.layer_size
        assert _counts["writing image"][-1] == res.image_size


class TestSquashImageFailure:
    def test_multiple_manifests(self, temp_dir, two_layers, squash_config):
        _src = build_oci_archive(temp_dir / "src.tar", two_layers, manifests=2)
        _dest = temp_dir / "out.tar"

        with pytest.raises(UnsupportedImageError) as exc_info:
            squash_image(_src, _dest, squash_config)

        assert exc_info.value.stage == "load"
        assert str(exc_info.value).startswith("load: ")
        assert not _dest.exists()
        assert squash_config.tmp_dir
        assert not list(squash_config.tmp_dir.glob(f"{WORKDIR_PREFIX}*"))

    def test_diff_id_mismatch(self, temp_dir, two_layers, squash_config):
        _config = make_config(two_layers)
        _config["rootfs"]["diff_ids"][1] = f"sha256:{'0' * 64}"
        _src = build_docker_archive(temp_dir / "src.tar", two_layers, config=_config)
        _dest = temp_dir / "out.tar"

        with pytest.raises(SourceReadError) as exc_info:
            squash_image(_src, _dest, squash_config)

        assert exc_info.value.stage == "load"
        assert exc_info.value.layer_index == 1
        assert not _dest.exists()

    def test_dest_untouched_on_failure(self, temp_dir, two_layers, squash_config):
        _src = build_oci_archive(temp_dir / "src.tar", two_layers, manifests=2)
        _dest = temp_dir / "out.tar"
        _dest.write_bytes(b"previous output")

        with pytest.raises(UnsupportedImageError):
            squash_image(_src, _dest, squash_config)

        assert _dest.read_bytes() == b"previous output"

    def test_not_an_archive(self, temp_dir, squash_config):
        _src = temp_dir / "garbage.tar"
        _src.write_bytes(b"definitely not a tar archive")

        with pytest.raises(SourceReadError) as exc_info:
            squash_image(_src, temp_dir / "out.tar", squash_config)

        assert exc_info.value.stage == "load"


class TestSquashFromRegistry:
    def test_pull_source(self, temp_dir, two_layers, squash_config, mocker):
        _pulled = SourceImage(
            config=parse_image_config(json.dumps(make_config(two_layers))),
            layers=[
                SourceLayer(
                    index=_idx,
                    opener=lambda _blob=_layer.blob: io.BytesIO(_blob),
                )
                for _idx, _layer in enumerate(two_layers)
            ],
            repo_tags=("registry.example.com/app:1.0",),
        )
        _pull_mock = mocker.patch(
            "image_squash.squash.pipeline.pull_image", return_value=_pulled
        )
        _dest = temp_dir / "out.tar"

        squash_image("docker://registry.example.com/app:1.0", _dest, squash_config)

        _pull_mock.assert_called_once()
        assert _pull_mock.call_args.args[0] == "docker://registry.example.com/app:1.0"
        assert (
            _pull_mock.call_args.kwargs["timeout"] == squash_config.registry_timeout
        )
        _, _, _layer_raw = _load_output(_dest)
        assert set(read_tar_members(_layer_raw)) == {"etc", "etc/a", "etc/b"}
