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
"""Discover registry credentials from the docker CLI config file.

The config file is looked up at `$DOCKER_CONFIG/config.json`, falling back to
    `~/.docker/config.json`. Supported credential sources, in priority order:

1. `credHelpers`: per-registry credential helper.
2. `credsStore`: the default credential helper.
3. `auths`: inline `auth`(base64 encoded `username:password`) or `username`/`password`.

Anonymous access is used when nothing matches.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, NamedTuple, Optional, Union

from pydantic import ConfigDict, Field, ValidationError

from image_squash.common.model_spec import AliasEnabledModel
from image_squash.errors import SourceReadError
from image_squash.source.reference import (
    DOCKER_HUB_API_HOST,
    DOCKER_HUB_DOMAIN,
    DOCKER_HUB_REGISTRY,
)

logger = logging.getLogger(__name__)

DOCKER_CONFIG_ENV = "DOCKER_CONFIG"
DOCKER_CONFIG_FNAME = "config.json"
DEFAULT_DOCKER_CONFIG_DIR = Path("~/.docker")
CRED_HELPER_PREFIX = "docker-credential-"
CRED_HELPER_TIMEOUT = 30
DOCKER_HUB_AUTH_KEY = "https://index.docker.io/v1/"
DOCKER_HUB_ALIASES = (
    DOCKER_HUB_REGISTRY,
    DOCKER_HUB_DOMAIN,
    DOCKER_HUB_API_HOST,
    "index.docker.io/v1",
)


class Credential(NamedTuple):
    username: str
    password: str


class AuthEntry(AliasEnabledModel):
    model_config = ConfigDict(extra="allow")

    auth: Union[str, None] = None
    username: Union[str, None] = None
    password: Union[str, None] = None

    def to_credential(self) -> Credential | None:
        if self.auth:
            try:
                _decoded = base64.b64decode(self.auth).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ValueError(f"invalid base64 encoded auth: {e!r}") from e
            _username, sep, _password = _decoded.partition(":")
            if not sep:
                raise ValueError("invalid auth, expect `username:password`")
            return Credential(_username, _password)
        if self.username and self.password:
            return Credential(self.username, self.password)


class DockerConfig(AliasEnabledModel):
    model_config = ConfigDict(extra="allow")

    auths: Dict[str, AuthEntry] = Field(default_factory=dict)
    cred_helpers: Dict[str, str] = Field(alias="credHelpers", default_factory=dict)
    creds_store: Optional[str] = Field(alias="credsStore", default=None)


class CredHelperOutput(AliasEnabledModel):
    model_config = ConfigDict(extra="allow")

    username: str = Field(alias="Username")
    secret: str = Field(alias="Secret")


def docker_config_fpath() -> Path:
    if _config_dir := os.environ.get(DOCKER_CONFIG_ENV):
        return Path(_config_dir) / DOCKER_CONFIG_FNAME
    return DEFAULT_DOCKER_CONFIG_DIR.expanduser() / DOCKER_CONFIG_FNAME


def load_docker_config(fpath: Path | None = None) -> DockerConfig:
    """Load the docker CLI config, an empty config is returned if the file doesn't exist."""
    fpath = fpath or docker_config_fpath()
    if not fpath.is_file():
        logger.debug(f"docker config not found at {fpath}, use anonymous access")
        return DockerConfig()
    try:
        return DockerConfig.model_validate_json(fpath.read_bytes())
    except (OSError, ValidationError) as e:
        raise SourceReadError(f"failed to load docker config {fpath}: {e}") from e


def _normalize_registry_key(key: str) -> str:
    _key = key.removeprefix("https://").removeprefix("http://").rstrip("/")
    if _key in DOCKER_HUB_ALIASES:
        return DOCKER_HUB_REGISTRY
    return _key.split("/", 1)[0]


def _helper_server_url(registry: str) -> str:
    return DOCKER_HUB_AUTH_KEY if registry == DOCKER_HUB_REGISTRY else registry


def run_cred_helper(helper: str, server_url: str) -> Credential | None:
    """Query `docker-credential-<helper> get` for <server_url>.

    Returns None if the helper doesn't hold credentials for <server_url>.
    """
    _cmd = f"{CRED_HELPER_PREFIX}{helper}"
    try:
        _res = subprocess.run(
            [_cmd, "get"],
            input=server_url.encode(),
            capture_output=True,
            timeout=CRED_HELPER_TIMEOUT,
        )
    except FileNotFoundError:
        logger.warning(f"credential helper {_cmd} not found, skip")
        return
    except subprocess.TimeoutExpired as e:
        raise SourceReadError(f"credential helper {_cmd} timed out") from e

    if _res.returncode != 0:
        logger.debug(
            f"{_cmd} has no credential for {server_url}: {_res.stdout.decode(errors='replace').strip()}"
        )
        return

    try:
        _output = CredHelperOutput.model_validate_json(_res.stdout)
    except ValidationError as e:
        raise SourceReadError(f"invalid output from {_cmd}: {e}") from e
    return Credential(_output.username, _output.secret)


def resolve_credential(
    registry: str, *, config: DockerConfig | None = None
) -> Credential | None:
    """Find the credential for <registry>, None means anonymous access."""
    config = config if config is not None else load_docker_config()
    registry = _normalize_registry_key(registry)

    for _key, _helper in config.cred_helpers.items():
        if _normalize_registry_key(_key) == registry:
            return run_cred_helper(_helper, _helper_server_url(registry))

    if config.creds_store:
        if _cred := run_cred_helper(config.creds_store, _helper_server_url(registry)):
            return _cred

    for _key, _entry in config.auths.items():
        if _normalize_registry_key(_key) != registry:
            continue
        try:
            if _cred := _entry.to_credential():
                return _cred
        except ValueError as e:
            raise SourceReadError(f"invalid auths entry for {_key}: {e}") from e

    logger.debug(f"no credential found for {registry}, use anonymous access")
