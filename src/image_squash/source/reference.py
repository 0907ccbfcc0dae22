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
"""Parse and normalize image references, like `ubuntu:22.04` or `ghcr.io/org/app@sha256:...`.

Docker Hub short names are normalized the same way the docker CLI does,
    `ubuntu` becomes `index.docker.io/library/ubuntu:latest`.
"""

from __future__ import annotations

import re
from typing import NamedTuple, Optional

DOCKER_URL_PREFIX = "docker://"

DOCKER_HUB_DOMAIN = "docker.io"
DOCKER_HUB_REGISTRY = "index.docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"
DOCKER_HUB_OFFICIAL_REPO_PREFIX = "library/"
DEFAULT_TAG = "latest"
INSECURE_REGISTRY_HOSTS = ("localhost", "127.0.0.1", "[::1]")

REPOSITORY_MAX_LEN = 255

# ref: https://github.com/distribution/reference/blob/main/regexp.go
_REPO_COMPONENT_PA = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_PA = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_PA = re.compile(r"^sha256:[a-f0-9]{64}$")
_DOMAIN_PA = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*"
    r"(?::[0-9]+)?$|^\[[a-fA-F0-9:]+\](?::[0-9]+)?$"
)


class BadReferenceError(ValueError):
    """Exceptions when a bad image reference is supplied."""


class ImageReference(NamedTuple):
    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def reference(self) -> str:
        """The tag or digest used to address the manifest, digest preferred."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def is_docker_hub(self) -> bool:
        return self.registry == DOCKER_HUB_REGISTRY

    @property
    def registry_url(self) -> str:
        if self.is_docker_hub:
            return f"https://{DOCKER_HUB_API_HOST}"
        _host = self.registry
        if _host.startswith("["):  # IPv6 literal
            _host = _host.split("]", 1)[0] + "]"
        else:
            _host = _host.split(":", 1)[0]
        _scheme = "http" if _host in INSECURE_REGISTRY_HOSTS else "https"
        return f"{_scheme}://{self.registry}"

    def scope(self, action: str = "pull") -> str:
        return f"repository:{self.repository}:{action}"

    def familiar_name(self) -> str:
        """Short form of this reference, as shown by `docker images`."""
        _repo = self.repository
        if self.is_docker_hub:
            _repo = _repo.removeprefix(DOCKER_HUB_OFFICIAL_REPO_PREFIX)
        else:
            _repo = f"{self.registry}/{_repo}"
        return self._with_reference(_repo)

    def canonical_name(self) -> str:
        """Fully qualified form of this reference, with docker.io as Docker Hub domain."""
        _domain = DOCKER_HUB_DOMAIN if self.is_docker_hub else self.registry
        return self._with_reference(f"{_domain}/{self.repository}")

    def _with_reference(self, _repo: str) -> str:
        if self.digest:
            return f"{_repo}@{self.digest}"
        return f"{_repo}:{self.tag or DEFAULT_TAG}"

    def __str__(self) -> str:
        return self._with_reference(f"{self.registry}/{self.repository}")


def _split_domain(name: str) -> tuple[str, str]:
    _first, sep, _remainder = name.partition("/")
    if not sep or not (
        "." in _first or ":" in _first or _first == "localhost" or _first.startswith("[")
    ):
        return DOCKER_HUB_REGISTRY, name

    if _first in (DOCKER_HUB_DOMAIN, DOCKER_HUB_API_HOST):
        _first = DOCKER_HUB_REGISTRY
    return _first, _remainder


def _check_repository(repository: str) -> None:
    if not repository:
        raise BadReferenceError("repository name must be specified")
    if len(repository) > REPOSITORY_MAX_LEN:
        raise BadReferenceError(
            f"invalid repository: {repository}, must be at most {REPOSITORY_MAX_LEN} characters"
        )
    for _component in repository.split("/"):
        if not _REPO_COMPONENT_PA.match(_component):
            raise BadReferenceError(
                f"invalid repository: {repository}, "
                "only lowercase alphanumeric components separated by `.`, `_`, `-` and `/` are allowed"
            )


def parse_reference(name: str) -> ImageReference:
    """Parse <name> into an ImageReference.

    The `docker://` prefix is accepted and stripped. When neither tag nor
        digest is given, the tag defaults to `latest`.

    Raises:
        BadReferenceError if <name> is not a valid image reference.
    """
    _name = name.removeprefix(DOCKER_URL_PREFIX)
    if not _name:
        raise BadReferenceError("an image reference must be specified")

    _digest = None
    if "@" in _name:
        _name, _digest = _name.rsplit("@", 1)
        if not _DIGEST_PA.match(_digest):
            raise BadReferenceError(
                f"invalid digest: {_digest}, expect sha256:<64 lowercase hex>"
            )

    _tag = None
    _last_colon, _last_slash = _name.rfind(":"), _name.rfind("/")
    if _last_colon > _last_slash:
        _name, _tag = _name[:_last_colon], _name[_last_colon + 1 :]
        if not _TAG_PA.match(_tag):
            raise BadReferenceError(
                f"invalid tag: {_tag}, must match {_TAG_PA.pattern}"
            )

    _registry, _repository = _split_domain(_name)
    if not _DOMAIN_PA.match(_registry):
        raise BadReferenceError(f"invalid registry: {_registry}")
    if _registry == DOCKER_HUB_REGISTRY and "/" not in _repository:
        _repository = f"{DOCKER_HUB_OFFICIAL_REPO_PREFIX}{_repository}"
    _check_repository(_repository)

    if _tag is None and _digest is None:
        _tag = DEFAULT_TAG
    return ImageReference(_registry, _repository, _tag, _digest)
