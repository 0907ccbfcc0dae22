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
"""Pull an image from a registry with the distribution(Docker Registry HTTP API V2) protocol.

ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from hashlib import sha256
from pathlib import Path
from typing import Callable, Optional

import aiohttp
from pydantic import ValidationError

from image_squash.common._common import tmp_fname
from image_squash.common.oci_spec import Sha256Digest
from image_squash.consts import DEFAULT_REGISTRY_TIMEOUT, READ_SIZE
from image_squash.errors import (
    InvalidConfigError,
    SourceReadError,
    UnsupportedImageError,
)
from image_squash.oci.image_index.schema import ImageIndex
from image_squash.oci.image_manifest.schema import ImageManifest
from image_squash.oci.media_types import (
    DOCKER_MANIFEST,
    IMAGE_MANIFEST,
    INDEX_TYPES,
    SCHEMA1_TYPES,
)
from image_squash.source._common import SourceImage, SourceLayer
from image_squash.source.credentials import Credential, resolve_credential
from image_squash.source.reference import (
    BadReferenceError,
    ImageReference,
    parse_reference,
)

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join(
    (IMAGE_MANIFEST, DOCKER_MANIFEST, *INDEX_TYPES, *SCHEMA1_TYPES)
)
_CHALLENGE_PARAM_PA = re.compile(r'(\w+)="([^"]*)"')


def parse_auth_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Parse a `WWW-Authenticate` header into the scheme and its params."""
    _scheme, _, _params = header.strip().partition(" ")
    return _scheme.lower(), dict(_CHALLENGE_PARAM_PA.findall(_params))


class RegistryPuller:
    """Async registry client for pulling one image.

    Bearer token and Basic auth challenges are handled, with
        credentials from <credential> or anonymous access.
    """

    def __init__(
        self,
        ref: ImageReference,
        *,
        credential: Credential | None = None,
        timeout: int = DEFAULT_REGISTRY_TIMEOUT,
        read_size: int = READ_SIZE,
        connector: Optional[aiohttp.BaseConnector] = None,
    ) -> None:
        self.ref = ref
        self._base_url = f"{ref.registry_url}/v2/{ref.repository}"
        self._credential = credential
        self._timeout = timeout
        self._read_size = read_size
        self._connector = connector
        self._authorization: str | None = None
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> RegistryPuller:
        if not self.session:
            self.session = aiohttp.ClientSession(
                connector=self._connector,
                timeout=aiohttp.ClientTimeout(
                    total=None, sock_connect=self._timeout, sock_read=self._timeout
                ),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    # ------ auth ------ #

    def _basic_auth(self) -> aiohttp.BasicAuth | None:
        if self._credential:
            return aiohttp.BasicAuth(
                self._credential.username, self._credential.password
            )

    async def _fetch_token(self, params: dict[str, str]) -> str:
        assert self.session
        if not (_realm := params.get("realm")):
            raise SourceReadError("invalid bearer challenge, realm not found")

        _query = {"scope": params.get("scope") or self.ref.scope("pull")}
        if _service := params.get("service"):
            _query["service"] = _service

        async with self.session.get(
            _realm, params=_query, auth=self._basic_auth()
        ) as resp:
            resp.raise_for_status()
            _res = await resp.json(content_type=None)
        if not (_token := _res.get("token") or _res.get("access_token")):
            raise SourceReadError(f"no token returned from {_realm}")
        return _token

    async def _authenticate(self, challenge: str) -> None:
        _scheme, _params = parse_auth_challenge(challenge)
        if _scheme == "bearer":
            logger.debug(f"bearer auth challenge from {_params.get('realm')}")
            self._authorization = f"Bearer {await self._fetch_token(_params)}"
            return
        if _scheme == "basic":
            if not (_basic := self._basic_auth()):
                raise SourceReadError(
                    f"{self.ref.registry} requires basic auth, but no credential found"
                )
            self._authorization = _basic.encode()
            return
        raise SourceReadError(f"unsupported auth scheme {_scheme!r}")

    async def _get(self, url: str, *, headers: dict[str, str] | None = None):
        """GET <url>, authenticate and retry once on 401.

        The response is returned un-consumed, caller MUST release it.
        """
        assert self.session, "RegistryPuller must be used as async context manager"
        headers = dict(headers or {})
        for _ in range(2):
            if self._authorization:
                headers["Authorization"] = self._authorization
            resp = await self.session.get(url, headers=headers)
            if resp.status != 401:
                try:
                    resp.raise_for_status()
                except aiohttp.ClientResponseError:
                    resp.release()
                    raise
                return resp

            resp.release()
            if self._authorization or not (
                _challenge := resp.headers.get("WWW-Authenticate")
            ):
                break
            await self._authenticate(_challenge)
        raise SourceReadError(f"unauthorized to access {url}")

    # ------ API ------ #

    async def fetch_manifest(self) -> ImageManifest:
        """Fetch and parse the image manifest.

        Raises:
            UnsupportedImageError if the reference points to an image index,
                a manifest list or a schema1 manifest.
        """
        resp = await self._get(
            f"{self._base_url}/manifests/{self.ref.reference}",
            headers={"Accept": MANIFEST_ACCEPT},
        )
        async with resp:
            _content_type = resp.content_type
            _raw = await resp.read()

        if self.ref.digest:
            _digest = f"sha256:{sha256(_raw).hexdigest()}"
            if _digest != self.ref.digest:
                raise SourceReadError(
                    f"manifest digest mismatch, expect {self.ref.digest}, get {_digest}"
                )

        if _content_type in INDEX_TYPES:
            raise UnsupportedImageError(
                f"{self.ref} is a multi-platform image({_content_type}), not supported"
            )
        if _content_type in SCHEMA1_TYPES:
            raise UnsupportedImageError(
                f"{self.ref} uses deprecated schema1 manifest, not supported"
            )

        try:
            return ImageManifest.parse_metafile(_raw)
        except ValidationError as e:
            try:
                ImageIndex.parse_metafile(_raw)
            except ValidationError:
                raise SourceReadError(f"invalid manifest for {self.ref}: {e}") from e
            raise UnsupportedImageError(
                f"{self.ref} is a multi-platform image, not supported"
            ) from None

    async def fetch_blob(
        self,
        digest: Sha256Digest,
        resource_dir: Path,
        *,
        observer: Optional[Callable[[int], None]] = None,
    ) -> Path:
        """Stream the blob <digest> into <resource_dir>, verifying its digest."""
        _dst = resource_dir / digest.digest_hex
        if _dst.is_file():
            return _dst

        _tmp = resource_dir / tmp_fname(digest.digest_hex[:12])
        try:
            resp = await self._get(f"{self._base_url}/blobs/{digest}")
            _hasher, _fetched = sha256(), 0
            _loop = asyncio.get_running_loop()
            async with resp:
                # file IO runs in the default executor
                _f = await _loop.run_in_executor(None, open, _tmp, "wb")
                try:
                    async for _chunk in resp.content.iter_chunked(self._read_size):
                        _hasher.update(_chunk)
                        await _loop.run_in_executor(None, _f.write, _chunk)
                        _fetched += len(_chunk)
                        if observer:
                            observer(_fetched)
                finally:
                    await _loop.run_in_executor(None, _f.close)

            if (_fetched_digest := Sha256Digest.from_hasher(_hasher)) != digest:
                raise SourceReadError(
                    f"blob digest mismatch, expect {digest}, get {_fetched_digest}"
                )
            os.replace(_tmp, _dst)
        finally:
            _tmp.unlink(missing_ok=True)
        return _dst

    async def pull(
        self,
        resource_dir: Path,
        *,
        observer: Optional[Callable[[int], None]] = None,
    ) -> SourceImage:
        """Pull the manifest, config and all layer blobs into <resource_dir>."""
        _manifest = await self.fetch_manifest()
        logger.info(f"pulling {self.ref}, {len(_manifest.layers)} layers")

        await self.fetch_blob(_manifest.config.digest, resource_dir)
        try:
            _config = _manifest.config.load_metafile_from_resource_dir(resource_dir)
        except ValidationError as e:
            raise InvalidConfigError(f"invalid image config: {e}") from e

        _pulled = 0

        def _on_progress(_blob_bytes: int) -> None:
            if observer:
                observer(_pulled + _blob_bytes)

        layers: list[SourceLayer] = []
        for _idx, _layer in enumerate(_manifest.layers):
            _fpath = await self.fetch_blob(
                _layer.digest, resource_dir, observer=_on_progress
            )
            _pulled += _fpath.stat().st_size
            layers.append(
                SourceLayer(
                    index=_idx,
                    opener=_blob_file_opener(_fpath),
                    media_type=_layer.mediaType,
                    digest=_layer.digest,
                )
            )
        return SourceImage(config=_config, layers=layers, repo_tags=(str(self.ref),))


def _blob_file_opener(fpath: Path):
    return lambda: open(fpath, "rb")


def pull_image(
    reference: str,
    resource_dir: Path,
    *,
    timeout: int = DEFAULT_REGISTRY_TIMEOUT,
    read_size: int = READ_SIZE,
    observer: Optional[Callable[[int], None]] = None,
) -> SourceImage:
    """Pull image <reference> into <resource_dir>.

    Credentials are discovered from the docker CLI config.

    Raises:
        SourceReadError on invalid reference, network or registry failures,
            or corrupted blobs.
        UnsupportedImageError if the reference points to a multi-platform image.
    """
    try:
        _ref = parse_reference(reference)
    except BadReferenceError as e:
        raise SourceReadError(f"invalid image reference {reference!r}: {e}") from e

    _credential = resolve_credential(_ref.registry)

    async def _pull() -> SourceImage:
        async with RegistryPuller(
            _ref, credential=_credential, timeout=timeout, read_size=read_size
        ) as _puller:
            return await _puller.pull(resource_dir, observer=observer)

    try:
        return asyncio.run(_pull())
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise SourceReadError(f"failed to pull {_ref}: {e!r}") from e
