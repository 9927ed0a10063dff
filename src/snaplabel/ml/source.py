"""Image source resolution: turn an image reference into raw encoded bytes.

Remote references (http/https) are fetched with a shared httpx client. Local
references are either base64 ``data:`` URIs or files under a configured root.
Nothing is cached; each call performs exactly one fetch or read.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Literal
from urllib.parse import unquote, urlparse

import httpx

from snaplabel.errors import SourceUnavailable

if TYPE_CHECKING:
    from snaplabel.config import Settings

logger = logging.getLogger(__name__)

_REMOTE_SCHEMES = frozenset({"http", "https"})


@dataclass(frozen=True)
class ImageReference:
    """Where to obtain an image from."""

    kind: Literal["remote", "local"]
    uri: str

    @classmethod
    def from_uri(cls, uri: str) -> ImageReference:
        scheme = urlparse(uri).scheme.lower()
        return cls(kind="remote" if scheme in _REMOTE_SCHEMES else "local", uri=uri)


@dataclass(frozen=True)
class FetchResponse:
    """Parsed result of a remote fetch: status code and binary body."""

    status_code: int
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ImageSourceResolver:
    """Resolves image references into raw bytes."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_bytes: int,
        local_root: str | Path | None = None,
    ) -> None:
        self._client = client
        self._max_bytes = max_bytes
        self._local_root = Path(local_root).resolve() if local_root is not None else None

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient) -> ImageSourceResolver:
        return cls(client, max_bytes=settings.max_file_size, local_root=settings.local_root)

    async def resolve(self, reference: ImageReference) -> bytes:
        """Return the raw bytes behind ``reference``.

        Raises:
            SourceUnavailable: If the image cannot be fetched or read.
        """
        if reference.kind == "remote":
            response = await self.fetch(reference.uri)
            if not response.ok:
                raise SourceUnavailable(f"{reference.uri} returned HTTP {response.status_code}")
            data = response.body
        else:
            data = await self._read_local(reference.uri)

        if len(data) > self._max_bytes:
            raise SourceUnavailable(f"Image is {len(data)} bytes, limit is {self._max_bytes}")
        logger.debug("Resolved %s image (%d bytes)", reference.kind, len(data))
        return data

    async def fetch(self, uri: str) -> FetchResponse:
        """GET ``uri`` and return its status and raw body.

        The body is streamed and abandoned as soon as it exceeds the size
        limit. Non-2xx bodies are not read.
        """
        scheme = urlparse(uri).scheme.lower()
        if scheme not in _REMOTE_SCHEMES:
            raise SourceUnavailable(f"Unsupported remote scheme: {scheme or '<none>'}")
        try:
            async with self._client.stream("GET", uri, follow_redirects=True) as response:
                if not response.is_success:
                    return FetchResponse(status_code=response.status_code, body=b"")

                declared = response.headers.get("content-length")
                if declared is not None and declared.isdigit() and int(declared) > self._max_bytes:
                    raise SourceUnavailable(f"Image is {declared} bytes, limit is {self._max_bytes}")

                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > self._max_bytes:
                        raise SourceUnavailable(f"Image exceeds the {self._max_bytes} byte limit")
        except httpx.TimeoutException as exc:
            raise SourceUnavailable(f"Timed out fetching {uri}") from exc
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Could not fetch {uri}: {exc}") from exc
        return FetchResponse(status_code=response.status_code, body=bytes(body))

    # -- Internal -----------------------------------------------------------

    async def _read_local(self, uri: str) -> bytes:
        if uri.startswith("data:"):
            return self._decode_data_uri(uri)

        path = self._resolve_path(uri)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise SourceUnavailable(f"Could not read {path}: {exc.strerror or exc}") from exc

    @staticmethod
    def _decode_data_uri(uri: str) -> bytes:
        header, sep, payload = uri.partition(",")
        if not sep or not header.endswith(";base64"):
            raise SourceUnavailable("Local data URI must be base64 encoded")
        try:
            return base64.b64decode("".join(payload.split()), validate=True)
        except binascii.Error as exc:
            raise SourceUnavailable(f"Invalid base64 payload: {exc}") from exc

    def _resolve_path(self, uri: str) -> Path:
        if self._local_root is None:
            raise SourceUnavailable("Local file access is disabled (SNAPLABEL_LOCAL_ROOT not set)")

        parsed = urlparse(uri)
        if parsed.scheme == "file":
            raw_path = unquote(parsed.path)
        elif parsed.scheme and len(parsed.scheme) > 1:
            raise SourceUnavailable(f"Unsupported local scheme: {parsed.scheme}")
        else:
            raw_path = uri

        path = (self._local_root / raw_path).resolve()
        if not path.is_relative_to(self._local_root):
            raise SourceUnavailable(f"{uri} is outside the local image root")
        return path
