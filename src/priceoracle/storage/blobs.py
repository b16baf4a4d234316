"""Content-addressed blob reads over an ordered list of transports."""

from __future__ import annotations

import asyncio
import gzip
import hashlib
from pathlib import Path
from typing import Protocol

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from priceoracle.config import Settings
from priceoracle.errors import BlobNotFoundError, BlobReadError

logger = structlog.get_logger()


class BlobTransport(Protocol):
    @property
    def name(self) -> str: ...

    async def get(self, content_ref: str) -> bytes:
        """Return blob bytes, raising BlobNotFoundError or BlobReadError."""
        ...


class HttpBlobTransport:
    """Reads ``GET {base_url}/v1/blobs/{ref}`` from an aggregator or publisher."""

    def __init__(
        self,
        base_url: str,
        *,
        name: str | None = None,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._name = name or self._base_url
        self._timeout_seconds = timeout_seconds
        self._client = client

    @property
    def name(self) -> str:
        return self._name

    async def get(self, content_ref: str) -> bytes:
        url = f"{self._base_url}/v1/blobs/{content_ref}"
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds, follow_redirects=True) as client:
                    response = await client.get(url)
        except httpx.RequestError as e:
            raise BlobReadError(f"Request to {self._name} failed: {e}") from e

        if response.status_code == 404:
            raise BlobNotFoundError(f"Blob {content_ref} not found on {self._name}")
        if response.status_code >= 400:
            raise BlobReadError(f"HTTP {response.status_code} from {self._name}")
        return response.content


class FileBlobTransport:
    """Gzip files named by content hash in a local directory."""

    def __init__(self, directory: str | Path, *, name: str = "local") -> None:
        self._directory = Path(directory).expanduser()
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def _path(self, content_ref: str) -> Path:
        return self._directory / f"{content_ref}.json.gz"

    async def get(self, content_ref: str) -> bytes:
        path = self._path(content_ref)
        if not path.exists():
            raise BlobNotFoundError(f"Blob {content_ref} not found in {self._directory}")
        try:
            return await asyncio.to_thread(self._read, path)
        except OSError as e:
            raise BlobReadError(f"Failed to read {path}: {e}") from e

    @staticmethod
    def _read(path: Path) -> bytes:
        with gzip.open(path, "rb") as handle:
            return handle.read()

    def put(self, data: bytes) -> str:
        """Store bytes under their sha256 and return the content reference."""
        content_ref = hashlib.sha256(data).hexdigest()
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(content_ref)
        if not path.exists():
            with gzip.open(path, "wb") as handle:
                handle.write(data)
        return content_ref


class BlobStore:
    """Tries each transport in order under one timeout and retry policy.

    A missing blob is only reported as ``BlobNotFoundError`` when every
    transport says so; any other failure surfaces as ``BlobReadError``.
    """

    def __init__(
        self,
        transports: list[BlobTransport],
        *,
        timeout_seconds: float = 15.0,
        attempts: int = 2,
    ) -> None:
        self._transports = list(transports)
        self._timeout_seconds = timeout_seconds
        self._attempts = max(1, attempts)

    @property
    def transports(self) -> list[BlobTransport]:
        return list(self._transports)

    async def get(self, content_ref: str) -> bytes:
        if not self._transports:
            raise BlobReadError("No blob transports configured")

        missing = 0
        last_error: BlobReadError | None = None
        for transport in self._transports:
            try:
                return await self._get_with_retry(transport, content_ref)
            except BlobNotFoundError:
                missing += 1
                logger.debug("Blob not on transport", transport=transport.name, content_ref=content_ref)
            except BlobReadError as e:
                last_error = e
                logger.warning("Blob transport failed", transport=transport.name, content_ref=content_ref, error=str(e))

        if missing == len(self._transports):
            raise BlobNotFoundError(f"Blob {content_ref} not found on any transport")
        raise BlobReadError(f"Failed to read blob {content_ref}: {last_error}")

    async def _get_with_retry(self, transport: BlobTransport, content_ref: str) -> bytes:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(min=0.5, max=5),
            retry=retry_if_exception_type(BlobReadError),
            reraise=True,
        ):
            with attempt:
                try:
                    return await asyncio.wait_for(transport.get(content_ref), timeout=self._timeout_seconds)
                except asyncio.TimeoutError as e:
                    raise BlobReadError(f"{transport.name} timed out after {self._timeout_seconds}s") from e
        raise BlobReadError(f"No attempts made for {content_ref}")


def build_blob_store(config: Settings) -> BlobStore:
    transports: list[BlobTransport] = []
    if config.blob_aggregator_url:
        transports.append(
            HttpBlobTransport(config.blob_aggregator_url, name="aggregator", timeout_seconds=config.blob_timeout_seconds)
        )
    if config.blob_publisher_url:
        transports.append(
            HttpBlobTransport(config.blob_publisher_url, name="publisher", timeout_seconds=config.blob_timeout_seconds)
        )
    if config.blob_dir:
        transports.append(FileBlobTransport(config.blob_dir))
    return BlobStore(
        transports,
        timeout_seconds=config.blob_timeout_seconds,
        attempts=config.blob_retry_attempts,
    )
