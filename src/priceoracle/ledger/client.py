"""Ledger gateway client: tracked assets, signature checks and metric commits."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from priceoracle.errors import LedgerError

logger = structlog.get_logger()


@dataclass(frozen=True)
class CommitOutcome:
    ok: bool
    digest: str | None = None
    error: str | None = None


class LedgerClient(Protocol):
    async def get_tracked_assets(self) -> list[str]: ...

    async def verify_signature(self, payload: bytes, signature: str, author_address: str) -> bool: ...

    async def commit_metrics(self, asset_id: str, metrics: dict[str, Any]) -> CommitOutcome: ...


def _is_retryable_http_status(status_code: int) -> bool:
    return status_code in {408, 425, 429, 500, 502, 503, 504}


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, httpx.RequestError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return _is_retryable_http_status(exc.response.status_code)
    return False


class HttpLedgerClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._client = client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception(_should_retry),
        reraise=True,
    )
    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        url = f"{self._base_url}{path}"
        if self._client is not None:
            response = await self._client.request(method, url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.request(method, url, json=payload)

        if _is_retryable_http_status(response.status_code):
            raise httpx.HTTPStatusError(
                f"HTTP {response.status_code}",
                request=response.request,
                response=response,
            )
        return response

    async def _call(self, method: str, path: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        try:
            return await self._request(method, path, payload)
        except httpx.HTTPStatusError as e:
            raise LedgerError(f"Ledger {method} {path} failed: HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise LedgerError(f"Ledger {method} {path} failed: {e}") from e

    async def get_tracked_assets(self) -> list[str]:
        response = await self._call("GET", "/assets")
        if response.status_code >= 400:
            raise LedgerError(f"Ledger asset listing failed: HTTP {response.status_code}")

        data = response.json()
        items = data.get("assets", []) if isinstance(data, dict) else data
        assets: list[str] = []
        for item in items or []:
            if isinstance(item, dict):
                asset_id = item.get("id") or item.get("token_id") or item.get("tokenId")
            else:
                asset_id = item
            if asset_id:
                assets.append(str(asset_id))
        return assets

    async def verify_signature(self, payload: bytes, signature: str, author_address: str) -> bool:
        response = await self._call(
            "POST",
            "/signatures/verify",
            {
                "message": base64.b64encode(payload).decode("ascii"),
                "signature": signature,
                "address": author_address,
            },
        )
        if response.status_code >= 400:
            logger.debug("Ledger rejected signature check", status=response.status_code, address=author_address)
            return False
        return bool(response.json().get("valid"))

    async def commit_metrics(self, asset_id: str, metrics: dict[str, Any]) -> CommitOutcome:
        try:
            response = await self._call("POST", f"/assets/{asset_id}/metrics", {"metrics": metrics})
        except LedgerError as e:
            return CommitOutcome(ok=False, error=str(e))

        if response.status_code >= 400:
            return CommitOutcome(ok=False, error=f"HTTP {response.status_code}")
        data = response.json() if response.content else {}
        return CommitOutcome(ok=True, digest=data.get("digest"))
