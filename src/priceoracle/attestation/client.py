"""Externally attested metrics from the attestation enclave."""

from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Protocol

import httpx
import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from priceoracle.clock import now_ms
from priceoracle.errors import AttestationError

logger = structlog.get_logger()

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")


class ExternalMetrics(BaseModel):
    model_config = ConfigDict(extra="allow")

    rating: float = Field(0, validation_alias=AliasChoices("average_rating", "rating"))
    popularity: float = Field(0, validation_alias=AliasChoices("popularity_score", "popularity"))
    member_count: int = Field(0, validation_alias=AliasChoices("member_count", "members", "memberCount"))
    trending: float = Field(0, validation_alias=AliasChoices("trending_score", "trending"))

    @field_validator("rating", "popularity", "member_count", "trending", mode="before")
    @classmethod
    def _missing_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


class ExternalMetricsRecord(BaseModel):
    asset_id: str
    source: str
    metrics: ExternalMetrics = Field(default_factory=ExternalMetrics)
    signature: str | None = None
    timestamp: int = 0


class AttestationClient(Protocol):
    async def fetch(self, asset_id: str, source: str) -> ExternalMetricsRecord: ...


class HttpAttestationClient:
    """Asks the enclave to fetch and sign metrics from one external source."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def fetch(self, asset_id: str, source: str, name: str | None = None) -> ExternalMetricsRecord:
        payload = {
            "payload": {
                "ip_token_id": asset_id,
                "name": name or asset_id,
                "source": source,
                "timestamp": now_ms(),
            }
        }
        url = f"{self._base_url}/process_data"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await client.post(url, json=payload)
        except httpx.RequestError as e:
            raise AttestationError(f"Enclave request failed for {source}: {e}") from e

        if response.status_code >= 400:
            raise AttestationError(f"Enclave returned HTTP {response.status_code} for {source}")

        try:
            body = response.json()
            signed = body.get("response") or {}
            return ExternalMetricsRecord(
                asset_id=asset_id,
                source=source,
                metrics=ExternalMetrics.model_validate(signed.get("data") or {}),
                signature=body.get("signature"),
                timestamp=int(signed.get("timestamp_ms") or 0),
            )
        except (ValueError, AttributeError, ValidationError) as e:
            raise AttestationError(f"Malformed enclave response for {source}: {e}") from e


def is_attested(record: ExternalMetricsRecord, max_age_seconds: int, now: int | None = None) -> bool:
    """Basic attestation check; full verification happens on the ledger."""
    if not record.signature or not _HEX_RE.match(record.signature):
        return False
    current = now if now is not None else now_ms()
    return current - record.timestamp <= max_age_seconds * 1000


async def fetch_sources(
    client: AttestationClient | None,
    asset_id: str,
    sources: list[str],
    *,
    timeout_seconds: float = 30.0,
    max_age_seconds: int = 3600,
    now: int | None = None,
) -> list[ExternalMetricsRecord]:
    """Fetch every source concurrently, dropping the ones that fail.

    A failed or unattested source means no external data from it, never a
    zero reading.
    """
    if client is None or not sources:
        return []

    started = time.monotonic()
    results = await asyncio.gather(
        *(asyncio.wait_for(client.fetch(asset_id, source), timeout=timeout_seconds) for source in sources),
        return_exceptions=True,
    )

    records: list[ExternalMetricsRecord] = []
    for source, result in zip(sources, results):
        if isinstance(result, BaseException):
            logger.warning("Attestation source failed", asset_id=asset_id, source=source, error=repr(result))
            continue
        if not is_attested(result, max_age_seconds, now):
            logger.warning("Discarding unattested metrics", asset_id=asset_id, source=source)
            continue
        records.append(result)

    logger.debug(
        "Fetched external metrics",
        asset_id=asset_id,
        sources=len(sources),
        attested=len(records),
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    return records
