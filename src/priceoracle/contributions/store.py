"""Per-asset index of contribution references with a metadata cache."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from priceoracle.clock import now_ms
from priceoracle.contributions.repository import ContributionRepository
from priceoracle.contributions.schemas import Contribution, contribution_metadata, decode_contribution
from priceoracle.errors import BlobStoreError, ContributionDecodeError
from priceoracle.storage.blobs import BlobStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class QueryFilter:
    """Restricts a query by engagement type and/or a ``[start_time, end_time)`` window in ms."""

    engagement_type: str | None = None
    start_time: int | None = None
    end_time: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.engagement_type is None and self.start_time is None and self.end_time is None

    @property
    def required_keys(self) -> tuple[str, ...]:
        keys: list[str] = []
        if self.engagement_type is not None:
            keys.append("engagement_type")
        if self.start_time is not None or self.end_time is not None:
            keys.append("timestamp")
        return tuple(keys)

    def matches(self, metadata: dict[str, Any]) -> bool:
        if self.engagement_type is not None and metadata.get("engagement_type") != self.engagement_type:
            return False
        if self.start_time is not None or self.end_time is not None:
            timestamp = metadata.get("timestamp")
            if timestamp is None:
                return False
            if self.start_time is not None and timestamp < self.start_time:
                return False
            if self.end_time is not None and timestamp >= self.end_time:
                return False
        return True


@dataclass(frozen=True)
class QueryResult:
    refs: list[str]
    omitted: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class LoadResult:
    contributions: list[Contribution]
    omitted: list[str] = field(default_factory=list)


class ContributionStore:
    def __init__(self, repository: ContributionRepository, blob_store: BlobStore) -> None:
        self._repository = repository
        self._blob_store = blob_store

    async def index(self, asset_id: str, content_ref: str, metadata: dict[str, Any] | None = None) -> bool:
        """Index a reference under an asset.

        The reference is appended only once, but the cached metadata is always
        replaced so re-indexing refreshes it. Returns True when the reference
        was newly appended.
        """
        added = await self._repository.add_ref(asset_id, content_ref)
        await self._repository.put_metadata(
            content_ref,
            {
                **(metadata or {}),
                "ip_token_id": asset_id,
                "content_ref": content_ref,
                "indexed_at": now_ms(),
            },
        )
        logger.debug("Indexed contribution", asset_id=asset_id, content_ref=content_ref, new=added)
        return added

    async def index_blob(self, asset_id: str, content_ref: str) -> Contribution:
        """Read and decode a blob, then index it with metadata taken from its payload."""
        data = await self._blob_store.get(content_ref)
        contribution = decode_contribution(data, content_ref=content_ref)
        if contribution.asset_id != asset_id:
            logger.warning(
                "Contribution asset mismatch",
                asset_id=asset_id,
                content_ref=content_ref,
                payload_asset_id=contribution.asset_id,
            )
        await self.index(asset_id, content_ref, contribution_metadata(contribution))
        return contribution

    async def cached_metadata(self, content_ref: str) -> dict[str, Any] | None:
        return await self._repository.get_metadata(content_ref)

    async def asset_ids(self) -> list[str]:
        return await self._repository.asset_ids()

    async def query(self, asset_id: str, query_filter: QueryFilter | None = None) -> QueryResult:
        refs = await self._repository.list_refs(asset_id)
        if query_filter is None or query_filter.is_empty:
            return QueryResult(refs=refs)

        resolved = await asyncio.gather(
            *(self._resolve_metadata(ref, query_filter.required_keys) for ref in refs)
        )

        matched: list[str] = []
        omitted: list[str] = []
        for ref, metadata in zip(refs, resolved):
            if metadata is None:
                omitted.append(ref)
            elif query_filter.matches(metadata):
                matched.append(ref)

        if omitted:
            logger.info("Query omitted unreadable contributions", asset_id=asset_id, omitted=len(omitted))
        return QueryResult(refs=matched, omitted=omitted)

    async def load(self, asset_id: str, query_filter: QueryFilter | None = None) -> LoadResult:
        """Resolve indexed references into decoded contributions."""
        result = await self.query(asset_id, query_filter)
        loaded = await asyncio.gather(*(self._read_contribution(ref) for ref in result.refs))

        contributions: list[Contribution] = []
        omitted = list(result.omitted)
        for ref, contribution in zip(result.refs, loaded):
            if contribution is None:
                omitted.append(ref)
            else:
                contributions.append(contribution)

        logger.info(
            "Loaded contributions",
            asset_id=asset_id,
            loaded=len(contributions),
            omitted=len(omitted),
        )
        return LoadResult(contributions=contributions, omitted=omitted)

    async def _resolve_metadata(self, content_ref: str, required_keys: tuple[str, ...]) -> dict[str, Any] | None:
        cached = await self._repository.get_metadata(content_ref)
        if cached is not None and all(cached.get(key) is not None for key in required_keys):
            return cached

        contribution = await self._read_contribution(content_ref, cache=False)
        if contribution is None:
            return None
        merged = {**(cached or {}), **contribution_metadata(contribution), "content_ref": content_ref}
        await self._repository.put_metadata(content_ref, merged)
        return merged

    async def _read_contribution(self, content_ref: str, *, cache: bool = True) -> Contribution | None:
        try:
            data = await self._blob_store.get(content_ref)
            contribution = decode_contribution(data, content_ref=content_ref)
        except (BlobStoreError, ContributionDecodeError) as e:
            logger.warning("Failed to read contribution", content_ref=content_ref, error=str(e))
            return None

        if cache and await self._repository.get_metadata(content_ref) is None:
            await self._repository.put_metadata(
                content_ref, {**contribution_metadata(contribution), "content_ref": content_ref}
            )
        return contribution
