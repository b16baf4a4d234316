"""Backing stores for the contribution index and metadata cache."""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Protocol

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from priceoracle.db import get_db
from priceoracle.models import ContributionMetadata, ContributionRef

logger = structlog.get_logger()


class ContributionRepository(Protocol):
    async def add_ref(self, asset_id: str, content_ref: str) -> bool:
        """Append a reference to the asset's list; False if it was already there."""
        ...

    async def list_refs(self, asset_id: str) -> list[str]: ...

    async def get_metadata(self, content_ref: str) -> dict[str, Any] | None: ...

    async def put_metadata(self, content_ref: str, metadata: dict[str, Any]) -> None: ...

    async def asset_ids(self) -> list[str]: ...


class InMemoryContributionRepository:
    """Process-lifetime index guarded by a lock so threads and tasks can share it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._refs: dict[str, list[str]] = {}
        self._members: dict[str, set[str]] = {}
        self._metadata: dict[str, dict[str, Any]] = {}

    async def add_ref(self, asset_id: str, content_ref: str) -> bool:
        with self._lock:
            members = self._members.setdefault(asset_id, set())
            if content_ref in members:
                return False
            members.add(content_ref)
            self._refs.setdefault(asset_id, []).append(content_ref)
            return True

    async def list_refs(self, asset_id: str) -> list[str]:
        with self._lock:
            return list(self._refs.get(asset_id, []))

    async def get_metadata(self, content_ref: str) -> dict[str, Any] | None:
        with self._lock:
            cached = self._metadata.get(content_ref)
            return dict(cached) if cached is not None else None

    async def put_metadata(self, content_ref: str, metadata: dict[str, Any]) -> None:
        with self._lock:
            self._metadata[content_ref] = dict(metadata)

    async def asset_ids(self) -> list[str]:
        with self._lock:
            return list(self._refs)


class SqlContributionRepository:
    """Durable index backed by SQLAlchemy; sync sessions run in worker threads."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    async def add_ref(self, asset_id: str, content_ref: str) -> bool:
        return await asyncio.to_thread(self._add_ref, asset_id, content_ref)

    async def list_refs(self, asset_id: str) -> list[str]:
        return await asyncio.to_thread(self._list_refs, asset_id)

    async def get_metadata(self, content_ref: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._get_metadata, content_ref)

    async def put_metadata(self, content_ref: str, metadata: dict[str, Any]) -> None:
        await asyncio.to_thread(self._put_metadata, content_ref, metadata)

    async def asset_ids(self) -> list[str]:
        return await asyncio.to_thread(self._asset_ids)

    def _add_ref(self, asset_id: str, content_ref: str) -> bool:
        try:
            with get_db(self._session_factory) as session:
                existing = session.query(ContributionRef).filter_by(asset_id=asset_id, content_ref=content_ref).first()
                if existing:
                    return False
                position = session.query(func.count(ContributionRef.id)).filter_by(asset_id=asset_id).scalar() or 0
                session.add(ContributionRef(asset_id=asset_id, content_ref=content_ref, position=position))
            return True
        except IntegrityError:
            # Lost a race with another writer indexing the same reference
            logger.debug("Reference already indexed", asset_id=asset_id, content_ref=content_ref)
            return False

    def _list_refs(self, asset_id: str) -> list[str]:
        with get_db(self._session_factory) as session:
            rows = (
                session.query(ContributionRef.content_ref)
                .filter_by(asset_id=asset_id)
                .order_by(ContributionRef.position, ContributionRef.id)
                .all()
            )
            return [row[0] for row in rows]

    def _get_metadata(self, content_ref: str) -> dict[str, Any] | None:
        with get_db(self._session_factory) as session:
            record = session.get(ContributionMetadata, content_ref)
            return dict(record.metadata_json) if record else None

    def _put_metadata(self, content_ref: str, metadata: dict[str, Any]) -> None:
        try:
            self._upsert_metadata(content_ref, metadata)
        except IntegrityError:
            self._upsert_metadata(content_ref, metadata)

    def _upsert_metadata(self, content_ref: str, metadata: dict[str, Any]) -> None:
        with get_db(self._session_factory) as session:
            record = session.get(ContributionMetadata, content_ref)
            if record:
                record.metadata_json = dict(metadata)
            else:
                session.add(ContributionMetadata(content_ref=content_ref, metadata_json=dict(metadata)))

    def _asset_ids(self) -> list[str]:
        with get_db(self._session_factory) as session:
            rows = session.query(ContributionRef.asset_id).distinct().all()
            return [row[0] for row in rows]
