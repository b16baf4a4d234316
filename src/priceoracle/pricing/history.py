"""Bounded OHLC history per asset."""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
from typing import Protocol


@dataclass(frozen=True)
class OHLCPoint:
    timestamp: int
    open: int
    high: int
    low: int
    close: int
    volume: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class PriceHistoryStore(Protocol):
    def append(self, asset_id: str, point: OHLCPoint) -> None: ...

    def recent(self, asset_id: str, limit: int) -> list[OHLCPoint]: ...


class InMemoryPriceHistory:
    """Ring buffer per asset; the oldest points are evicted first. Not persisted across restarts."""

    def __init__(self, limit: int = 1000) -> None:
        self._limit = limit
        self._points: dict[str, deque[OHLCPoint]] = {}

    def append(self, asset_id: str, point: OHLCPoint) -> None:
        self._points.setdefault(asset_id, deque(maxlen=self._limit)).append(point)

    def recent(self, asset_id: str, limit: int) -> list[OHLCPoint]:
        points = self._points.get(asset_id)
        if not points or limit <= 0:
            return []
        return list(points)[-limit:]
