"""Millisecond wall-clock helpers."""

from __future__ import annotations

import time

MS_PER_HOUR = 60 * 60 * 1000
MS_PER_DAY = 24 * MS_PER_HOUR
MS_PER_WEEK = 7 * MS_PER_DAY


def now_ms() -> int:
    return int(time.time() * 1000)
