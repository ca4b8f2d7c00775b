"""Expired-election sweeping."""

from __future__ import annotations

import time

import structlog

from .db import Database

log = structlog.get_logger(__name__)


async def sweep_expired(db: Database) -> int:
    """Delete every expired election. Participants, rounds and votes cascade."""
    async with db.transaction():
        removed = await db.delete_expired_elections()
    if removed:
        log.info("expired_elections_swept", count=removed)
    return removed


class CleanupThrottle:
    """Run the sweep lazily, at most once per interval."""

    def __init__(self, interval_sec: float = 3600, clock=time.monotonic):
        self.interval_sec = interval_sec
        self._clock = clock
        self._last: float | None = None

    def due(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.interval_sec:
            return False
        self._last = now
        return True

    async def maybe_sweep(self, db: Database) -> int:
        if not self.due():
            return 0
        return await sweep_expired(db)
