"""Fixed-window rate limiting for synthesis requests."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

import aiosqlite

from ..config import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_SWEEP_THRESHOLD = 10_000


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class RateLimiter(Protocol):
    limit: int
    window_seconds: int

    async def check(self, key: str) -> RateLimitDecision: ...

    async def close(self) -> None: ...


def _retry_after(window_start: float, window_seconds: int, now: float) -> int:
    remaining = window_start + window_seconds - now
    return max(1, math.ceil(remaining))


@dataclass
class _Window:
    count: int
    started_at: float


class InMemoryRateLimiter:
    """Per-process counters; suitable only for single-process deployments."""

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: int,
        disabled: bool = False,
        clock: Clock = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._disabled = disabled
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    async def check(self, key: str) -> RateLimitDecision:
        if self._disabled:
            return RateLimitDecision(allowed=True, limit=self.limit, remaining=self.limit)

        # No awaits below: the read-modify-write is atomic on the event loop.
        now = self._clock()
        if len(self._windows) > _SWEEP_THRESHOLD:
            self._sweep(now)

        window = self._windows.get(key)
        if window is None or now - window.started_at >= self.window_seconds:
            window = _Window(count=0, started_at=now)
            self._windows[key] = window
        window.count += 1

        if window.count > self.limit:
            return RateLimitDecision(
                allowed=False,
                limit=self.limit,
                remaining=0,
                retry_after=_retry_after(window.started_at, self.window_seconds, now),
            )
        return RateLimitDecision(
            allowed=True,
            limit=self.limit,
            remaining=self.limit - window.count,
        )

    def _sweep(self, now: float) -> None:
        expired = [
            key
            for key, window in self._windows.items()
            if now - window.started_at >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]

    async def close(self) -> None:
        self._windows.clear()


class SQLiteRateLimiter:
    """Counters kept in a SQLite file shared by every server process on a host."""

    def __init__(
        self,
        database_path: Path,
        *,
        limit: int,
        window_seconds: int,
        disabled: bool = False,
        clock: Clock = time.time,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._path = database_path
        self._disabled = disabled
        self._clock = clock
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._connection is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path, isolation_level=None)
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA busy_timeout=5000;")
        await self._connection.execute(
            """
            CREATE TABLE IF NOT EXISTS rate_limit_windows (
                key TEXT PRIMARY KEY,
                count INTEGER NOT NULL,
                window_start REAL NOT NULL
            )
            """
        )

    async def check(self, key: str) -> RateLimitDecision:
        if self._disabled:
            return RateLimitDecision(allowed=True, limit=self.limit, remaining=self.limit)

        await self.initialize()
        assert self._connection is not None
        now = self._clock()

        async with self._lock:
            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                cursor = await self._connection.execute(
                    "SELECT count, window_start FROM rate_limit_windows WHERE key = ?",
                    (key,),
                )
                row = await cursor.fetchone()
                await cursor.close()

                if row is None or now - float(row[1]) >= self.window_seconds:
                    count, window_start = 1, now
                else:
                    count, window_start = int(row[0]) + 1, float(row[1])

                await self._connection.execute(
                    """
                    INSERT INTO rate_limit_windows (key, count, window_start)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        count = excluded.count,
                        window_start = excluded.window_start
                    """,
                    (key, count, window_start),
                )
                await self._connection.execute("COMMIT")
            except BaseException:
                await self._connection.execute("ROLLBACK")
                raise

        if count > self.limit:
            return RateLimitDecision(
                allowed=False,
                limit=self.limit,
                remaining=0,
                retry_after=_retry_after(window_start, self.window_seconds, now),
            )
        return RateLimitDecision(
            allowed=True, limit=self.limit, remaining=self.limit - count
        )

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None


def build_rate_limiter(
    settings: Settings,
    *,
    database_path: Path | None = None,
    limit: int | None = None,
    window_seconds: int | None = None,
    label: str = "TTS",
) -> RateLimiter:
    """Create the limiter selected by ``RATE_LIMIT_BACKEND``.

    ``limit`` and ``window_seconds`` default to the TTS quota.
    """

    limit = limit if limit is not None else settings.rate_limit_max
    if window_seconds is None:
        window_seconds = settings.tts_rate_limit_window_seconds
    disabled = settings.rate_limit_disabled

    if disabled:
        logger.warning("%s rate limiting DISABLED (development mode)", label)
    else:
        logger.info(
            "Rate limiting: %d %s requests per %d seconds (%s backend)",
            limit,
            label,
            window_seconds,
            settings.rate_limit_backend,
        )

    if settings.rate_limit_backend == "sqlite":
        return SQLiteRateLimiter(
            database_path or settings.rate_limit_database_path,
            limit=limit,
            window_seconds=window_seconds,
            disabled=disabled,
        )
    return InMemoryRateLimiter(
        limit=limit,
        window_seconds=window_seconds,
        disabled=disabled,
    )


__all__ = [
    "InMemoryRateLimiter",
    "RateLimitDecision",
    "RateLimiter",
    "SQLiteRateLimiter",
    "build_rate_limiter",
]
