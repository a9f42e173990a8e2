"""
Fixed-window rate limiting per caller identity.

The window algorithm lives in RateLimiter; counters live behind RateLimitStore so the
in-process store and the shared database store are interchangeable. Each instance of the
in-memory store enforces its own windows, so several service processes each allow
`max_requests` per window independently.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.models import RateLimitWindow

logger = logging.getLogger(__name__)


@dataclass
class RateLimitEntry:
    count: int
    reset_at_ms: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in_ms: int


class RateLimitStore(abc.ABC):
    @abc.abstractmethod
    def get(self, identifier: str) -> RateLimitEntry | None:
        ...

    @abc.abstractmethod
    def increment_or_init(self, identifier: str, now_ms: int, window_ms: int) -> RateLimitEntry:
        """Atomically start a window (count=1) if none is live at `now_ms`, else add one."""

    @abc.abstractmethod
    def delete(self, identifier: str) -> None:
        ...

    @abc.abstractmethod
    def purge_expired(self, now_ms: int) -> int:
        """Drop windows that ended before `now_ms`; returns how many were removed."""

    @abc.abstractmethod
    def clear(self) -> None:
        ...


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def get(self, identifier: str) -> RateLimitEntry | None:
        with self._lock:
            entry = self._entries.get(identifier)
            return RateLimitEntry(entry.count, entry.reset_at_ms) if entry else None

    def increment_or_init(self, identifier: str, now_ms: int, window_ms: int) -> RateLimitEntry:
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is None or now_ms > entry.reset_at_ms:
                entry = RateLimitEntry(count=1, reset_at_ms=now_ms + window_ms)
                self._entries[identifier] = entry
            else:
                entry.count += 1
            return RateLimitEntry(entry.count, entry.reset_at_ms)

    def delete(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(identifier, None)

    def purge_expired(self, now_ms: int) -> int:
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now_ms > entry.reset_at_ms]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DatabaseRateLimitStore(RateLimitStore):
    """Counters shared by every process pointed at the same database."""

    INSERT_ATTEMPTS = 3

    def __init__(self, session_factory: sessionmaker | None = None):
        if session_factory is None:
            from app.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    def _read(self, db: Session, identifier: str) -> RateLimitEntry | None:
        row = db.execute(
            select(RateLimitWindow.count, RateLimitWindow.reset_at_ms).where(
                RateLimitWindow.identifier == identifier
            )
        ).first()
        return RateLimitEntry(row.count, row.reset_at_ms) if row else None

    def get(self, identifier: str) -> RateLimitEntry | None:
        with self._session_factory() as db:
            return self._read(db, identifier)

    def increment_or_init(self, identifier: str, now_ms: int, window_ms: int) -> RateLimitEntry:
        for _ in range(self.INSERT_ATTEMPTS):
            with self._session_factory() as db:
                try:
                    updated = db.execute(
                        update(RateLimitWindow)
                        .where(
                            RateLimitWindow.identifier == identifier,
                            RateLimitWindow.reset_at_ms >= now_ms,
                        )
                        .values(count=RateLimitWindow.count + 1)
                    )
                    if updated.rowcount == 0:
                        db.execute(
                            delete(RateLimitWindow).where(
                                RateLimitWindow.identifier == identifier,
                                RateLimitWindow.reset_at_ms < now_ms,
                            )
                        )
                        db.add(
                            RateLimitWindow(
                                identifier=identifier,
                                count=1,
                                reset_at_ms=now_ms + window_ms,
                            )
                        )
                        db.flush()
                    entry = self._read(db, identifier)
                    db.commit()
                except IntegrityError:
                    # Another caller opened the window first; count against it.
                    db.rollback()
                    continue
                if entry is not None:
                    return entry
        raise RuntimeError(f"Could not open rate limit window for {identifier}")

    def delete(self, identifier: str) -> None:
        with self._session_factory() as db:
            db.execute(delete(RateLimitWindow).where(RateLimitWindow.identifier == identifier))
            db.commit()

    def purge_expired(self, now_ms: int) -> int:
        with self._session_factory() as db:
            result = db.execute(delete(RateLimitWindow).where(RateLimitWindow.reset_at_ms < now_ms))
            db.commit()
            return result.rowcount or 0

    def clear(self) -> None:
        with self._session_factory() as db:
            db.execute(delete(RateLimitWindow))
            db.commit()


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """check(identifier, max_requests, window_ms) -> allowed / remaining / reset_in_ms."""

    def __init__(
        self,
        store: RateLimitStore | None = None,
        *,
        default_max_requests: int = 10,
        default_window_ms: int = 60_000,
        clock: Callable[[], int] = _now_ms,
    ):
        self.store = store or InMemoryRateLimitStore()
        self.default_max_requests = default_max_requests
        self.default_window_ms = default_window_ms
        self._clock = clock

    def check(
        self,
        identifier: str,
        max_requests: int | None = None,
        window_ms: int | None = None,
    ) -> RateLimitResult:
        if max_requests is None:
            max_requests = self.default_max_requests
        if window_ms is None:
            window_ms = self.default_window_ms
        now = self._clock()
        entry = self.store.increment_or_init(identifier, now, window_ms)
        return RateLimitResult(
            allowed=entry.count <= max_requests,
            remaining=max(0, max_requests - entry.count),
            reset_in_ms=max(0, entry.reset_at_ms - now),
        )

    def reset(self, identifier: str | None = None) -> None:
        """Forget one identifier, or every window when called without one."""
        if identifier is None:
            self.store.clear()
        else:
            self.store.delete(identifier)

    def purge(self) -> int:
        return self.store.purge_expired(self._clock())


class RateLimitPurger:
    """Background task that drops stale windows on a fixed cadence, independent of traffic."""

    def __init__(self, limiter: RateLimiter, interval_seconds: float = 300):
        self.limiter = limiter
        self.interval_seconds = interval_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("RateLimitPurger started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
        logger.info("RateLimitPurger stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                removed = await asyncio.to_thread(self.limiter.purge)
                if removed:
                    logger.debug("Purged %s stale rate limit windows", removed)
            except Exception as exc:
                logger.exception("Rate limit purge failed: %s", exc)


def get_client_identifier(headers: Mapping[str, str], user_id: str | None = None) -> str:
    """`user:<id>` for authenticated callers, else `ip:<first forwarded ip | real ip | anonymous>`."""
    if user_id:
        return f"user:{user_id}"
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    ip = forwarded or (headers.get("x-real-ip") or "").strip() or "anonymous"
    return f"ip:{ip}"


def build_rate_limiter() -> RateLimiter:
    store: RateLimitStore
    if settings.rate_limit_backend == "database":
        store = DatabaseRateLimitStore()
    else:
        store = InMemoryRateLimitStore()
    return RateLimiter(
        store,
        default_max_requests=settings.rate_limit_max_requests,
        default_window_ms=settings.rate_limit_window_ms,
    )


rate_limiter: RateLimiter = build_rate_limiter()
