"""Sliding-window rate limiting for sensitive endpoints.

The attempt log lives in a ``RateLimitStore`` held on ``app.state`` and
resolved through the ``get_rate_limit_store`` dependency, so a deployment can
swap the in-process store for the shared database one (or tests for a fresh
one) without touching the routes.
"""
import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import delete, func
from sqlmodel import Session, select

from .models import RateLimitHit, utcnow

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Raised when rate limit is exceeded."""
    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitStore:
    """Records attempts per key inside a sliding window."""

    def hit(self, key: str, max_attempts: int, window_seconds: int, now: Optional[datetime] = None):
        """
        Record one attempt for ``key``.

        Raises:
            RateLimitExceeded: If ``max_attempts`` were already made within the window
        """
        raise NotImplementedError

    def reset(self, key: Optional[str] = None):
        raise NotImplementedError


def _retry_after(oldest: datetime, window_seconds: int, now: datetime) -> int:
    return max(1, math.ceil(window_seconds - (now - oldest).total_seconds()))


class InMemoryRateLimitStore(RateLimitStore):
    """
    In-process store.
    Good for: development and single-instance deployments.
    """

    cleanup_interval = timedelta(minutes=5)

    def __init__(self):
        self._attempts: Dict[str, List[datetime]] = {}
        self._lock = threading.Lock()
        self._longest_window = timedelta(0)
        self._last_cleanup: Optional[datetime] = None

    def _cleanup_old_entries(self, now: datetime):
        """Drop keys whose attempts have all left the longest window in use."""
        if self._last_cleanup is not None and now - self._last_cleanup < self.cleanup_interval:
            return
        cutoff = now - self._longest_window
        for key in list(self._attempts.keys()):
            if all(ts <= cutoff for ts in self._attempts[key]):
                del self._attempts[key]
        self._last_cleanup = now

    def hit(self, key: str, max_attempts: int, window_seconds: int, now: Optional[datetime] = None):
        now = now or utcnow()
        window = timedelta(seconds=window_seconds)
        cutoff = now - window
        with self._lock:
            self._longest_window = max(self._longest_window, window)
            self._cleanup_old_entries(now)
            attempts = [ts for ts in self._attempts.get(key, []) if ts > cutoff]
            if len(attempts) >= max_attempts:
                self._attempts[key] = attempts
                raise RateLimitExceeded(
                    f"Rate limit exceeded for {key}: {max_attempts} attempts per {window_seconds}s",
                    retry_after=_retry_after(min(attempts), window_seconds, now),
                )
            attempts.append(now)
            self._attempts[key] = attempts

    def tracked_keys(self) -> List[str]:
        with self._lock:
            return list(self._attempts)

    def reset(self, key: Optional[str] = None):
        with self._lock:
            if key is None:
                self._attempts.clear()
            else:
                self._attempts.pop(key, None)


class DatabaseRateLimitStore(RateLimitStore):
    """Store shared by every instance pointed at the same database."""

    def __init__(self, engine):
        self.engine = engine

    def hit(self, key: str, max_attempts: int, window_seconds: int, now: Optional[datetime] = None):
        now = now or utcnow()
        cutoff = now - timedelta(seconds=window_seconds)
        with Session(self.engine) as session:
            session.execute(
                delete(RateLimitHit).where(RateLimitHit.key == key, RateLimitHit.hit_at <= cutoff)
            )
            count, oldest = session.exec(
                select(func.count(RateLimitHit.id), func.min(RateLimitHit.hit_at)).where(
                    RateLimitHit.key == key
                )
            ).one()
            if count >= max_attempts:
                session.commit()
                raise RateLimitExceeded(
                    f"Rate limit exceeded for {key}: {max_attempts} attempts per {window_seconds}s",
                    retry_after=_retry_after(oldest, window_seconds, now),
                )
            session.add(RateLimitHit(key=key, hit_at=now))
            session.commit()

    def reset(self, key: Optional[str] = None):
        with Session(self.engine) as session:
            statement = delete(RateLimitHit)
            if key is not None:
                statement = statement.where(RateLimitHit.key == key)
            session.execute(statement)
            session.commit()


def build_rate_limit_store(backend: str, engine=None) -> RateLimitStore:
    if backend == "memory":
        return InMemoryRateLimitStore()
    if backend == "database":
        return DatabaseRateLimitStore(engine)
    raise ValueError(f"Unknown rate limit backend: {backend}")


def get_rate_limit_store(request: Request) -> RateLimitStore:
    return request.app.state.rate_limit_store


class RateLimiter:
    """FastAPI dependency limiting one endpoint per client IP."""

    def __init__(self, scope: str, max_attempts: int, window_seconds: int):
        self.scope = scope
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    def __call__(self, request: Request, store: RateLimitStore = Depends(get_rate_limit_store)):
        client_ip = request.client.host if request.client else "unknown"
        key = f"{self.scope}:{client_ip}"
        try:
            store.hit(key, self.max_attempts, self.window_seconds)
        except RateLimitExceeded as exc:
            logger.warning(f"🚫 {exc}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many attempts, please try again later.",
                headers={"Retry-After": str(exc.retry_after)},
            )
