"""In-memory request throttling for the API endpoints."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, Optional

from fastapi import Request

from .errors import RateLimitError


def _prune(attempts: Deque[datetime], cutoff: datetime) -> None:
    while attempts and attempts[0] <= cutoff:
        attempts.popleft()


class AttemptThrottle:
    """Sliding-window limit of attempts per client key."""

    def __init__(self, *, limit: int = 5, window: timedelta = timedelta(minutes=15)) -> None:
        if limit < 1:
            raise ValueError("Throttle limit must be at least 1")
        self._limit = limit
        self._window = window
        self._attempts: Dict[str, Deque[datetime]] = {}
        self._last_sweep: Optional[datetime] = None
        self._lock = threading.Lock()

    def hit(self, key: str) -> None:
        """Record an attempt for ``key`` or raise :class:`RateLimitError`."""

        now = self._now()
        cutoff = now - self._window
        with self._lock:
            if self._last_sweep is None or now - self._last_sweep >= self._window:
                self._sweep(cutoff)
                self._last_sweep = now
            attempts = self._attempts.setdefault(key, deque())
            _prune(attempts, cutoff)
            if len(attempts) >= self._limit:
                raise RateLimitError()
            attempts.append(now)

    def _sweep(self, cutoff: datetime) -> None:
        for key in list(self._attempts):
            attempts = self._attempts[key]
            _prune(attempts, cutoff)
            if not attempts:
                self._attempts.pop(key, None)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


def client_key(request: Request) -> str:
    return request.client.host if request.client is not None else "unknown"


class RequestThrottle:
    """FastAPI dependency applying an :class:`AttemptThrottle` per client address."""

    def __init__(self, throttle: AttemptThrottle) -> None:
        self._throttle = throttle

    async def __call__(self, request: Request) -> None:
        self._throttle.hit(client_key(request))


__all__ = ["AttemptThrottle", "RequestThrottle", "client_key"]
