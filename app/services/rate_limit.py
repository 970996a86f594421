"""Per-identifier request caps for sign-in initiation.

Windows are fixed and opened by the first recorded request; an elapsed
window is replaced lazily on the next record rather than by a timer.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import math
import re
from typing import Callable, Optional

from app.storage import KeyValueStore, MemoryStore

RATE_LIMIT_MAX_REQUESTS = 3
RATE_LIMIT_WINDOW_SECONDS = 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_rate_limit_key(identifier: str) -> str:
    return re.sub(r"\s", "", identifier).lower()


@dataclass(frozen=True)
class RateLimitEntry:
    identifier: str
    count: int
    window_start: datetime


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None


class RateLimiter:
    def __init__(
        self,
        backend: Optional[KeyValueStore[RateLimitEntry]] = None,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._backend = backend if backend is not None else MemoryStore()
        self._max_requests = max_requests
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock

    def check_rate_limit(self, identifier: str) -> RateLimitDecision:
        """Report whether another request is allowed without consuming quota."""
        entry = self._backend.get(normalize_rate_limit_key(identifier))
        return self._decide(entry, self._clock())

    def record_rate_limit_request(self, identifier: str) -> None:
        key = normalize_rate_limit_key(identifier)
        now = self._clock()
        self._backend.update(key, lambda entry: self._recorded(key, entry, now))

    def hit(self, identifier: str) -> RateLimitDecision:
        """Check and record in one atomic step.

        A rejected request does not count against the window.
        """
        key = normalize_rate_limit_key(identifier)
        now = self._clock()
        decision = RateLimitDecision(allowed=True)

        def _apply(entry: Optional[RateLimitEntry]) -> Optional[RateLimitEntry]:
            nonlocal decision
            decision = self._decide(entry, now)
            if not decision.allowed:
                return entry
            return self._recorded(key, entry, now)

        self._backend.update(key, _apply)
        return decision

    def cleanup_expired_windows(self) -> int:
        now = self._clock()
        return self._backend.sweep_expired(
            lambda entry: now >= entry.window_start + self._window
        )

    def _decide(self, entry: Optional[RateLimitEntry], now: datetime) -> RateLimitDecision:
        if entry is None:
            return RateLimitDecision(allowed=True)
        window_end = entry.window_start + self._window
        if now >= window_end:
            return RateLimitDecision(allowed=True)
        if entry.count >= self._max_requests:
            retry_after = math.ceil((window_end - now).total_seconds())
            return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)
        return RateLimitDecision(allowed=True)

    def _recorded(
        self, key: str, entry: Optional[RateLimitEntry], now: datetime
    ) -> RateLimitEntry:
        if entry is None or now >= entry.window_start + self._window:
            return RateLimitEntry(identifier=key, count=1, window_start=now)
        return RateLimitEntry(
            identifier=key, count=entry.count + 1, window_start=entry.window_start
        )
