"""
In-memory fixed-window rate limit gate.

Per-process only (resets on restart). SafeProtocol depends on the boolean outcome
of check_and_consume, not on how hits are stored.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from fastapi import HTTPException, Request

from app.config import get_settings
from app.services.ip_utils import get_client_ip


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float

    @property
    def retry_after(self) -> int:
        return max(0, int(round(self.reset_at - time.time())))


class RateLimiter:
    def __init__(self, max_requests: int, window_seconds: int = 60, key_prefix: str = "rl"):
        self.max_requests = max(1, max_requests)
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._entries: dict[str, tuple[int, float]] = {}  # key -> (count, reset_at)
        self._lock = threading.Lock()

    def check_and_consume(self, key: str) -> RateLimitResult:
        now = time.time()
        full_key = f"{self.key_prefix}:{key}"
        with self._lock:
            count, reset_at = self._entries.get(full_key, (0, 0.0))
            if reset_at < now:
                count, reset_at = 0, now + self.window_seconds
            count += 1
            self._entries[full_key] = (count, reset_at)
        return RateLimitResult(
            allowed=count <= self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
        )

    def cleanup_expired(self) -> int:
        now = time.time()
        with self._lock:
            expired = [k for k, (_, reset_at) in self._entries.items() if reset_at < now]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


_settings = get_settings()
verify_limiter = RateLimiter(_settings.rate_limit_verify_max, _settings.rate_limit_window_seconds, "safeprotocol")
sign_limiter = RateLimiter(_settings.rate_limit_sign_max, _settings.rate_limit_window_seconds, "sign")


def cleanup_all_limiters() -> int:
    return verify_limiter.cleanup_expired() + sign_limiter.cleanup_expired()


def _enforce(limiter: RateLimiter, request: Request) -> None:
    result = limiter.check_and_consume(get_client_ip(request))
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
            headers={
                "Retry-After": str(result.retry_after),
                "X-RateLimit-Reset": str(int(result.reset_at)),
            },
        )


def limit_safeprotocol(request: Request) -> None:
    _enforce(verify_limiter, request)


def limit_signing(request: Request) -> None:
    _enforce(sign_limiter, request)
