"""Per-IP token bucket rate limiting as WSGI middleware."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from time import monotonic
from typing import Any, Callable, Iterable

from contrafactory.realip import get_client_ip
from contrafactory.responses import error_response

HEALTH_CHECK_PATHS = frozenset({"/health", "/healthz", "/readyz"})
_DEFAULT_CLEANUP_SECONDS = 10 * 60

WSGIApp = Callable[..., Iterable[bytes]]


@dataclass
class RateLimitConfig:
    """Rate limiting settings: requests per minute per IP, burst, cleanup interval."""

    enabled: bool = False
    requests_per_min: int = 0
    burst_size: int = 0
    cleanup_minutes: int = 0


class TokenBucket:
    """A token bucket refilled at rate tokens per second, holding at most burst."""

    def __init__(self, rate: float, burst: int) -> None:
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._last = monotonic()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        """Take one token if available."""
        with self._lock:
            now = monotonic()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False


@dataclass
class _Entry:
    bucket: TokenBucket
    last_seen: float


class RateLimiter:
    """Keeps one token bucket per client IP and drops idle ones periodically."""

    def __init__(self, config: RateLimitConfig) -> None:
        self.rate = config.requests_per_min / 60.0
        self.burst = config.burst_size
        cleanup = config.cleanup_minutes * 60
        self.cleanup_interval = cleanup if cleanup > 0 else _DEFAULT_CLEANUP_SECONDS
        self._limiters: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._cleanup_loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background cleanup."""
        self._stopped.set()

    def _cleanup_loop(self) -> None:
        while not self._stopped.wait(self.cleanup_interval):
            self.cleanup_stale()

    def cleanup_stale(self) -> None:
        """Drop buckets of IPs not seen within the cleanup interval."""
        with self._lock:
            cutoff = monotonic() - self.cleanup_interval
            for ip in [ip for ip, entry in self._limiters.items() if entry.last_seen < cutoff]:
                del self._limiters[ip]

    def get_limiter(self, ip: str) -> TokenBucket:
        """Return the bucket for ip, creating it on first sight."""
        with self._lock:
            entry = self._limiters.get(ip)
            if entry is not None:
                entry.last_seen = monotonic()
                return entry.bucket
            bucket = TokenBucket(self.rate, self.burst)
            self._limiters[ip] = _Entry(bucket=bucket, last_seen=monotonic())
            return bucket

    def middleware(self, app: WSGIApp) -> WSGIApp:
        """Wrap app so that each client IP is limited; health checks pass freely."""

        def limited(environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
            path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
            if path in HEALTH_CHECK_PATHS:
                return app(environ, start_response)
            if not self.get_limiter(get_client_ip(environ)).allow():
                response = error_response(
                    429, "RATE_LIMIT_EXCEEDED", "Too many requests. Please try again later."
                )
                response.headers["Retry-After"] = "60"
                response.headers["X-Rate-Limit-Exceeded"] = "true"
                return response(environ, start_response)
            return app(environ, start_response)

        return limited


def rate_limit_middleware(app: WSGIApp, config: RateLimitConfig) -> WSGIApp:
    """Return app wrapped in a rate limiter, or app itself when limiting is disabled."""
    if not config.enabled:
        return app
    return RateLimiter(config).middleware(app)