"""
Fixed-window rate limiting for the ``/api/`` surface.

Counters live in a ``RateLimitStore`` that the application owns and hands to
the middleware; nothing is kept in module state, so every app (and every test)
gets its own counters. Keys combine the client identity with the endpoint
pattern that matched the request.
"""
import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, NamedTuple, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .errors import RateLimitExceeded, error_response

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
DEFAULT_POLICY_NAME = "default"


@dataclass(frozen=True)
class RateLimitPolicy:
    window_ms: int
    max_requests: int
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False


DEFAULT_POLICIES: Dict[str, RateLimitPolicy] = {
    # Order placement is the main abuse target
    "POST:/api/orders": RateLimitPolicy(MINUTE_MS, 10),
    "POST:/api/orders/cost-estimate": RateLimitPolicy(MINUTE_MS, 30, skip_successful_requests=True),
    "GET:/api/orders/*/track": RateLimitPolicy(MINUTE_MS, 60, skip_successful_requests=True),
    "POST:/api/orders/*/cancel": RateLimitPolicy(MINUTE_MS, 5),
    "GET:/api/public/services/*/config": RateLimitPolicy(MINUTE_MS, 30, skip_successful_requests=True),
    "POST:/api/mitra/orders/*/assign-driver": RateLimitPolicy(MINUTE_MS, 20),
    "POST:/api/mitra/orders/*/recompute-cost": RateLimitPolicy(MINUTE_MS, 10),
    "POST:/api/driver/*/orders/*/request-upload-url": RateLimitPolicy(MINUTE_MS, 20),
    "POST:/api/driver/*/orders/*/update-status": RateLimitPolicy(MINUTE_MS, 30, skip_successful_requests=True),
    DEFAULT_POLICY_NAME: RateLimitPolicy(MINUTE_MS, 100, skip_successful_requests=True),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitEntry:
    count: int
    reset_time: int
    first_request: int


class RateLimitResult(NamedTuple):
    count: int
    reset_time: int
    is_new_window: bool


class RateLimitStore:
    """
    Thread-safe fixed-window counters.

    Expired entries are swept lazily from ``increment`` at most once per
    ``cleanup_interval_ms``; ``cleanup`` can also be driven by a background
    task. Sweeping only bounds memory, counting is correct without it.
    """

    def __init__(self, cleanup_interval_ms: int = 5 * MINUTE_MS, clock: Optional[Callable[[], int]] = None):
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock or _now_ms
        self._cleanup_interval_ms = cleanup_interval_ms
        self._last_cleanup = self._clock()

    def now(self) -> int:
        return self._clock()

    def increment(self, key: str, window_ms: int) -> RateLimitResult:
        with self._lock:
            now = self._clock()
            if now - self._last_cleanup >= self._cleanup_interval_ms:
                self._sweep(now)

            entry = self._entries.get(key)
            if entry is None or now >= entry.reset_time:
                entry = RateLimitEntry(count=1, reset_time=now + window_ms, first_request=now)
                self._entries[key] = entry
                return RateLimitResult(entry.count, entry.reset_time, True)

            entry.count += 1
            return RateLimitResult(entry.count, entry.reset_time, False)

    def decrement(self, key: str, reset_time: Optional[int] = None) -> None:
        """Gives back one request, only within the window it was counted in."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.count <= 0:
                return
            if reset_time is not None and entry.reset_time != reset_time:
                return
            entry.count -= 1

    def get(self, key: str) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() >= entry.reset_time:
                return None
            return RateLimitEntry(entry.count, entry.reset_time, entry.first_request)

    def cleanup(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: int) -> int:
        expired = [key for key, entry in self._entries.items() if now >= entry.reset_time]
        for key in expired:
            del self._entries[key]
        self._last_cleanup = now
        if expired:
            logger.debug(f"Rate limit sweep removed {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            active = sum(1 for entry in self._entries.values() if now < entry.reset_time)
            return {"totalKeys": len(self._entries), "activeKeys": active}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def _pattern_matches(pattern: str, method: str, path: str) -> bool:
    pattern_method, _, pattern_path = pattern.partition(":")
    if pattern_method != method:
        return False
    pattern_segments = pattern_path.strip("/").split("/")
    path_segments = path.strip("/").split("/")
    if len(pattern_segments) != len(path_segments):
        return False
    for expected, actual in zip(pattern_segments, path_segments):
        # A wildcard stands for exactly one non-empty segment
        if expected == "*":
            if not actual:
                return False
        elif expected != actual:
            return False
    return True


def match_policy(method: str, path: str, policies: Mapping[str, RateLimitPolicy] = DEFAULT_POLICIES) -> Tuple[str, RateLimitPolicy]:
    """Exact METHOD:path first, then the wildcard pattern with fewest wildcards, then the default."""
    method = method.upper()
    exact = f"{method}:{path.rstrip('/') or '/'}"
    if exact in policies:
        return exact, policies[exact]

    candidates = [
        pattern for pattern in policies
        if pattern != DEFAULT_POLICY_NAME and "*" in pattern and _pattern_matches(pattern, method, path)
    ]
    if candidates:
        best = min(candidates, key=lambda pattern: pattern.count("*"))
        return best, policies[best]

    return DEFAULT_POLICY_NAME, policies[DEFAULT_POLICY_NAME]


def client_identity(request: Request) -> str:
    """Best-effort client address from proxy headers, then the socket peer."""
    headers = request.headers
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip and cf_ip.strip():
        return cf_ip.strip()
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit_headers(policy: RateLimitPolicy, count: int, reset_time: int) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(policy.max_requests),
        "X-RateLimit-Remaining": str(max(0, policy.max_requests - count)),
        "X-RateLimit-Reset": str(math.ceil(reset_time / 1000)),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        store: RateLimitStore,
        policies: Optional[Mapping[str, RateLimitPolicy]] = None,
        enabled: bool = True,
    ):
        super().__init__(app)
        self.store = store
        self.policies = dict(policies or DEFAULT_POLICIES)
        if DEFAULT_POLICY_NAME not in self.policies:
            self.policies[DEFAULT_POLICY_NAME] = DEFAULT_POLICIES[DEFAULT_POLICY_NAME]
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not self.enabled or not path.startswith("/api/"):
            return await call_next(request)

        pattern, policy = match_policy(request.method, path, self.policies)
        key = f"{client_identity(request)}:{pattern}"
        count, reset_time, _ = self.store.increment(key, policy.window_ms)
        headers = rate_limit_headers(policy, count, reset_time)

        if count > policy.max_requests:
            retry_after = max(1, math.ceil((reset_time - self.store.now()) / 1000))
            logger.warning(f"Rate limit exceeded for {key}: {count}/{policy.max_requests} (pattern: {pattern})")
            headers["Retry-After"] = str(retry_after)
            error = RateLimitExceeded(
                f"Rate limit exceeded. Maximum {policy.max_requests} requests per {policy.window_ms // 1000} seconds.",
                details={
                    "limit": policy.max_requests,
                    "current": count,
                    "windowMs": policy.window_ms,
                    "retryAfter": retry_after,
                    "pattern": pattern,
                },
            )
            return error_response(error, headers=headers)

        if count > policy.max_requests * 0.8:
            logger.info(f"High rate limit usage for {key}: {count}/{policy.max_requests} (pattern: {pattern})")

        response = await call_next(request)
        response.headers.update(headers)

        if policy.skip_successful_requests and response.status_code < 400:
            self.store.decrement(key, reset_time)
        elif policy.skip_failed_requests and response.status_code >= 400:
            self.store.decrement(key, reset_time)
        return response


async def run_cleanup_loop(store: RateLimitStore, interval_seconds: float):
    """Background sweeper started from the application lifespan."""
    logger.info(f"Rate limit sweeper running every {interval_seconds}s")
    while True:
        await asyncio.sleep(interval_seconds)
        removed = store.cleanup()
        if removed:
            logger.info(f"Rate limit sweeper removed {removed} expired entries")
