"""
In-process rate limiting.

Simple sliding window limiter backed by per-key deques, plus the FastAPI
dependency that keys it by client IP.
"""
import ipaddress
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Iterable, Optional

from fastapi import Request

from checkin.core.config import settings
from checkin.core.exceptions import RateLimitedError


class RateLimiter:
    """
    In-memory sliding window rate limiter.

    Thread-safe; one instance is shared by every endpoint that needs it.
    """

    def __init__(self):
        self.buckets: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def check(self, key: str, limit: int, window_seconds: int) -> None:
        """
        Record one attempt for ``key``.

        Raises:
            RateLimitedError: more than ``limit`` attempts within the window
        """
        now = time.time()

        with self._lock:
            bucket = self.buckets[key]
            while bucket and bucket[0] <= now - window_seconds:
                bucket.popleft()

            if len(bucket) >= limit:
                raise RateLimitedError("Too many attempts. Please try again later.")

            bucket.append(now)

    def reset(self) -> None:
        with self._lock:
            self.buckets.clear()


rate_limiter = RateLimiter()


def _parse_forwarded_allow_ips(value: str) -> Iterable[str]:
    if not value:
        return []
    if value.strip() == "*":
        return ["*"]
    return [part.strip() for part in value.split(",") if part.strip()]


def _is_trusted_proxy(client_host: Optional[str]) -> bool:
    if not client_host:
        return False

    allow_ips = _parse_forwarded_allow_ips(settings.FORWARDED_ALLOW_IPS)
    if not allow_ips:
        return False
    if "*" in allow_ips:
        return True

    try:
        client_ip = ipaddress.ip_address(client_host)
    except ValueError:
        return False

    for entry in allow_ips:
        try:
            if "/" in entry:
                if client_ip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif client_ip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request) -> str:
    """Client address, honouring X-Forwarded-For only from trusted proxies."""
    if _is_trusted_proxy(request.client.host if request.client else None):
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

    if request.client:
        return request.client.host
    return "unknown"


def rate_limit_ip(scope: str, limit: int, window_seconds: int) -> Callable:
    """
    FastAPI dependency limiting ``scope`` to ``limit`` calls per IP per window.

    Example:
        @router.delete("/accounts/{identity_id}")
        async def delete_account(
            _: None = Depends(rate_limit_ip("delete", limit=5, window_seconds=60)),
            ...
        ):
    """
    async def dependency(request: Request) -> None:
        rate_limiter.check(f"{scope}:ip:{get_client_ip(request)}", limit, window_seconds)

    return dependency
