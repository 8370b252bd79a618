from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from typing import Awaitable, Callable, DefaultDict, Deque, Hashable

from fastapi import HTTPException, Request, status

WindowBucket = Deque[float]


def _prune(bucket: WindowBucket, now: float, window_seconds: int) -> None:
    while bucket and now - bucket[0] > window_seconds:
        bucket.popleft()


def _enforce_limit(bucket: WindowBucket, limit: int, window_seconds: int, now: float) -> None:
    _prune(bucket, now, window_seconds)
    if len(bucket) >= limit:
        retry_after_seconds = 1
        if bucket:
            retry_after_seconds = max(1, int(math.ceil(bucket[0] + window_seconds - now)))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            headers={"Retry-After": str(retry_after_seconds)},
        )
    bucket.append(now)


def _sweep(buckets: DefaultDict[Hashable, WindowBucket], now: float, window_seconds: int) -> None:
    for key in list(buckets):
        _prune(buckets[key], now, window_seconds)
        if not buckets[key]:
            del buckets[key]


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "anon"


def per_identifier_limiter(
    identifier_fn: Callable[[Request], Hashable],
    limit: int,
    window_seconds: int,
) -> Callable[[Request], Awaitable[None]]:
    """
    In-memory sliding-window rate limiter keyed by a per-request identifier.

    Args:
        identifier_fn: function that maps the request to an identifier (e.g. client IP).
        limit: max requests allowed in the window; 0 or less disables the limit.
        window_seconds: rolling window length in seconds.
    """
    buckets: DefaultDict[Hashable, WindowBucket] = defaultdict(deque)
    last_sweep = 0.0

    async def dependency(request: Request) -> None:
        nonlocal last_sweep
        if limit <= 0:
            return
        now = time.time()
        # Identifiers idle for a whole window are dropped, at most once per window.
        if now - last_sweep >= window_seconds:
            _sweep(buckets, now, window_seconds)
            last_sweep = now
        _enforce_limit(buckets[identifier_fn(request)], limit, window_seconds, now)

    dependency.buckets = buckets  # type: ignore[attr-defined]
    return dependency
