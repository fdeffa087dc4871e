"""Per-client sliding-window rate limiting for the chat routes."""

import asyncio
import time
from typing import Dict, List, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from structlog import get_logger

logger = get_logger()

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


class RateLimitExceeded(Exception):
    """Exception raised when rate limit is exceeded."""

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimiter:
    """Keeps request timestamps per key and rejects once a window is full."""

    def __init__(self, rate_limit: int = 5, time_window: float = 10.0):
        self.rate_limit = rate_limit
        self.time_window = time_window  # in seconds
        self.requests: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info("rate_limiter_initialized", rate_limit=rate_limit, time_window=time_window)

    @classmethod
    def from_settings(cls, window_ms: int, max_requests: int) -> "RateLimiter":
        return cls(rate_limit=max_requests, time_window=window_ms / 1000)

    async def start(self):
        """Start the periodic cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self):
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _periodic_cleanup(self):
        """Drop keys whose timestamps all fell out of the window."""
        while True:
            try:
                await asyncio.sleep(self.time_window)
                async with self._lock:
                    self._prune_all(time.time() - self.time_window)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("rate_limiter_cleanup_error", error=str(e))

    def _prune_all(self, cutoff: float) -> None:
        for key in list(self.requests.keys()):
            self.requests[key] = [ts for ts in self.requests[key] if ts > cutoff]
            if not self.requests[key]:
                del self.requests[key]

    async def check_rate_limit(self, key: str) -> None:
        """Record one request for key, or raise RateLimitExceeded if the window is full."""
        current_time = time.time()
        cutoff_time = current_time - self.time_window

        async with self._lock:
            timestamps = [ts for ts in self.requests.get(key, []) if ts > cutoff_time]
            if len(timestamps) >= self.rate_limit:
                self.requests[key] = timestamps
                retry_after = max(1, int(timestamps[0] + self.time_window - current_time) + 1)
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(timestamps),
                    rate_limit=self.rate_limit,
                )
                raise RateLimitExceeded(
                    f"Rate limit of {self.rate_limit} requests per {self.time_window:g} seconds exceeded",
                    retry_after=retry_after,
                )
            timestamps.append(current_time)
            self.requests[key] = timestamps

    async def get_remaining_requests(self, key: str) -> int:
        cutoff_time = time.time() - self.time_window
        async with self._lock:
            timestamps = [ts for ts in self.requests.get(key, []) if ts > cutoff_time]
            return max(0, self.rate_limit - len(timestamps))


def client_key(request: Request) -> str:
    client_ip = request.client.host if request.client else "unknown"
    return f"{client_ip}:{request.url.path}"


async def rate_limit_middleware(request: Request, rate_limiter: Optional[RateLimiter]) -> Optional[JSONResponse]:
    """Returns a 429 envelope when the client is over its limit, otherwise None."""
    if rate_limiter is None:
        return None
    try:
        await rate_limiter.check_rate_limit(client_key(request))
    except RateLimitExceeded as e:
        return JSONResponse(
            status_code=429,
            content={"success": False, "message": RATE_LIMIT_MESSAGE, "data": None},
            headers={"Retry-After": str(e.retry_after)},
        )
    return None
