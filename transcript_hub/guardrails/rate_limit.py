import threading
import time
from collections import defaultdict

from fastapi import HTTPException
from starlette.requests import Request


class SimpleRateLimiter:
    """Sliding-window rate limiter; in-memory (per process). Used by API to cap requests per client IP.
    Why available: Job submissions fan out to paid remote APIs, so each client is capped."""

    def __init__(self, max_requests: int, window_seconds: int):
        """Configure limiter: max_requests per window_seconds per client IP."""
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.storage = defaultdict(list)  # ip -> [timestamps]
        self._lock = threading.Lock()

    def check(self, request: Request):
        """Raise 429 if the client has exceeded the rate limit; otherwise record the request."""
        now = time.time()
        ip = request.client.host if request.client else "unknown"

        with self._lock:
            self.storage[ip] = [t for t in self.storage[ip] if now - t < self.window_seconds]

            if len(self.storage[ip]) >= self.max_requests:
                raise HTTPException(
                    status_code=429,
                    detail="Rate limit exceeded. Please retry later.",
                )

            self.storage[ip].append(now)
