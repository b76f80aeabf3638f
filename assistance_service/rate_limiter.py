# assistance_service/rate_limiter.py
import os
import time
from typing import Dict, List

from fastapi import HTTPException, Request, status

# Simple sliding-window rate limiter: N requests / WINDOW seconds per IP+path
WINDOW_SECONDS = 60
MAX_REQUESTS_PER_WINDOW = 30

_request_log: Dict[str, List[float]] = {}


def _forget_idle_clients(window_start: float) -> None:
    """Drop IP+path keys with no request inside the current window."""
    for key in [k for k, ts in _request_log.items() if not ts or ts[-1] < window_start]:
        _request_log.pop(key, None)


def ip_rate_limiter(request: Request):
    """
    Rate limit based on client IP + path.

    Used for the unauthenticated write endpoints:
    - POST /api/assistance-requests (touch-screen button mashing)
    - POST /api/rooms
    """
    # Skip rate limiting completely in automated tests
    if os.getenv("TESTING") == "1":
        return
    client_ip = request.client.host if request.client else "unknown"
    key = f"{client_ip}:{request.url.path}"

    now = time.time()
    window_start = now - WINDOW_SECONDS
    _forget_idle_clients(window_start)

    timestamps = [ts for ts in _request_log.get(key, []) if ts >= window_start]

    if len(timestamps) >= MAX_REQUESTS_PER_WINDOW:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests from this IP, please slow down",
        )

    timestamps.append(now)
    _request_log[key] = timestamps
