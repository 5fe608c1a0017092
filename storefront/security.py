"""Request guards for the public checkout surface: CSRF and rate limiting."""

from __future__ import annotations

import hmac
import secrets
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

import structlog
from fastapi import Request, Response

from .errors import CsrfRejected, RateLimited

logger = structlog.get_logger(__name__)

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


def issue_csrf_token(response: Response, *, secure: bool = False) -> str:
    """Double-submit token: set as a cookie, echoed back by the client in a header."""
    token = secrets.token_hex(32)
    response.set_cookie(CSRF_COOKIE, token, httponly=False, samesite="strict", secure=secure, max_age=3600)
    return token


def verify_csrf(request: Request) -> None:
    cookie = request.cookies.get(CSRF_COOKIE)
    header = request.headers.get(CSRF_HEADER)
    if not cookie or not header or not hmac.compare_digest(cookie.encode("utf-8"), header.encode("utf-8")):
        logger.warning("csrf_rejected", path=request.url.path)
        raise CsrfRejected("Invalid or missing CSRF token")


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimiter:
    """Sliding-window limiter keyed by client address; in-process only."""

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def __call__(self, request: Request) -> None:
        key = client_address(request)
        if not self.hit(key):
            logger.warning("rate_limited", client=key, path=request.url.path)
            raise RateLimited("Too many orders, please try again later.")


def order_rate_limit(request: Request) -> None:
    request.app.state.order_limiter(request)
