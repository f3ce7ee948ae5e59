"""
In-process sliding window rate limiting.

Each (group, client key) pair keeps a log of request times inside the
window. Counters are per-instance state: with several workers each one limits
independently, which matches the single-instance deployment this API targets.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Deque, Dict, Hashable, Optional, Tuple

from flask import current_app

from utils.audit import AuditEventType, get_audit_logger
from utils.client import client_ip
from utils.exceptions import RateLimitExceeded

logger = logging.getLogger(__name__)

# seconds between sweeps of idle windows
REAP_INTERVAL_SECONDS = 60.0

DEFAULT_MESSAGES = {
    "login": "Too many login attempts, please try again later",
}


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: float
    message: str = "Too many requests, please try again later"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int


class _Window:
    __slots__ = ("lock", "hits")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.hits: Deque[float] = deque()


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic, reap_interval: float = REAP_INTERVAL_SECONDS):
        self._clock = clock
        self._reap_interval = reap_interval
        self._last_reap: Optional[float] = None
        self._registry_lock = threading.Lock()
        self._windows: Dict[Tuple[str, Hashable], Tuple[_Window, float]] = {}

    @staticmethod
    def _prune(window: _Window, cutoff: float) -> None:
        hits = window.hits
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def _reap(self, now: float) -> None:
        """Drop keys whose whole window has elapsed (called with the registry lock held)."""
        stale = [
            key for key, (window, span) in self._windows.items()
            if not window.hits or window.hits[-1] <= now - span
        ]
        for key in stale:
            window, _span = self._windows[key]
            # a window someone is using right now is left for a later pass
            if window.lock.acquire(blocking=False):
                try:
                    if not window.hits or window.hits[-1] <= now - self._windows[key][1]:
                        del self._windows[key]
                finally:
                    window.lock.release()

    def hit(self, group: str, key: Hashable, limit: int, window_seconds: float) -> RateLimitResult:
        """Count one request for (group, key) and report whether it is allowed."""
        now = self._clock()
        with self._registry_lock:
            if self._last_reap is None or now - self._last_reap >= self._reap_interval:
                self._reap(now)
                self._last_reap = now
            entry = self._windows.get((group, key))
            if entry is None:
                entry = self._windows[(group, key)] = (_Window(), window_seconds)
            window = entry[0]
            # taken before the registry lock is released so the reaper cannot drop it in between
            window.lock.acquire()

        try:
            self._prune(window, now - window_seconds)
            if len(window.hits) >= limit:
                retry_after = math.ceil(window.hits[0] + window_seconds - now)
                return RateLimitResult(allowed=False, remaining=0, retry_after=max(1, retry_after))
            window.hits.append(now)
            return RateLimitResult(allowed=True, remaining=limit - len(window.hits), retry_after=0)
        finally:
            window.lock.release()

    def reset(self, group: Optional[str] = None) -> None:
        with self._registry_lock:
            if group is None:
                self._windows.clear()
            else:
                for key in [k for k in self._windows if k[0] == group]:
                    del self._windows[key]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._windows)


def get_rate_limiter() -> RateLimiter:
    return current_app.extensions["rate_limiter"]


def rule_for(group: str) -> Optional[RateLimitRule]:
    rules = current_app.config.get("RATE_LIMITS", {})
    entry = rules.get(group)
    if entry is None:
        return None
    limit, window = entry[0], entry[1]
    message = entry[2] if len(entry) > 2 else DEFAULT_MESSAGES.get(group, RateLimitRule.message)
    return RateLimitRule(limit=int(limit), window_seconds=float(window), message=message)


def enforce(group: str, key_func: Callable[[], str] = client_ip) -> None:
    """
    Count the current request against group and raise RateLimitExceeded once
    over the limit. The rejection is audited before it is raised.
    """
    if not current_app.config.get("RATE_LIMIT_ENABLED", True):
        return
    rule = rule_for(group)
    if rule is None:
        return
    key = key_func()
    result = get_rate_limiter().hit(group, key, rule.limit, rule.window_seconds)
    if result.allowed:
        return

    logger.warning("Rate limit exceeded for group %s", group)
    get_audit_logger().from_request(
        AuditEventType.RATE_LIMIT_EXCEEDED,
        success=False,
        details={
            "limit_group": group,
            "limit": rule.limit,
            "window_seconds": rule.window_seconds,
            "retry_after": result.retry_after,
        },
    )
    raise RateLimitExceeded(rule.message, retry_after=result.retry_after)


def rate_limited(group: str, key_func: Callable[[], str] = client_ip):
    """Apply the RATE_LIMITS[group] rule to a view before it runs."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            enforce(group, key_func)
            return fn(*args, **kwargs)

        return wrapper

    return decorator
