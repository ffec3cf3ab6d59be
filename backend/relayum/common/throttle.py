"""In-process request throttling.

Two sliding windows live on the app: one shared by every request class and one
that only counts failed logins. Both key on client address plus principal, so
counts are per process and reset on restart.
"""
from __future__ import annotations

import re
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass

from flask import current_app, request
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

from .errors import RateLimited
from .feature_flags import flag_enabled
from .netutil import client_ip


RATE_PATTERN = re.compile(r"^\s*(\d+)\s*(?:/\s*(\d*)\s*([a-z]*)\s*)?$")
WINDOW_UNITS = {"": 1, "s": 1, "sec": 1, "second": 1, "min": 60, "minute": 60, "h": 3600, "hr": 3600, "hour": 3600}

# blueprint -> (class for safe methods, class for writes)
ENDPOINT_CLASSES = {
    "files": ("files_read", "files_write"),
    "folders": ("files_read", "files_write"),
    "shares": ("shares", "shares"),
    "download": ("download", "download"),
    "anonymous": ("anonymous", "anonymous"),
    "auth": ("auth", "auth"),
}


@dataclass(frozen=True)
class Rate:
    attempts: int
    window_seconds: int


def parse_rate(value: str | None, default: Rate = Rate(600, 60)) -> Rate:
    """Parse ``"20/min"``, ``"5/30s"`` or a bare ``"100"`` (per ``default`` window)."""
    match = RATE_PATTERN.match((value or "").lower())
    if match is None:
        return default
    attempts, count, unit = match.groups()
    if count is None:
        return Rate(max(1, int(attempts)), default.window_seconds)
    multiplier = WINDOW_UNITS.get(unit, WINDOW_UNITS.get(unit.rstrip("s")))
    if multiplier is None:
        return default
    return Rate(max(1, int(attempts)), max(1, int(count or 1) * multiplier))


class SlidingWindow:
    def __init__(self) -> None:
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _trim(self, key: str, window_seconds: int, now: float) -> deque[float]:
        hits = self._hits[key]
        while hits and now - hits[0] > window_seconds:
            hits.popleft()
        return hits

    def hit(self, key: str, rate: Rate) -> int:
        """Count one hit; return 0 when allowed, else seconds until a slot frees."""
        now = time.monotonic()
        with self._lock:
            hits = self._trim(key, rate.window_seconds, now)
            if len(hits) >= rate.attempts:
                return max(1, int(hits[0] + rate.window_seconds - now) + 1)
            hits.append(now)
            return 0

    def full(self, key: str, rate: Rate) -> bool:
        with self._lock:
            return len(self._trim(key, rate.window_seconds, time.monotonic())) >= rate.attempts

    def record(self, key: str) -> None:
        with self._lock:
            self._hits[key].append(time.monotonic())

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


def install_throttles(app) -> None:
    app.extensions["relayum.request_window"] = SlidingWindow()
    app.extensions["relayum.login_window"] = SlidingWindow()


def login_window() -> SlidingWindow:
    return current_app.extensions["relayum.login_window"]


def login_rate() -> Rate:
    return Rate(
        max(1, int(current_app.config["LOGIN_RATE_LIMIT_MAX_ATTEMPTS"])),
        max(1, int(current_app.config["LOGIN_RATE_LIMIT_WINDOW_SECONDS"])),
    )


def _principal() -> str:
    try:
        verify_jwt_in_request(optional=True)
        identity = get_jwt_identity()
    except (JWTExtendedException, PyJWTError):
        return "anon"
    return "anon" if identity is None else str(identity)


def endpoint_class() -> str:
    classes = ENDPOINT_CLASSES.get(request.blueprint or "")
    if classes is None:
        return "default"
    read_class, write_class = classes
    return read_class if request.method in {"GET", "HEAD"} else write_class


def throttle_request() -> None:
    if request.method == "OPTIONS" or not flag_enabled("security.rate_limit"):
        return

    name = endpoint_class()
    config = current_app.config
    rate = parse_rate(config.get(f"RATE_LIMIT_{name.upper()}") or config.get("RATE_LIMIT_DEFAULT"))
    key = f"{name}:{client_ip() or 'unknown'}:{_principal()}:{request.endpoint or '-'}"
    retry_after = current_app.extensions["relayum.request_window"].hit(key, rate)
    if retry_after:
        raise RateLimited("API rate limit exceeded.", retry_after)
