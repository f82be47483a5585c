from __future__ import annotations

"""Fixed-window rate limits for the credential endpoints."""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, Tuple


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True)
class RatePolicy:
    action: str
    limit_env: str
    window_env: str
    default_limit: int
    default_window_seconds: int

    @property
    def limit(self) -> int:
        return _env_int(self.limit_env, self.default_limit)

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=_env_int(self.window_env, self.default_window_seconds))


LOGIN_POLICY = RatePolicy("login", "AUTH_LOGIN_LIMIT", "AUTH_LOGIN_WINDOW_SEC", 10, 900)
REGISTER_POLICY = RatePolicy("register", "AUTH_REGISTER_LIMIT", "AUTH_REGISTER_WINDOW_SEC", 5, 900)


@dataclass
class _Window:
    count: int
    ends_at: datetime


class RateLimiter:
    def __init__(self) -> None:
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._lock = Lock()

    def hit(self, policy: RatePolicy, identifier: str) -> None:
        """Count one attempt of ``policy.action`` by ``identifier``.

        Raises:
            RateLimitExceeded once the window's limit is used up.
        """

        if _rate_limiting_disabled():
            return
        now = datetime.now(timezone.utc)
        key = (policy.action, identifier)
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.ends_at <= now:
                self._windows[key] = _Window(count=1, ends_at=now + policy.window)
                return
            if window.count >= policy.limit:
                retry_after = int((window.ends_at - now).total_seconds())
                raise RateLimitExceeded(max(retry_after, 1))
            window.count += 1

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _rate_limiting_disabled() -> bool:
    flag = os.getenv("PAGESMITH_RATE_LIMIT_DISABLED")
    return bool(flag and flag.lower() in {"1", "true", "yes", "on"})


limiter = RateLimiter()
