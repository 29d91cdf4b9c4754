# Overview: Rolling-window attempt limiting for guest lookups and logins.

"""
Rate Limit Service

WHY: Guest order lookup by code + contact is an enumeration target, and
login is a brute-force target. Both are capped per identifier over a
rolling window.

DESIGN:
- Each (bucket, identifier) keeps a list of attempt timestamps in the
  KeyValueStore; timestamps older than the window are pruned on access
- `hit` records an attempt only if the cap has not been reached, so a
  throttled client does not extend its own lockout
- Guest lookups are keyed on client network origin only
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from flask import current_app, request

from ..errors import RateLimitedError
from .kv_store import get_kv_store


TRACK_LOOKUP_BUCKET = "track-lookup"
LOGIN_FAILURE_BUCKET = "login-failure"

# Login throttling
MAX_FAILED_LOGINS = 10
LOGIN_WINDOW_SECONDS = 15 * 60


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int | None = None


def _key(bucket: str, identifier: str) -> str:
    return f"rate-limit:{bucket}:{identifier}"


def _prune(timestamps, now: float, window_seconds: int) -> list[float]:
    cutoff = now - window_seconds
    return [ts for ts in (timestamps or []) if ts > cutoff]


def _retry_after(timestamps: list[float], now: float, window_seconds: int) -> int:
    if not timestamps:
        return 0
    return max(1, int(timestamps[0] + window_seconds - now) + 1)


def hit(
    bucket: str,
    identifier: str,
    *,
    limit: int,
    window_seconds: int,
    now: float | None = None,
) -> RateLimitResult:
    """Record one attempt unless the window is already full."""
    now = time.time() if now is None else now
    outcome: dict = {}

    def _apply(current):
        timestamps = _prune(current, now, window_seconds)
        if len(timestamps) >= limit:
            outcome["allowed"] = False
        else:
            timestamps.append(now)
            outcome["allowed"] = True
        outcome["timestamps"] = timestamps
        return timestamps

    get_kv_store().update(_key(bucket, identifier), _apply, ttl_seconds=window_seconds)

    timestamps = outcome["timestamps"]
    if outcome["allowed"]:
        return RateLimitResult(True, len(timestamps), limit)
    return RateLimitResult(
        False, len(timestamps), limit, _retry_after(timestamps, now, window_seconds)
    )


def count(bucket: str, identifier: str, *, window_seconds: int, now: float | None = None) -> int:
    now = time.time() if now is None else now
    return len(_prune(get_kv_store().get(_key(bucket, identifier)), now, window_seconds))


def reset(bucket: str, identifier: str) -> None:
    get_kv_store().delete(_key(bucket, identifier))


def client_ip() -> str:
    """
    Client network origin for the current request.

    First X-Forwarded-For entry, then X-Real-IP, then the socket address.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP", "")
    if real_ip.strip():
        return real_ip.strip()
    return request.remote_addr or "unknown"


def enforce_track_lookup_limit(ip_address: str, *, now: float | None = None) -> RateLimitResult:
    """Raise RateLimitedError once an origin exceeds the lookup cap."""
    result = hit(
        TRACK_LOOKUP_BUCKET,
        ip_address,
        limit=current_app.config.get("TRACK_RATE_LIMIT_MAX", 10),
        window_seconds=current_app.config.get("TRACK_RATE_LIMIT_WINDOW_SECONDS", 900),
        now=now,
    )
    if not result.allowed:
        current_app.logger.warning("Order lookup rate limit hit for %s", ip_address)
        raise RateLimitedError("Too many requests. Please try again later.", code="rate_limited")
    return result


# =============================================================================
# LOGIN THROTTLING
# =============================================================================

def is_login_locked(identifier: str, *, now: float | None = None) -> tuple[bool, int | None]:
    """
    Returns:
    - (True, seconds_remaining) if locked
    - (False, None) if not locked
    """
    now = time.time() if now is None else now
    timestamps = _prune(
        get_kv_store().get(_key(LOGIN_FAILURE_BUCKET, identifier.lower())), now, LOGIN_WINDOW_SECONDS
    )
    if len(timestamps) >= MAX_FAILED_LOGINS:
        return True, _retry_after(timestamps, now, LOGIN_WINDOW_SECONDS)
    return False, None


def record_failed_login(identifier: str, *, now: float | None = None) -> int:
    """Record a failed login. Returns the number of failures in the window."""
    result = hit(
        LOGIN_FAILURE_BUCKET,
        identifier.lower(),
        limit=MAX_FAILED_LOGINS,
        window_seconds=LOGIN_WINDOW_SECONDS,
        now=now,
    )
    return result.count


def clear_failed_logins(identifier: str) -> None:
    reset(LOGIN_FAILURE_BUCKET, identifier.lower())
