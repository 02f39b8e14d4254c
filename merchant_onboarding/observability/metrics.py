"""
Lightweight counters/timers for the credential and verification lifecycles.

Counters live in Redis next to the snapshot so they survive restarts. Every
write is best-effort: a storage failure never reaches the caller.
"""
from __future__ import annotations
import time
from typing import List

from redis.exceptions import RedisError

from merchant_onboarding.store.redis_conn import get_redis

K_REFRESH_ATT = "metrics:auth:refresh_attempts"       # INCR
K_REFRESH_OK = "metrics:auth:refresh_success"         # INCR
K_REFRESH_FAIL = "metrics:auth:refresh_failed"        # INCR
K_REFRESH_LAT = "metrics:auth:refresh_latencies"      # LPUSH ms
K_FORCED_LOGOUT = "metrics:auth:forced_logouts"       # INCR

K_VERIF_STARTED = "metrics:verification:started"      # INCR
K_VERIF_POLLS = "metrics:verification:polls"          # INCR
K_VERIF_EXPIRED = "metrics:verification:expired"      # INCR

_MAX_SAMPLES = 200


def _percentile(data: List[float], p: float) -> float:
    """Nearest-rank percentile on sorted data."""
    if not data:
        return 0.0
    d = sorted(data)
    k = max(1, int(round(p * len(d))))
    return float(d[k - 1])


def _incr(key: str) -> None:
    try:
        get_redis().incr(key, 1)
    except (RedisError, OSError):
        pass


def _record_latency(key: str, ms: int) -> None:
    try:
        ms = int(ms)
    except (TypeError, ValueError):
        return
    try:
        r = get_redis()
        r.lpush(key, ms)
        r.ltrim(key, 0, _MAX_SAMPLES - 1)
    except (RedisError, OSError):
        pass


def increment_refresh_attempt() -> None:
    _incr(K_REFRESH_ATT)


def increment_refresh_success() -> None:
    _incr(K_REFRESH_OK)


def increment_refresh_failed() -> None:
    _incr(K_REFRESH_FAIL)


def record_refresh_latency(ms: int) -> None:
    _record_latency(K_REFRESH_LAT, ms)


def increment_forced_logout() -> None:
    _incr(K_FORCED_LOGOUT)


def increment_verification_started() -> None:
    _incr(K_VERIF_STARTED)


def increment_verification_poll() -> None:
    _incr(K_VERIF_POLLS)


def increment_verification_expired() -> None:
    _incr(K_VERIF_EXPIRED)


def _read_int(r, key: str) -> int:
    try:
        return int(r.get(key) or 0)
    except (TypeError, ValueError):
        return 0


def get_metrics_snapshot() -> dict:
    """Counters plus refresh latency percentiles (ms); zeros on first boot."""
    try:
        r = get_redis()
        attempts = _read_int(r, K_REFRESH_ATT)
        ok = _read_int(r, K_REFRESH_OK)
        lat: List[float] = []
        for x in r.lrange(K_REFRESH_LAT, 0, _MAX_SAMPLES - 1) or []:
            try:
                lat.append(float(x))
            except (TypeError, ValueError):
                continue
        return {
            "refresh_attempts": attempts,
            "refresh_success": ok,
            "refresh_failed": _read_int(r, K_REFRESH_FAIL),
            "refresh_success_rate": round((ok / attempts) * 100.0, 3) if attempts else 0.0,
            "p50_refresh_latency_ms": _percentile(lat, 0.50),
            "p95_refresh_latency_ms": _percentile(lat, 0.95),
            "forced_logouts": _read_int(r, K_FORCED_LOGOUT),
            "verification_started": _read_int(r, K_VERIF_STARTED),
            "verification_polls": _read_int(r, K_VERIF_POLLS),
            "verification_expired": _read_int(r, K_VERIF_EXPIRED),
            "snapshot_at": int(time.time()),
        }
    except (RedisError, OSError):
        return {"snapshot_at": int(time.time()), "unavailable": True}
