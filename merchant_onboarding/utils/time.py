import time
from datetime import datetime, timezone
from typing import Optional

HOUR_MS = 60 * 60 * 1000

def now_ms() -> int:
    return int(time.time() * 1000)

def parse_timestamp_ms(ts, default: Optional[int] = None) -> int:
    """
    Normalize timestamps to epoch milliseconds (int).
    Accepts:
    - int/float: treated as epoch ms (or seconds if suspiciously small)
    - ISO-8601 string: parsed via datetime.fromisoformat (supports trailing 'Z')
    - numeric string: same as int
    Fallback: `default` if given, else current time in ms.
    """
    fallback = now_ms() if default is None else int(default)
    try:
        if ts is None:
            return fallback
        if isinstance(ts, bool):
            return fallback
        if isinstance(ts, (int, float)):
            v = int(ts)
            # Heuristic: if looks like seconds (< 10^12), convert to ms.
            return v * 1000 if v > 0 and v < 10**12 else v
        if isinstance(ts, str):
            s = ts.strip()
            if not s:
                return fallback
            if s.isdigit():
                return parse_timestamp_ms(int(s), default=fallback)
            # Support Zulu time
            if s.endswith("Z"):
                s = s[:-1] + "+00:00"
            dt = datetime.fromisoformat(s)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
    except (ValueError, OverflowError):
        pass
    return fallback

def ms_until(deadline_ms: int, *, now: Optional[int] = None) -> int:
    """Milliseconds left until `deadline_ms`, clamped to >= 0."""
    current = now_ms() if now is None else int(now)
    return max(0, int(deadline_ms) - current)

def format_mm_ss(remaining_ms: int) -> str:
    """Render a remaining duration as MM:SS (minutes are not wrapped at 60)."""
    remaining_ms = max(0, int(remaining_ms or 0))
    minutes = remaining_ms // 60000
    seconds = (remaining_ms % 60000) // 1000
    return f"{minutes:02d}:{seconds:02d}"
