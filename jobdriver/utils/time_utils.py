# jobdriver/utils/time_utils.py
"""
Time helpers used by the driver, observer and child runtime.

Wall-clock timestamps (now_ts) are used for anything that crosses a process
boundary (worker telemetry written to the broker); monotonic_ts is used for
local deadlines such as the shutdown grace period.
"""

from __future__ import annotations

import re
import time
import datetime
from typing import Union

def now_ts() -> float:
    """Unix timestamp (UTC) with float seconds."""
    return time.time()

def monotonic_ts() -> float:
    return time.monotonic()

def iso_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")

# -------------------------
# Human duration parsing
# -------------------------
DURATION_PATTERN = re.compile(r"(\d+\.?\d*)\s*([a-zA-Z]*)")

_UNIT_SECONDS = {
    "": 1,
    "ms": 0.001,
    "s": 1,
    "sec": 1,
    "secs": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hour": 3600,
    "hours": 3600,
}

def parse_duration(value: Union[str, int, float, None]) -> float:
    """
    Parse durations like "5", "30s", "2m", "1h30m" into seconds.
    Plain numbers are seconds. Raises ValueError on anything else.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    matches = list(DURATION_PATTERN.finditer(text))
    if not matches or "".join(m.group(0) for m in matches).replace(" ", "") != text.replace(" ", ""):
        raise ValueError(f"invalid duration: {value!r}")
    total = 0.0
    for m in matches:
        unit = m.group(2)
        if unit not in _UNIT_SECONDS:
            raise ValueError(f"invalid duration unit {unit!r} in {value!r}")
        total += float(m.group(1)) * _UNIT_SECONDS[unit]
    return total

def format_duration(seconds: float) -> str:
    """Format seconds as '1h2m3s'."""
    seconds = int(seconds)
    h, r = divmod(seconds, 3600)
    m, s = divmod(r, 60)
    parts = []
    if h: parts.append(f"{h}h")
    if m: parts.append(f"{m}m")
    if s or not parts: parts.append(f"{s}s")
    return "".join(parts)

__all__ = ["now_ts", "monotonic_ts", "iso_now", "parse_duration", "format_duration"]
