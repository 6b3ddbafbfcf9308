import math
from collections import deque
from datetime import datetime, timezone
from typing import List

from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


def format_ddhhmmss(total_seconds: float) -> str:
    """Formats a duration as DD:HH:MM:SS. Negative durations render as zero."""
    if not math.isfinite(total_seconds):
        total_seconds = 0
    s = max(0, math.floor(total_seconds))
    dd = s // 86400
    hh = (s % 86400) // 3600
    mm = (s % 3600) // 60
    ss = s % 60
    return f"{dd:02d}:{hh:02d}:{mm:02d}:{ss:02d}"


class ActivityLog:
    """Bounded, newest-first log of user-visible session events."""

    def __init__(self, maxlen: int = 200):
        self._entries: deque = deque(maxlen=maxlen)

    def __call__(self, message: str) -> str:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        entry = f"[{ts}] {message}"
        self._entries.appendleft(entry)
        logger.info(message)
        return entry

    def entries(self, limit: int = 50) -> List[str]:
        return list(self._entries)[:limit]
