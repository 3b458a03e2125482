"""
Helper Functions

This module contains utility functions used throughout the exporter.
"""

import logging
import math
import os
import tempfile
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence, Tuple, Type, TypeVar, Union

from dateutil import parser as dtparser

logger = logging.getLogger("squid_log_exporter.utils")

T = TypeVar("T")


def parse_ts(x: Any) -> Optional[datetime]:
    """Parse a free-form timestamp, assuming UTC when no zone is given"""
    if not x:
        return None
    try:
        dt = dtparser.parse(str(x))
    except (ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_log_timestamp(raw: str, layout: Optional[str]) -> Optional[float]:
    """
    Convert a log timestamp token to epoch seconds.

    layout is "unix" for Squid's native seconds.millis, a strptime layout,
    or None for free-form dates.
    """
    if not raw or raw == "-":
        return None
    if layout == "unix":
        value = safe_float(raw)
        return value if value is not None and math.isfinite(value) else None
    if layout:
        try:
            dt = datetime.strptime(raw, layout)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    dt = parse_ts(raw)
    return dt.timestamp() if dt else None


def safe_int(x: Any) -> Optional[int]:
    """Safely convert to int"""
    try:
        return int(x) if x is not None else None
    except (TypeError, ValueError):
        return None


def safe_float(x: Any) -> Optional[float]:
    """Safely convert to float"""
    try:
        return float(x) if x is not None else None
    except (TypeError, ValueError):
        return None


def percentile(samples: Sequence[float], p: float) -> float:
    """
    Nearest-rank percentile: sort a copy, take index floor(n * p)
    clamped to the last element. Returns 0.0 for no samples.
    """
    n = len(samples)
    if n == 0:
        return 0.0
    ordered: List[float] = sorted(samples)
    idx = min(int(n * p), n - 1)
    return float(ordered[idx])


def ensure_parent_dir(path: str) -> None:
    """Create parent directories if needed"""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)


def atomic_write(path: str, data: Union[str, bytes], mode: int = 0o644) -> None:
    """
    Replace path with data without readers ever seeing a partial file.

    The temp file lives in the destination directory; os.replace is only
    atomic within a single filesystem.
    """
    ensure_parent_dir(path)
    directory = os.path.dirname(os.path.abspath(path))
    payload = data.encode("utf-8") if isinstance(data, str) else data

    fd, tmp_path = tempfile.mkstemp(prefix=os.path.basename(path) + ".", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (OSError,),
    what: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying on retry_on up to attempts times with a fixed delay"""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts:
                logger.error("%s failed after %d attempt(s): %s", what, attempts, e)
                raise
            logger.warning("%s failed (attempt %d/%d): %s; retrying in %.1fs",
                           what, attempt, attempts, e, delay)
            sleep(delay)
    raise AssertionError("unreachable")
