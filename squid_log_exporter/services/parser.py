"""
LineParser Class - Handles parsing of Squid access log lines

This module splits raw log lines into fields and turns them into
structured ParsedEntry objects.
"""

import math
from typing import List, Tuple

from squid_log_exporter.models.data_models import LogFormatSpec, ParsedEntry
from squid_log_exporter.models.errors import ParseError
from squid_log_exporter.services.hosts import classify_url
from squid_log_exporter.utils.helpers import parse_log_timestamp, safe_float, safe_int

# (upper bound inclusive, label); the last label catches everything above
MS_BUCKETS: Tuple[Tuple[float, str], ...] = (
    (200, "0-200"),
    (400, "200-400"),
    (600, "400-600"),
    (800, "600-800"),
    (1000, "800-1000"),
)
MS_OVERFLOW = "over1000"

S_BUCKETS: Tuple[Tuple[float, str], ...] = (
    (1.0, "0-1"),
    (2.0, "1-2"),
    (3.0, "2-3"),
    (4.0, "3-4"),
    (5.0, "4-5"),
)
S_OVERFLOW = "over5"

HIT_PREFIXES = ("TCP_HIT", "TCP_MEM_HIT")
MISS_PREFIXES = ("TCP_MISS",)


def split_preserving_quotes(line: str) -> List[str]:
    """Split on whitespace; double-quoted spans stay whole, quotes are dropped"""
    fields: List[str] = []
    current: List[str] = []
    in_quote = False

    for ch in line:
        if ch == '"':
            in_quote = not in_quote
            continue
        if ch.isspace() and not in_quote:
            if current:
                fields.append("".join(current))
                current = []
            continue
        current.append(ch)

    if current:
        fields.append("".join(current))
    return fields


def categorize_http_code(code: str) -> str:
    if not code:
        return "unknown"
    first = code[0]
    if first in "2345":
        return f"{first}xx"
    return "other"


def _bucket(value: float, buckets: Tuple[Tuple[float, str], ...], overflow: str) -> str:
    for upper, label in buckets:
        if value <= upper:
            return label
    return overflow


def ms_bucket(duration_seconds: float) -> str:
    return _bucket(duration_seconds * 1000.0, MS_BUCKETS, MS_OVERFLOW)


def s_bucket(duration_seconds: float) -> str:
    return _bucket(duration_seconds, S_BUCKETS, S_OVERFLOW)


def is_cache_hit(cache_status: str) -> bool:
    return cache_status.startswith(HIT_PREFIXES)


def is_cache_miss(cache_status: str) -> bool:
    return cache_status.startswith(MISS_PREFIXES)


class LineParser:
    """
    Parses raw Squid access log lines using a LogFormatSpec.
    Responsibilities:
    - Tokenize lines (quote-aware)
    - Extract configured fields by position
    - Degrade unparsable numbers to zero instead of dropping the line
    """

    def __init__(self, format_spec: LogFormatSpec):
        self.format = format_spec
        self._min_fields = format_spec.max_index + 1

    def parse_line(self, line: str) -> ParsedEntry:
        """Parse one line, raising ParseError if it is malformed"""
        fields = split_preserving_quotes(line)
        if not fields:
            raise ParseError("empty line")
        if len(fields) < self._min_fields:
            raise ParseError(
                f"expected at least {self._min_fields} fields, got {len(fields)}", line
            )

        fmt = self.format
        result_code = fmt.get_field(fields, "result_code")
        parts = result_code.split("/")
        if len(parts) != 2:
            raise ParseError(f"invalid result code {result_code!r}", line)
        cache_status, http_code = parts

        duration = safe_float(fmt.get_field(fields, "duration")) or 0.0
        if not math.isfinite(duration):
            duration = 0.0
        if fmt.duration_unit == "ms":
            duration_seconds = duration / 1000.0
        else:
            duration_seconds = duration

        method = fmt.get_field(fields, "method")
        host_port = classify_url(method, fmt.get_field(fields, "url"))
        host, port = host_port if host_port else (None, None)

        return ParsedEntry(
            cache_status=cache_status,
            http_code=http_code,
            category=categorize_http_code(http_code),
            bytes=safe_int(fmt.get_field(fields, "bytes")) or 0,
            host=host,
            port=port,
            duration_seconds=duration_seconds,
            method=method,
            timestamp=parse_log_timestamp(fmt.get_field(fields, "timestamp"), fmt.timestamp_format),
        )
