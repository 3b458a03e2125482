"""
Data Models (DTOs - Data Transfer Objects)

This module contains all dataclass definitions used throughout the exporter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Pattern, Tuple


@dataclass
class Position:
    """Persisted read position in the access log"""
    filename: str
    offset: int
    inode: int
    updated_at: datetime


@dataclass(frozen=True)
class LogFormatSpec:
    """Maps semantic field names to positional indices in a log line"""
    type: str
    fields: Dict[str, int]
    duration_unit: str = "ms"
    timestamp_format: Optional[str] = None

    @property
    def max_index(self) -> int:
        return max(self.fields.values()) if self.fields else -1

    def get_field(self, tokens: List[str], name: str) -> str:
        """Return the token for a field, or "" if unmapped or out of range"""
        idx = self.fields.get(name)
        if idx is None or idx >= len(tokens):
            return ""
        return tokens[idx]


@dataclass
class ParsedEntry:
    """One successfully parsed access log line"""
    cache_status: str
    http_code: str
    category: str
    bytes: int
    host: Optional[str]
    port: Optional[str]
    duration_seconds: float
    method: str
    timestamp: Optional[float] = None


@dataclass
class DomainAccumulator:
    """Per (host, port) statistics for one ingestion pass"""
    requests: int = 0
    # the access log carries only the reply size sent to the client, so
    # byte series are exported with direction="out" alone
    bytes_out: int = 0
    responses_by_code: Dict[str, Dict[str, int]] = field(default_factory=dict)
    responses_by_category: Dict[str, int] = field(default_factory=dict)
    durations: List[float] = field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0

    def add_response(self, code: str, category: str, count: int = 1) -> None:
        by_cat = self.responses_by_code.setdefault(code, {})
        by_cat[category] = by_cat.get(category, 0) + count
        self.responses_by_category[category] = self.responses_by_category.get(category, 0) + count

    def merge(self, other: "DomainAccumulator") -> None:
        """Fold another domain's statistics into this one"""
        self.requests += other.requests
        self.bytes_out += other.bytes_out
        for code, categories in other.responses_by_code.items():
            for category, count in categories.items():
                by_cat = self.responses_by_code.setdefault(code, {})
                by_cat[category] = by_cat.get(category, 0) + count
        for category, count in other.responses_by_category.items():
            self.responses_by_category[category] = self.responses_by_category.get(category, 0) + count
        self.durations.extend(other.durations)
        self.cache_hits += other.cache_hits
        self.cache_misses += other.cache_misses

    @property
    def avg_duration(self) -> float:
        return (sum(self.durations) / len(self.durations)) if self.durations else 0.0

    @property
    def cache_hit_ratio(self) -> Optional[float]:
        total = self.cache_hits + self.cache_misses
        return (self.cache_hits / total) if total else None


@dataclass
class RunAccumulator:
    """Everything observed during one ingestion pass; never persisted"""
    connections: int = 0
    duration_buckets: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: {"ms": {}, "s": {}}
    )
    cache_status_counts: Dict[str, int] = field(default_factory=dict)
    http_code_counts: Dict[str, Dict[str, int]] = field(default_factory=dict)
    domain_data: Dict[str, Dict[str, DomainAccumulator]] = field(default_factory=dict)
    # (host, port) -> labels of the matching monitored rule, None when unmonitored
    domain_rules: Dict[Tuple[str, str], Optional[Dict[str, str]]] = field(default_factory=dict)
    lines_parsed: int = 0
    lines_skipped: int = 0
    last_timestamp: Optional[float] = None

    def domain(self, host: str, port: str) -> DomainAccumulator:
        ports = self.domain_data.setdefault(host, {})
        data = ports.get(port)
        if data is None:
            data = DomainAccumulator()
            ports[port] = data
        return data

    @property
    def http_category_counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for categories in self.http_code_counts.values():
            for category, count in categories.items():
                out[category] = out.get(category, 0) + count
        return out


@dataclass
class MonitoredDomainRule:
    """Exact host (optionally host:port) selected for extended tracking"""
    host: str
    port: str = ""
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class DomainPattern:
    """Wildcard host pattern, compiled once at configuration load"""
    pattern: str
    labels: Dict[str, str] = field(default_factory=dict)
    matcher: Optional[Pattern[str]] = None

    def __post_init__(self) -> None:
        if self.matcher is None:
            regex = "^" + re.escape(self.pattern.lower()).replace(r"\*", ".*") + "$"
            self.matcher = re.compile(regex)

    def matches(self, host: str) -> bool:
        return bool(self.matcher.match(host))


@dataclass
class FileStat:
    """Access log file status"""
    exists: bool
    path: str
    size_bytes: int
    inode: int


@dataclass
class RunResult:
    """Outcome of one ingestion pass"""
    filename: str
    start_offset: int
    end_offset: int
    inode: int
    lines_parsed: int
    lines_skipped: int
    reset_reason: Optional[str] = None
    finished_at: Optional[datetime] = None
