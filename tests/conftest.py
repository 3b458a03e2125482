"""Shared test fixtures for all test modules."""

from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
from prometheus_client import CollectorRegistry

from squid_log_exporter.config import LOG_FORMAT_PRESETS, ExporterConfig, Settings
from squid_log_exporter.main import build_aggregator
from squid_log_exporter.models.data_models import DomainPattern, MonitoredDomainRule
from squid_log_exporter.services.aggregator import RunAggregator


def native_line(
    url: str = "http://example.com/",
    *,
    result: str = "TCP_MISS/200",
    duration_ms: int = 150,
    size: int = 1024,
    method: str = "GET",
    ts: str = "1700000000.000",
) -> str:
    """Build one access log line in Squid's native format."""
    return f"{ts} {duration_ms} 10.0.0.1 {result} {size} {method} {url} - HIER_DIRECT/1.2.3.4 text/html"


@pytest.fixture
def log_path(tmp_path: Path) -> Path:
    """Provide an empty access log file."""
    path = tmp_path / "access.log"
    path.write_text("")
    return path


@pytest.fixture
def position_path(tmp_path: Path) -> Path:
    """Provide a position file location inside a not-yet-created directory."""
    return tmp_path / "state" / "position.json"


@pytest.fixture
def append_lines(log_path: Path) -> Callable[[List[str]], None]:
    """Append complete lines to the access log."""

    def _append(lines: List[str]) -> None:
        with open(log_path, "a", encoding="utf-8") as fh:
            for line in lines:
                fh.write(line + "\n")

    return _append


@pytest.fixture
def settings(log_path: Path, position_path: Path) -> Settings:
    return Settings(
        log_file=str(log_path),
        position_file=str(position_path),
        config_file=str(log_path.parent / "missing.yaml"),
        interval=3600,
        retry_attempts=1,
        retry_delay=0,
    )


@pytest.fixture
def make_aggregator(settings: Settings) -> Callable[..., RunAggregator]:
    """Factory fixture building an aggregator on its own registry.

    Keyword arguments override ExporterConfig fields; ``monitored`` is a
    list of (host, port, labels) tuples and ``patterns`` a list of
    (pattern, labels) tuples.
    """

    def _make(
        monitored: Optional[List[tuple]] = None,
        patterns: Optional[List[tuple]] = None,
        settings_overrides: Optional[Dict[str, object]] = None,
        **config_fields: object,
    ) -> RunAggregator:
        config = ExporterConfig(
            log_format=LOG_FORMAT_PRESETS["squid_native"],
            monitored_domains=[
                MonitoredDomainRule(host=h, port=p, labels=dict(lbl)) for h, p, lbl in (monitored or [])
            ],
            domain_patterns=[DomainPattern(pattern=p, labels=dict(lbl)) for p, lbl in (patterns or [])],
            **config_fields,
        )
        s = settings.with_overrides(**(settings_overrides or {}))
        return build_aggregator(s, config, registry=CollectorRegistry())

    return _make


def sample(aggregator: RunAggregator, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
    """Read one exported sample value from the aggregator's registry."""
    return aggregator.metrics.registry.get_sample_value(name, labels or {})
