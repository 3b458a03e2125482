"""
Configuration

Process settings come from environment variables (overridable on the
command line); log format and domain rules come from a YAML file.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import yaml

from squid_log_exporter.models.data_models import DomainPattern, LogFormatSpec, MonitoredDomainRule
from squid_log_exporter.models.errors import ConfigError

logger = logging.getLogger("squid_log_exporter.config")

VERSION = "2.0.0"

DEFAULT_MAX_DOMAINS = 10000

# ──────────────────────────────────────────────────────────────────────────────
# Process settings
# ──────────────────────────────────────────────────────────────────────────────


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name, "")
    return float(v) if v else default


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name, "")
    return int(v) if v else default


@dataclass
class Settings:
    listen_address: str = ":9448"
    metrics_path: str = "/metrics"
    log_file: str = "/var/log/squid/access.log"
    config_file: str = "/etc/squid-log-exporter/config.yaml"
    position_file: str = "/var/lib/squid-log-exporter/position.json"
    interval: float = 60.0
    output_path: Optional[str] = None
    retry_attempts: int = 3
    retry_delay: float = 1.0
    checkpoint_lines: int = 1000
    log_level: str = "info"

    @classmethod
    def from_env(cls) -> "Settings":
        d = cls()
        return cls(
            listen_address=os.getenv("SQUID_EXPORTER_LISTEN_ADDRESS", d.listen_address),
            metrics_path=os.getenv("SQUID_EXPORTER_METRICS_PATH", d.metrics_path),
            log_file=os.getenv("SQUID_EXPORTER_LOG_FILE", d.log_file),
            config_file=os.getenv("SQUID_EXPORTER_CONFIG", d.config_file),
            position_file=os.getenv("SQUID_EXPORTER_POSITION_FILE", d.position_file),
            interval=_env_float("SQUID_EXPORTER_INTERVAL", d.interval),
            output_path=os.getenv("SQUID_EXPORTER_OUTPUT") or None,
            retry_attempts=_env_int("SQUID_EXPORTER_RETRY_ATTEMPTS", d.retry_attempts),
            retry_delay=_env_float("SQUID_EXPORTER_RETRY_DELAY", d.retry_delay),
            checkpoint_lines=_env_int("SQUID_EXPORTER_CHECKPOINT_LINES", d.checkpoint_lines),
            log_level=os.getenv("SQUID_EXPORTER_LOG_LEVEL", d.log_level),
        )

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Copy with every non-None override applied"""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def listen_host_port(self) -> Tuple[str, int]:
        """Split ":9448" / "127.0.0.1:9448" into (host, port)"""
        host, sep, port = self.listen_address.rpartition(":")
        if not sep or not port.isdigit():
            raise ConfigError(f"invalid listen address: {self.listen_address!r}")
        return (host.strip("[]") or "0.0.0.0"), int(port)


# ──────────────────────────────────────────────────────────────────────────────
# Exporter configuration (YAML)
# ──────────────────────────────────────────────────────────────────────────────

REQUIRED_CUSTOM_FIELDS = ("timestamp", "duration", "result_code", "bytes", "method", "url")
DURATION_UNITS = ("ms", "s")
RESERVED_LABELS = ("host", "port", "code", "category", "direction")
_LABEL_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

_NATIVE_FIELDS = {
    "timestamp": 0,
    "duration": 1,
    "client_ip": 2,
    "result_code": 3,
    "bytes": 4,
    "method": 5,
    "url": 6,
    "rfc931": 7,
    "hierarchy": 8,
    "content_type": 9,
}

LOG_FORMAT_PRESETS: Dict[str, LogFormatSpec] = {
    "squid_native": LogFormatSpec(
        type="squid_native",
        fields=dict(_NATIVE_FIELDS),
        duration_unit="ms",
        timestamp_format="unix",
    ),
    "squid_combined": LogFormatSpec(
        type="squid_combined",
        fields={**_NATIVE_FIELDS, "referer": 10, "user_agent": 11},
        duration_unit="ms",
        timestamp_format="unix",
    ),
}


@dataclass
class ExporterConfig:
    track_all_domains: bool = True
    max_domains: int = DEFAULT_MAX_DOMAINS
    log_format: LogFormatSpec = field(default_factory=lambda: LOG_FORMAT_PRESETS["squid_native"])
    monitored_domains: List[MonitoredDomainRule] = field(default_factory=list)
    domain_patterns: List[DomainPattern] = field(default_factory=list)


def _as_mapping(value: Any, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{what} must be a mapping")
    return value


def _as_list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{what} must be a list")
    return value


def _parse_labels(raw: Any, what: str) -> Dict[str, str]:
    labels = _as_mapping(raw, f"{what} labels")
    out: Dict[str, str] = {}
    for key, value in labels.items():
        key = str(key)
        if not _LABEL_RE.match(key) or key.startswith("__"):
            raise ConfigError(f"{what}: invalid label name {key!r}")
        if key in RESERVED_LABELS:
            raise ConfigError(f"{what}: label name {key!r} is reserved")
        out[key] = "" if value is None else str(value)
    return out


def build_log_format(raw: Dict[str, Any]) -> LogFormatSpec:
    """Resolve a log_format section against the presets"""
    fmt_type = str(raw.get("type") or "")
    fields_raw = _as_mapping(raw.get("fields"), "log_format.fields")
    ts_format = raw.get("timestamp_format") or None
    unit = raw.get("duration_unit") or None

    fields: Dict[str, int] = {}
    for name, idx in fields_raw.items():
        if isinstance(idx, bool) or not isinstance(idx, int) or idx < 0:
            raise ConfigError(f"log_format.fields.{name} must be a non-negative integer")
        fields[str(name)] = idx

    if not fmt_type:
        fmt_type = "squid_native"

    if fmt_type in LOG_FORMAT_PRESETS:
        preset = LOG_FORMAT_PRESETS[fmt_type]
        log_format = LogFormatSpec(
            type=fmt_type,
            fields=fields or dict(preset.fields),
            duration_unit=unit or preset.duration_unit,
            timestamp_format=ts_format or preset.timestamp_format,
        )
    elif fmt_type == "custom":
        if not fields:
            raise ConfigError("custom log format requires 'fields' to be defined")
        missing = [f for f in REQUIRED_CUSTOM_FIELDS if f not in fields]
        if missing:
            raise ConfigError(f"custom log format missing required field(s): {', '.join(missing)}")
        log_format = LogFormatSpec(
            type=fmt_type,
            fields=fields,
            duration_unit=unit or "ms",
            timestamp_format=ts_format,
        )
    else:
        raise ConfigError(
            f"unknown log format type: {fmt_type} (valid: squid_native, squid_combined, custom)"
        )

    if log_format.duration_unit not in DURATION_UNITS:
        raise ConfigError(f"invalid duration_unit {log_format.duration_unit!r} (valid: ms, s)")
    return log_format


def build_config(raw: Dict[str, Any]) -> ExporterConfig:
    """Validate a decoded YAML document into an ExporterConfig"""
    raw = _as_mapping(raw, "configuration")
    glob = _as_mapping(raw.get("global"), "global")

    track_all = glob.get("track_all_domains")
    max_domains = glob.get("max_domains")
    if max_domains is None or max_domains == 0:
        max_domains = DEFAULT_MAX_DOMAINS
    if isinstance(max_domains, bool) or not isinstance(max_domains, int) or max_domains < 0:
        raise ConfigError("global.max_domains must be a non-negative integer")

    monitored: List[MonitoredDomainRule] = []
    for i, item in enumerate(_as_list(raw.get("monitored_domains"), "monitored_domains")):
        item = _as_mapping(item, f"monitored_domains[{i}]")
        host = str(item.get("host") or "").strip().lower()
        if not host:
            raise ConfigError(f"monitored_domains[{i}] requires a host")
        port = item.get("port")
        monitored.append(
            MonitoredDomainRule(
                host=host,
                port="" if port is None else str(port).strip(),
                labels=_parse_labels(item.get("labels"), f"monitored_domains[{i}]"),
            )
        )

    patterns: List[DomainPattern] = []
    for i, item in enumerate(_as_list(raw.get("domain_patterns"), "domain_patterns")):
        item = _as_mapping(item, f"domain_patterns[{i}]")
        pattern = item.get("pattern")
        if not isinstance(pattern, str) or not pattern.strip():
            raise ConfigError(f"domain_patterns[{i}] requires a non-empty pattern")
        patterns.append(
            DomainPattern(
                pattern=pattern.strip(),
                labels=_parse_labels(item.get("labels"), f"domain_patterns[{i}]"),
            )
        )

    return ExporterConfig(
        track_all_domains=True if track_all is None else bool(track_all),
        max_domains=max_domains,
        log_format=build_log_format(_as_mapping(raw.get("log_format"), "log_format")),
        monitored_domains=monitored,
        domain_patterns=patterns,
    )


def load_config(path: str) -> ExporterConfig:
    """Load the YAML config; a missing file yields defaults"""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except FileNotFoundError:
        logger.warning("config file %s not found, using defaults", path)
        return ExporterConfig()
    except OSError as e:
        raise ConfigError(f"failed to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file {path}: {e}") from e

    return build_config(raw or {})
