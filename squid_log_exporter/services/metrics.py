"""
Prometheus metrics for the exporter.

Traffic counters are driven through the counter-delta engine from absolute
totals; per-run latency figures are gauges. Everything lives on one
registry owned by an ExporterMetrics instance.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Mapping, Optional, Sequence

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from squid_log_exporter.models.data_models import RunResult
from squid_log_exporter.services.counters import CounterDeltaEngine, metric_key

# counters (exposed with a _total suffix)
CONNECTIONS = "squid_connections"
DURATION_MS = "squid_request_duration_milliseconds"
DURATION_S = "squid_request_duration_seconds"
CACHE_STATUS = "squid_cache_status"
HTTP_RESPONSES = "squid_http_responses"
HTTP_BY_CATEGORY = "squid_http_responses_by_category"
ALL_REQUESTS = "squid_all_domains_requests"
ALL_HTTP = "squid_all_domains_http_responses"
ALL_BYTES = "squid_all_domains_bytes"
MON_REQUESTS = "squid_monitored_domains_requests"
MON_HTTP = "squid_monitored_domains_http_responses"
MON_BYTES = "squid_monitored_domains_bytes"

# gauges
MON_AVG = "squid_monitored_domains_duration_seconds_avg"
MON_P50 = "squid_monitored_domains_duration_seconds_p50"
MON_P90 = "squid_monitored_domains_duration_seconds_p90"
MON_P95 = "squid_monitored_domains_duration_seconds_p95"
MON_P99 = "squid_monitored_domains_duration_seconds_p99"
MON_CACHE_RATIO = "squid_monitored_domains_cache_hit_ratio"

PERCENTILE_GAUGES = ((0.50, MON_P50), (0.90, MON_P90), (0.95, MON_P95), (0.99, MON_P99))


class ExporterMetrics:
    """Metric definitions plus the delta engine that feeds the counters"""

    def __init__(
        self,
        custom_label_keys: Sequence[str] = (),
        registry: Optional[CollectorRegistry] = None,
    ):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.custom_label_keys = list(custom_label_keys)
        self.engine = CounterDeltaEngine()
        # held by writers for one run's updates and by the exposition path
        self.lock = threading.RLock()

        r = self.registry
        custom = self.custom_label_keys

        self.counters: Dict[str, Counter] = {
            CONNECTIONS: Counter(CONNECTIONS, "Total number of connections", registry=r),
            DURATION_MS: Counter(
                DURATION_MS,
                "Number of requests by duration interval in milliseconds",
                labelnames=("interval",),
                registry=r,
            ),
            DURATION_S: Counter(
                DURATION_S,
                "Number of requests by duration interval in seconds",
                labelnames=("interval",),
                registry=r,
            ),
            CACHE_STATUS: Counter(
                CACHE_STATUS,
                "Total number of requests by cache status",
                labelnames=("status",),
                registry=r,
            ),
            HTTP_RESPONSES: Counter(
                HTTP_RESPONSES,
                "Total number of HTTP responses by status code and category",
                labelnames=("code", "category"),
                registry=r,
            ),
            HTTP_BY_CATEGORY: Counter(
                HTTP_BY_CATEGORY,
                "Total number of HTTP responses by status code category",
                labelnames=("category",),
                registry=r,
            ),
            ALL_REQUESTS: Counter(
                ALL_REQUESTS,
                "Total requests for all domains (basic tracking)",
                labelnames=("host", "port"),
                registry=r,
            ),
            ALL_HTTP: Counter(
                ALL_HTTP,
                "HTTP responses for all domains by category",
                labelnames=("host", "port", "category"),
                registry=r,
            ),
            ALL_BYTES: Counter(
                ALL_BYTES,
                "Total bytes transferred for all domains",
                labelnames=("host", "port", "direction"),
                registry=r,
            ),
            MON_REQUESTS: Counter(
                MON_REQUESTS,
                "Total requests for monitored domains (extended tracking)",
                labelnames=("host", "port", *custom),
                registry=r,
            ),
            MON_HTTP: Counter(
                MON_HTTP,
                "HTTP responses for monitored domains with detailed breakdown",
                labelnames=("host", "port", "code", "category", *custom),
                registry=r,
            ),
            MON_BYTES: Counter(
                MON_BYTES,
                "Bytes transferred for monitored domains",
                labelnames=("host", "port", "direction", *custom),
                registry=r,
            ),
        }

        mon_labels = ("host", "port", *custom)
        self.gauges: Dict[str, Gauge] = {
            MON_AVG: Gauge(MON_AVG, "Average request duration for monitored domains",
                           labelnames=mon_labels, registry=r),
            MON_P50: Gauge(MON_P50, "50th percentile (median) request duration for monitored domains",
                           labelnames=mon_labels, registry=r),
            MON_P90: Gauge(MON_P90, "90th percentile request duration for monitored domains",
                           labelnames=mon_labels, registry=r),
            MON_P95: Gauge(MON_P95, "95th percentile request duration for monitored domains",
                           labelnames=mon_labels, registry=r),
            MON_P99: Gauge(MON_P99, "99th percentile request duration for monitored domains",
                           labelnames=mon_labels, registry=r),
            MON_CACHE_RATIO: Gauge(MON_CACHE_RATIO, "Cache hit ratio for monitored domains",
                                   labelnames=mon_labels, registry=r),
        }

        # exporter self-observation
        self.runs_total = Counter(
            "squid_exporter_runs", "Log parsing runs by result", labelnames=("result",), registry=r
        )
        self.run_duration = Histogram(
            "squid_exporter_run_duration_seconds",
            "Time spent in one log parsing run",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
            registry=r,
        )
        self.lines_parsed = Counter(
            "squid_exporter_lines_parsed", "Access log lines parsed", registry=r
        )
        self.lines_skipped = Counter(
            "squid_exporter_lines_skipped", "Malformed access log lines skipped", registry=r
        )
        self.log_resets = Counter(
            "squid_exporter_log_resets",
            "Times the read position was reset to the start of the log",
            labelnames=("reason",),
            registry=r,
        )
        self.position_save_errors = Counter(
            "squid_exporter_position_save_errors", "Failed position file writes", registry=r
        )
        self.log_position = Gauge(
            "squid_exporter_log_position_bytes", "Byte offset reached in the access log", registry=r
        )
        self.tracked_domains = Gauge(
            "squid_exporter_tracked_domains",
            "Domains tracked individually in the all-domains series",
            registry=r,
        )
        self.last_run = Gauge(
            "squid_exporter_last_run_timestamp_seconds", "Unix time of the last run", registry=r
        )
        self.last_success = Gauge(
            "squid_exporter_last_success_timestamp_seconds",
            "Unix time of the last successful run",
            registry=r,
        )
        self.last_log_timestamp = Gauge(
            "squid_exporter_last_log_timestamp_seconds",
            "Timestamp of the newest access log entry seen",
            registry=r,
        )

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Hold the metrics lock while applying one run's updates"""
        with self.lock:
            yield

    def apply_counter(self, name: str, labels: Mapping[str, str], absolute: float) -> float:
        """Move a counter up to an absolute total; returns the delta applied"""
        counter = self.counters[name]
        child = counter.labels(**labels) if labels else counter
        return self.engine.apply_delta(metric_key(name, labels), absolute, child)

    def set_gauge(self, name: str, labels: Mapping[str, str], value: float) -> None:
        self.gauges[name].labels(**labels).set(value)

    def monitored_labels(
        self, host: str, port: str, custom: Mapping[str, str], **extra: str
    ) -> Dict[str, str]:
        """Label set for a monitored-domain series; unset custom keys export as ''"""
        labels = {"host": host, "port": port, **extra}
        for key in self.custom_label_keys:
            labels[key] = custom.get(key, "")
        return labels

    def record_run(self, result: Optional[RunResult], elapsed: float) -> None:
        now = time.time()
        self.run_duration.observe(elapsed)
        self.last_run.set(now)
        if result is None:
            self.runs_total.labels(result="failure").inc()
            return
        self.runs_total.labels(result="success").inc()
        self.last_success.set(now)
        self.lines_parsed.inc(result.lines_parsed)
        self.lines_skipped.inc(result.lines_skipped)
        self.log_position.set(result.end_offset)
        if result.reset_reason:
            self.log_resets.labels(reason=result.reset_reason).inc()

    def render(self) -> bytes:
        """Prometheus text exposition of the current snapshot"""
        with self.lock:
            return generate_latest(self.registry)
