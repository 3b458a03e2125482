"""
RunAggregator Class - One ingestion pass over the access log

This module reads the bytes appended since the last run, folds the parsed
lines into per-run statistics and turns those into metric updates.
"""

import logging
import time
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from squid_log_exporter.models.data_models import (
    DomainAccumulator,
    ParsedEntry,
    Position,
    RunAccumulator,
    RunResult,
)
from squid_log_exporter.models.errors import ParseError
from squid_log_exporter.services import metrics as m
from squid_log_exporter.services.counters import CumulativeTotals, metric_key
from squid_log_exporter.services.domains import (
    OVERFLOW_HOST,
    OVERFLOW_PORT,
    Admission,
    CardinalityController,
    DomainClassifier,
    domain_key,
)
from squid_log_exporter.services.metrics import ExporterMetrics
from squid_log_exporter.services.parser import (
    LineParser,
    is_cache_hit,
    is_cache_miss,
    ms_bucket,
    s_bucket,
)
from squid_log_exporter.services.position import PositionTracker, resolve_start_offset
from squid_log_exporter.services.storage import LogStore
from squid_log_exporter.utils.helpers import atomic_write, percentile, with_retry

logger = logging.getLogger("squid_log_exporter.aggregator")


class RunAggregator:
    """
    Drives one ingestion pass.
    Responsibilities:
    - Resume from the persisted position (reset on rotation/truncation)
    - Parse and classify new lines into a RunAccumulator
    - Add the run's counts to process-lifetime totals and push them
      through the counter-delta engine
    - Checkpoint and persist the position
    """

    def __init__(
        self,
        log_store: LogStore,
        position_tracker: PositionTracker,
        line_parser: LineParser,
        classifier: DomainClassifier,
        exporter_metrics: ExporterMetrics,
        *,
        track_all_domains: bool = True,
        max_domains: int = 10000,
        checkpoint_lines: int = 1000,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        output_path: Optional[str] = None,
    ):
        self.store = log_store
        self.positions = position_tracker
        self.parser = line_parser
        self.classifier = classifier
        self.metrics = exporter_metrics
        self.track_all_domains = track_all_domains
        self.cardinality = CardinalityController(max_domains)
        self.totals = CumulativeTotals()
        self.checkpoint_lines = max(1, checkpoint_lines)
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.output_path = output_path
        self.last_result: Optional[RunResult] = None
        self.last_error: Optional[str] = None
        self._unsaved: Optional[Position] = None
        self._run_lock = threading.Lock()

    # ──────────────────────────────────────────────────────────────────────
    # Entry points
    # ──────────────────────────────────────────────────────────────────────

    def run(self) -> RunResult:
        """Run one pass; raises when the run fails (metrics stay untouched)"""
        with self._run_lock:
            started = time.monotonic()
            try:
                result = self._run_once()
            except Exception as e:
                self.metrics.record_run(None, time.monotonic() - started)
                self.last_error = f"{type(e).__name__}: {e}"
                raise
            self.metrics.record_run(result, time.monotonic() - started)
            self.last_result = result
            self.last_error = None
            return result

    def run_safely(self) -> Optional[RunResult]:
        """run() for the scheduler: a failed run is logged, not raised"""
        try:
            return self.run()
        except Exception:
            logger.exception("log parsing run failed; keeping previously exported metrics")
            return None

    # ──────────────────────────────────────────────────────────────────────
    # One pass
    # ──────────────────────────────────────────────────────────────────────

    def _run_once(self) -> RunResult:
        position = self.positions.load()
        if self._unsaved is not None:
            # the file on disk may not match what was actually counted
            logger.warning("resuming from in-memory position %d instead of %s",
                           self._unsaved.offset, self.positions.position_file)
            position = self._unsaved

        try:
            acc, start, end, inode, reset_reason = with_retry(
                lambda: self._scan(position),
                attempts=self.retry_attempts,
                delay=self.retry_delay,
                what=f"reading {self.store.file_path}",
            )
        except Exception:
            self._rewind(position)
            raise

        self._emit(acc)
        self._save_position(end, inode)
        if self.output_path:
            self._write_textfile()

        if acc.lines_skipped:
            logger.warning("skipped %d malformed line(s) in %s", acc.lines_skipped, self.store.file_path)
        logger.info(
            "parsed %d new line(s) from %s (offset %d -> %d)",
            acc.lines_parsed, self.store.file_path, start, end,
        )

        return RunResult(
            filename=self.store.file_path,
            start_offset=start,
            end_offset=end,
            inode=inode,
            lines_parsed=acc.lines_parsed,
            lines_skipped=acc.lines_skipped,
            reset_reason=reset_reason,
            finished_at=datetime.now(timezone.utc),
        )

    def _scan(
        self, position: Optional[Position]
    ) -> Tuple[RunAccumulator, int, int, int, Optional[str]]:
        acc = RunAccumulator()
        with self.store.open() as fh:
            inode, size = self.store.identify(fh)
            start, reset_reason = resolve_start_offset(position, inode, size)
            if reset_reason:
                logger.warning(
                    "log %s detected for %s (stored offset %d, inode %d -> %d), starting from beginning",
                    reset_reason, self.store.file_path, position.offset, position.inode, inode,
                )

            end = start
            lines_read = 0
            for line, end in self.store.read_lines(fh, start):
                lines_read += 1
                self._ingest_line(acc, line)
                if lines_read % self.checkpoint_lines == 0:
                    self._checkpoint(end, inode)

        return acc, start, end, inode, reset_reason

    def _ingest_line(self, acc: RunAccumulator, line: str) -> None:
        if not line.strip():
            return
        try:
            entry = self.parser.parse_line(line)
        except ParseError as e:
            acc.lines_skipped += 1
            logger.debug("skipping line: %s", e)
            return
        acc.lines_parsed += 1
        self.fold(acc, entry)

    def fold(self, acc: RunAccumulator, entry: ParsedEntry) -> None:
        """Add one parsed entry to the run's statistics"""
        acc.connections += 1
        for unit, bucket in (("ms", ms_bucket), ("s", s_bucket)):
            interval = bucket(entry.duration_seconds)
            acc.duration_buckets[unit][interval] = acc.duration_buckets[unit].get(interval, 0) + 1
        acc.cache_status_counts[entry.cache_status] = acc.cache_status_counts.get(entry.cache_status, 0) + 1
        by_cat = acc.http_code_counts.setdefault(entry.http_code, {})
        by_cat[entry.category] = by_cat.get(entry.category, 0) + 1

        if entry.timestamp is not None and (acc.last_timestamp is None or entry.timestamp > acc.last_timestamp):
            acc.last_timestamp = entry.timestamp

        if entry.host is None or entry.port is None:
            return

        hp = (entry.host, entry.port)
        if hp not in acc.domain_rules:
            monitored, labels = self.classifier.classify(entry.host, entry.port)
            acc.domain_rules[hp] = labels if monitored else None

        data = acc.domain(entry.host, entry.port)
        data.requests += 1
        data.bytes_out += entry.bytes
        data.durations.append(entry.duration_seconds)
        data.add_response(entry.http_code, entry.category)

        # hit/miss only feeds the monitored cache hit ratio
        if acc.domain_rules[hp] is not None:
            if is_cache_hit(entry.cache_status):
                data.cache_hits += 1
            elif is_cache_miss(entry.cache_status):
                data.cache_misses += 1

    # ──────────────────────────────────────────────────────────────────────
    # Metric emission
    # ──────────────────────────────────────────────────────────────────────

    def _count(self, name: str, labels: Dict[str, str], run_value: float) -> None:
        if run_value <= 0:
            return
        total = self.totals.add(metric_key(name, labels), run_value)
        self.metrics.apply_counter(name, labels, total)

    def _emit(self, acc: RunAccumulator) -> None:
        with self.metrics.batch():
            self._count(m.CONNECTIONS, {}, acc.connections)

            for interval, count in sorted(acc.duration_buckets["ms"].items()):
                self._count(m.DURATION_MS, {"interval": interval}, count)
            for interval, count in sorted(acc.duration_buckets["s"].items()):
                self._count(m.DURATION_S, {"interval": interval}, count)

            for status, count in sorted(acc.cache_status_counts.items()):
                self._count(m.CACHE_STATUS, {"status": status}, count)

            for code, categories in sorted(acc.http_code_counts.items()):
                for category, count in sorted(categories.items()):
                    self._count(m.HTTP_RESPONSES, {"code": code, "category": category}, count)
            for category, count in sorted(acc.http_category_counts.items()):
                self._count(m.HTTP_BY_CATEGORY, {"category": category}, count)

            other = DomainAccumulator()
            overflowed = 0
            for host in sorted(acc.domain_data):
                for port in sorted(acc.domain_data[host]):
                    data = acc.domain_data[host][port]

                    if self.track_all_domains:
                        if self.cardinality.admit(domain_key(host, port)) is Admission.INDIVIDUAL:
                            self._emit_all_domains(host, port, data)
                        else:
                            other.merge(data)
                            overflowed += 1

                    labels = acc.domain_rules.get((host, port))
                    if labels is not None:
                        self._emit_monitored(host, port, labels, data)

            if overflowed:
                self._emit_all_domains(OVERFLOW_HOST, OVERFLOW_PORT, other)
                logger.warning(
                    "%d domain(s) not tracked individually (max_domains=%d reached), aggregated to %s",
                    overflowed, self.cardinality.max_domains, OVERFLOW_HOST,
                )

            self.metrics.tracked_domains.set(len(self.cardinality))
            if acc.last_timestamp is not None:
                self.metrics.last_log_timestamp.set(acc.last_timestamp)

    def _emit_all_domains(self, host: str, port: str, data: DomainAccumulator) -> None:
        self._count(m.ALL_REQUESTS, {"host": host, "port": port}, data.requests)
        self._count(m.ALL_BYTES, {"host": host, "port": port, "direction": "out"}, data.bytes_out)
        for category, count in sorted(data.responses_by_category.items()):
            self._count(m.ALL_HTTP, {"host": host, "port": port, "category": category}, count)

    def _emit_monitored(
        self, host: str, port: str, custom: Dict[str, str], data: DomainAccumulator
    ) -> None:
        labels = self.metrics.monitored_labels
        self._count(m.MON_REQUESTS, labels(host, port, custom), data.requests)
        self._count(m.MON_BYTES, labels(host, port, custom, direction="out"), data.bytes_out)
        for code, categories in sorted(data.responses_by_code.items()):
            for category, count in sorted(categories.items()):
                self._count(m.MON_HTTP, labels(host, port, custom, code=code, category=category), count)

        base = labels(host, port, custom)
        self.metrics.set_gauge(m.MON_AVG, base, data.avg_duration)
        for p, name in m.PERCENTILE_GAUGES:
            self.metrics.set_gauge(name, base, percentile(data.durations, p))
        ratio = data.cache_hit_ratio
        if ratio is not None:
            self.metrics.set_gauge(m.MON_CACHE_RATIO, base, ratio)

    # ──────────────────────────────────────────────────────────────────────
    # Persistence
    # ──────────────────────────────────────────────────────────────────────

    def _checkpoint(self, offset: int, inode: int) -> None:
        try:
            self.positions.save(self.store.file_path, offset, inode)
        except OSError as e:
            self.metrics.position_save_errors.inc()
            logger.warning("failed to checkpoint position %d: %s", offset, e)

    def _rewind(self, position: Optional[Position]) -> None:
        """Undo checkpoints of a failed scan; its lines were never emitted"""
        self._unsaved = position or Position(
            filename=self.store.file_path,
            offset=0,
            inode=0,
            updated_at=datetime.now(timezone.utc),
        )
        try:
            self.positions.restore(position)
        except OSError as e:
            self.metrics.position_save_errors.inc()
            logger.warning("failed to restore position %d after failed run: %s",
                           self._unsaved.offset, e)

    def _save_position(self, offset: int, inode: int) -> None:
        try:
            with_retry(
                lambda: self.positions.save(self.store.file_path, offset, inode),
                attempts=self.retry_attempts,
                delay=self.retry_delay,
                what=f"saving position to {self.positions.position_file}",
            )
        except OSError:
            self.metrics.position_save_errors.inc()
            self._unsaved = Position(
                filename=self.store.file_path,
                offset=offset,
                inode=inode,
                updated_at=datetime.now(timezone.utc),
            )
            logger.error("position %d not persisted; keeping it in memory for the next run", offset)
            return
        self._unsaved = None

    def _write_textfile(self) -> None:
        try:
            with_retry(
                lambda: atomic_write(self.output_path, self.metrics.render()),
                attempts=self.retry_attempts,
                delay=self.retry_delay,
                what=f"writing metrics to {self.output_path}",
            )
        except OSError:
            logger.error("metrics textfile %s not updated", self.output_path)
