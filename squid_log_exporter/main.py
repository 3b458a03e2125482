from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Response
from fastapi.responses import HTMLResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry

from squid_log_exporter.config import VERSION, ExporterConfig, Settings
from squid_log_exporter.services.aggregator import RunAggregator
from squid_log_exporter.services.domains import DomainClassifier
from squid_log_exporter.services.metrics import ExporterMetrics
from squid_log_exporter.services.parser import LineParser
from squid_log_exporter.services.position import PositionTracker
from squid_log_exporter.services.scheduler import PeriodicRunner
from squid_log_exporter.services.storage import LogStore

logger = logging.getLogger("squid_log_exporter.app")

API_PREFIX = "/api"

# ──────────────────────────────────────────────────────────────────────────────
# Wiring
# ──────────────────────────────────────────────────────────────────────────────


def build_aggregator(
    settings: Settings,
    config: ExporterConfig,
    registry: Optional[CollectorRegistry] = None,
) -> RunAggregator:
    """Assemble the aggregator and everything it owns from configuration"""
    classifier = DomainClassifier(config.monitored_domains, config.domain_patterns)
    return RunAggregator(
        LogStore(settings.log_file),
        PositionTracker(settings.position_file),
        LineParser(config.log_format),
        classifier,
        ExporterMetrics(classifier.custom_label_keys, registry=registry),
        track_all_domains=config.track_all_domains,
        max_domains=config.max_domains,
        checkpoint_lines=settings.checkpoint_lines,
        retry_attempts=settings.retry_attempts,
        retry_delay=settings.retry_delay,
        output_path=settings.output_path,
    )


# ──────────────────────────────────────────────────────────────────────────────
# App
# ──────────────────────────────────────────────────────────────────────────────


def create_app(
    settings: Optional[Settings] = None,
    config: Optional[ExporterConfig] = None,
    aggregator: Optional[RunAggregator] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    config = config or ExporterConfig()
    aggregator = aggregator or build_aggregator(settings, config)
    runner = PeriodicRunner(aggregator.run_safely, settings.interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("squid log exporter %s started (log file %s, interval %ss)",
                    VERSION, settings.log_file, settings.interval)
        runner.start()
        try:
            yield
        finally:
            await runner.stop()
            logger.info("shutdown complete")

    app = FastAPI(title="Squid Log Exporter", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.aggregator = aggregator
    app.state.runner = runner

    def metrics() -> Response:
        return Response(aggregator.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route(settings.metrics_path, metrics, methods=["GET"], include_in_schema=False)

    @app.get("/", response_class=HTMLResponse, include_in_schema=False)
    def index() -> str:
        return (
            "<html>\n"
            "<head><title>Squid Log Exporter</title></head>\n"
            "<body>\n"
            "<h1>Squid Log Exporter</h1>\n"
            f"<p><a href='{settings.metrics_path}'>Metrics</a></p>\n"
            f"<p>Version: {VERSION}</p>\n"
            "</body>\n"
            "</html>"
        )

    @app.get(f"{API_PREFIX}/health")
    def health() -> Dict[str, Any]:
        stat = aggregator.store.stat()
        position = aggregator.positions.current()
        last = aggregator.last_result
        healthy = stat.exists and aggregator.last_error is None
        return {
            "status": "ok" if healthy else "degraded",
            "version": VERSION,
            "last_error": aggregator.last_error,
            "scheduler_running": runner.running,
            "log_file": {
                "exists": stat.exists,
                "path": stat.path,
                "size_bytes": stat.size_bytes,
                "inode": stat.inode,
            },
            "position": (
                {
                    "offset": position.offset,
                    "inode": position.inode,
                    "updated_at": position.updated_at.isoformat(),
                }
                if position
                else None
            ),
            "last_run": (
                {
                    "finished_at": last.finished_at.isoformat() if last.finished_at else None,
                    "start_offset": last.start_offset,
                    "end_offset": last.end_offset,
                    "lines_parsed": last.lines_parsed,
                    "lines_skipped": last.lines_skipped,
                    "reset_reason": last.reset_reason,
                }
                if last
                else None
            ),
            "tracked_domains": len(aggregator.cardinality),
        }

    return app
