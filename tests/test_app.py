"""Tests for the HTTP surface, scheduler and command line entry point."""

import asyncio
from pathlib import Path
from typing import Callable, List
from unittest import mock

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CONTENT_TYPE_LATEST

from conftest import native_line, sample
from squid_log_exporter import cli
from squid_log_exporter.config import VERSION, ExporterConfig, Settings
from squid_log_exporter.main import build_aggregator, create_app
from squid_log_exporter.services.scheduler import PeriodicRunner


@pytest.fixture
def app_parts(settings: Settings, make_aggregator: Callable):
    agg = make_aggregator()
    return create_app(settings, ExporterConfig(), aggregator=agg), agg


class TestRoutes:
    """Tests for the FastAPI routes."""

    def test_metrics(self, app_parts, append_lines: Callable) -> None:
        app, agg = app_parts
        append_lines([native_line()])

        with TestClient(app) as client:
            agg.run()
            resp = client.get("/metrics")

        assert resp.status_code == 200
        assert resp.headers["content-type"].split(";")[0] == CONTENT_TYPE_LATEST.split(";")[0]
        assert "squid_connections_total 1.0" in resp.text
        assert 'squid_all_domains_requests_total{host="example.com",port="80"} 1.0' in resp.text

    def test_custom_metrics_path(self, settings: Settings, make_aggregator: Callable) -> None:
        s = settings.with_overrides(metrics_path="/squid")
        app = create_app(s, ExporterConfig(), aggregator=make_aggregator())

        with TestClient(app) as client:
            assert client.get("/squid").status_code == 200
            assert client.get("/metrics").status_code == 404

    def test_index(self, app_parts) -> None:
        app, _ = app_parts

        with TestClient(app) as client:
            resp = client.get("/")

        assert resp.status_code == 200
        assert "text/html" in resp.headers["content-type"]
        assert "href='/metrics'" in resp.text
        assert VERSION in resp.text

    def test_health(self, app_parts, append_lines: Callable, log_path: Path) -> None:
        app, agg = app_parts
        append_lines([native_line()])

        with TestClient(app) as client:
            agg.run()
            body = client.get("/api/health").json()

        assert body["status"] == "ok"
        assert body["version"] == VERSION
        assert body["log_file"]["exists"] is True
        assert body["log_file"]["size_bytes"] == log_path.stat().st_size
        assert body["position"]["offset"] == log_path.stat().st_size
        assert body["last_run"] is not None
        assert body["tracked_domains"] == 1

    def test_health_degraded_when_log_missing(self, app_parts, log_path: Path) -> None:
        app, agg = app_parts
        log_path.unlink()

        with TestClient(app) as client:
            agg.run_safely()
            body = client.get("/api/health").json()

        assert body["status"] == "degraded"
        assert body["log_file"]["exists"] is False
        assert body["last_error"].startswith("FileNotFoundError")

    def test_health_recovers_after_successful_run(
        self, app_parts, append_lines: Callable, log_path: Path
    ) -> None:
        app, agg = app_parts
        log_path.unlink()

        with TestClient(app) as client:
            agg.run_safely()
            append_lines([native_line()])
            agg.run()
            body = client.get("/api/health").json()

        assert body["status"] == "ok"
        assert body["last_error"] is None

    def test_shutdown_runs_final_pass(self, app_parts, append_lines: Callable, log_path: Path) -> None:
        app, agg = app_parts

        with TestClient(app):
            append_lines([native_line(), native_line()])

        assert sample(agg, "squid_connections_total") == 2
        assert agg.positions.load().offset == log_path.stat().st_size
        assert not app.state.runner.running

    def test_build_aggregator_uses_config(self, settings: Settings) -> None:
        config = ExporterConfig(max_domains=7, track_all_domains=False)

        agg = build_aggregator(settings, config)

        assert agg.cardinality.max_domains == 7
        assert agg.track_all_domains is False
        assert agg.store.file_path == settings.log_file


class TestPeriodicRunner:
    """Tests for the asyncio scheduling loop."""

    def test_runs_immediately_and_once_more_on_stop(self) -> None:
        calls: List[int] = []

        async def scenario() -> None:
            runner = PeriodicRunner(lambda: calls.append(1), interval=3600)
            runner.start()
            for _ in range(200):
                if calls:
                    break
                await asyncio.sleep(0.01)
            assert runner.running
            await runner.stop()
            assert not runner.running

        asyncio.run(scenario())

        assert len(calls) == 2

    def test_stop_without_final_run(self) -> None:
        calls: List[int] = []

        async def scenario() -> None:
            runner = PeriodicRunner(lambda: calls.append(1), interval=3600)
            await runner.stop(final_run=False)

        asyncio.run(scenario())

        assert calls == []

    def test_repeats_on_interval(self) -> None:
        calls: List[int] = []

        async def scenario() -> None:
            runner = PeriodicRunner(lambda: calls.append(1), interval=0.01)
            runner.start()
            for _ in range(200):
                if len(calls) >= 3:
                    break
                await asyncio.sleep(0.01)
            await runner.stop(final_run=False)

        asyncio.run(scenario())

        assert len(calls) >= 3


class TestCli:
    """Tests for the command line entry point."""

    def test_version(self, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit) as exc:
            cli.main(["--version"])

        assert exc.value.code == 0
        assert VERSION in capsys.readouterr().out

    def test_invalid_config_exits_2(self, tmp_path: Path) -> None:
        bad = tmp_path / "config.yaml"
        bad.write_text("log_format:\n  type: apache\n")

        with mock.patch("squid_log_exporter.cli.uvicorn.run") as run:
            assert cli.main(["--config", str(bad)]) == 2

        run.assert_not_called()

    def test_invalid_listen_address_exits_2(self, tmp_path: Path) -> None:
        with mock.patch("squid_log_exporter.cli.uvicorn.run") as run:
            code = cli.main(["--listen-address", "nope", "--config", str(tmp_path / "none.yaml")])

        assert code == 2
        run.assert_not_called()

    def test_serves_app(self, tmp_path: Path, log_path: Path) -> None:
        with mock.patch("squid_log_exporter.cli.uvicorn.run") as run:
            code = cli.main(
                [
                    "--listen-address", "127.0.0.1:9500",
                    "--log-file", str(log_path),
                    "--config", str(tmp_path / "none.yaml"),
                    "--position-file", str(tmp_path / "pos.json"),
                    "--interval", "5",
                ]
            )

        assert code == 0
        args, kwargs = run.call_args
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["port"] == 9500
        assert kwargs["timeout_graceful_shutdown"] == 10
        assert args[0].state.settings.interval == 5.0
        assert args[0].state.settings.log_file == str(log_path)
