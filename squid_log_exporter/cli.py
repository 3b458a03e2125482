import argparse
import logging
import sys
from typing import List, Optional

import uvicorn

from squid_log_exporter.config import VERSION, Settings, load_config
from squid_log_exporter.main import create_app
from squid_log_exporter.models.errors import ConfigError

logger = logging.getLogger("squid_log_exporter")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="squid-log-exporter",
        description="Tail a Squid access log and export Prometheus metrics.",
    )
    ap.add_argument("--listen-address", help="address to listen on (default :9448)")
    ap.add_argument("--metrics-path", help="path for the metrics endpoint (default /metrics)")
    ap.add_argument("--log-file", help="Squid access log to read")
    ap.add_argument("--config", dest="config_file", help="YAML configuration file")
    ap.add_argument("--position-file", help="where the read position is persisted")
    ap.add_argument("--interval", type=float, help="seconds between parsing runs (default 60)")
    ap.add_argument("--output", dest="output_path", help="also write metrics to this textfile")
    ap.add_argument("--retry-attempts", type=int, help="attempts for file operations (default 3)")
    ap.add_argument("--retry-delay", type=float, help="seconds between attempts (default 1)")
    ap.add_argument("--checkpoint-lines", type=int, help="save position every N lines (default 1000)")
    ap.add_argument("--log-level", choices=["debug", "info", "warning", "error"], help="log verbosity")
    ap.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env().with_overrides(**vars(args))
    except ValueError as e:
        print(f"invalid environment setting: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)

    try:
        host, port = settings.listen_host_port()
        config = load_config(settings.config_file)
    except ConfigError as e:
        logger.error("configuration error: %s", e)
        return 2

    logger.info(
        "log format %s (duration unit %s), track_all_domains=%s, max_domains=%d",
        config.log_format.type, config.log_format.duration_unit,
        config.track_all_domains, config.max_domains,
    )
    logger.info(
        "%d monitored domain(s), %d domain pattern(s)",
        len(config.monitored_domains), len(config.domain_patterns),
    )

    app = create_app(settings, config)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        timeout_graceful_shutdown=10,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
