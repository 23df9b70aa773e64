"""TaskWorker - command line entry point.

Poll for tasks with handlers from one or more modules:
    python -m taskworker --handlers myapp.handlers

Each module must define ``register_all(registry)``. Server address and
thread budgets come from TASKWORKER_* environment variables unless given
on the command line.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from .client.http import HttpTaskClient
from .config import load_config
from .core.registry import WorkerRegistry
from .exceptions import ConfigurationError


def setup_logging(level: str = "INFO"):
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # APScheduler logs every job run at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def wait_for_shutdown_signal():
    """Block until SIGINT or SIGTERM is received."""
    logger = logging.getLogger(__name__)
    stop = threading.Event()

    def _request_stop(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down...")
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    while not stop.wait(1.0):
        pass


def main(argv=None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="TaskWorker - poll and execute workflow tasks")
    parser.add_argument(
        "--handlers",
        nargs="+",
        required=True,
        help="Modules exposing register_all(registry)",
    )
    parser.add_argument(
        "--server-url",
        default=None,
        help="Server API root (default: TASKWORKER_SERVER_URL or http://localhost:8080/api)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: TASKWORKER_LOG_LEVEL or INFO)",
    )

    args = parser.parse_args(argv)

    options = {}
    if args.server_url:
        options["server_url"] = args.server_url
    if args.log_level:
        options["log_level"] = args.log_level

    try:
        config = load_config(**options)
    except ConfigurationError as e:
        print(e, file=sys.stderr)
        return 2

    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    registry = WorkerRegistry()
    for module_name in args.handlers:
        try:
            registry.load_module(module_name)
        except (ImportError, ConfigurationError) as e:
            logger.error(f"Failed to load handlers from {module_name}: {e}")
            return 2

    if not len(registry):
        logger.warning("No handlers registered. Define register_all(registry) in your module.")
        logger.info("Example:")
        logger.info("  def register_all(registry):")
        logger.info("      registry.register(MyHandler(), thread_count=2)")
        return 1

    for reg in registry.get_all_registrations():
        logger.info(f"  {reg.task_type} -> {reg.handler!r}")

    client = HttpTaskClient(config.server_url, timeout=config.request_timeout_seconds)
    try:
        host = registry.build_host(client, config)
    except ConfigurationError as e:
        logger.error(str(e))
        client.close()
        return 2

    host.init()
    logger.info(f"--- Polling {len(host.handlers)} task type(s) at {config.server_url} ---")
    try:
        wait_for_shutdown_signal()
    finally:
        drained = host.shutdown()
        client.close()
    return 0 if drained else 3


if __name__ == "__main__":
    sys.exit(main())
