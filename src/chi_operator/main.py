"""Main entry point for the ClickHouse installation operator."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime

from kubernetes_asyncio.config import ConfigException

from .config import Config, ConfigurationError, PolicySource
from .kube import StatefulSetCache, create_kube_clients
from .reconciler import Reconciler

# Attributes every LogRecord carries; anything else came in through extra=
_STANDARD_RECORD_KEYS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes_asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting ClickHouse installation operator",
        extra={
            "cluster": config.cluster_name,
            "namespace": config.namespace,
            "on_create_failure": config.policy.on_create_failure.value,
            "on_update_failure": config.policy.on_update_failure.value,
            "continue_on_failure": config.policy.continue_on_failure,
        },
    )

    try:
        clients = await create_kube_clients(os.environ.get("KUBECONFIG"))
    except ConfigException as e:
        logger.error("Failed to load Kubernetes configuration", extra={"error": str(e)})
        return 1

    cache = StatefulSetCache(clients.apps_api, config.namespace)
    reconciler = Reconciler(
        config,
        clients,
        policy_source=PolicySource(config.policy, config.policy_file),
        lister=cache,
    )

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()
        cache.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    cache_task = asyncio.create_task(cache.run())
    try:
        await reconciler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        cache.stop()
        cache_task.cancel()
        try:
            await cache_task
        except asyncio.CancelledError:
            pass
        await clients.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
