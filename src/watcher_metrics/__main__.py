"""
Run the collection daemon: ``python -m watcher_metrics [--config PATH]``.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from watcher_metrics.config import load_config
from watcher_metrics.errors import UnavailableError
from watcher_metrics.logging import get_logger, setup_logging
from watcher_metrics.metrics.collectors import build_collectors
from watcher_metrics.metrics.daemon import MetricsDaemon

logger = get_logger(__name__)


async def _serve(daemon: MetricsDaemon) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, daemon.request_stop)
    await daemon.run()


def main(argv: list[str] | None = None) -> int:
    config = load_config(cli_args=argv)
    setup_logging(config.logging)

    daemon = MetricsDaemon(build_collectors(config), config=config)
    try:
        asyncio.run(_serve(daemon))
    except UnavailableError as e:
        logger.error(e.message, extra=e.details)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
