"""
Outbox dispatch background worker.

Continuously polls the outbox table and runs order completion and
cancellation side effects.
"""
import asyncio
import signal
from typing import Any

import structlog

from checkout_payments.config import get_settings
from checkout_payments.container import build_container
from checkout_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox worker.

    Runs until SIGINT or SIGTERM, then finishes the current batch.
    """
    settings = get_settings()
    setup_logging(settings)

    logger.info("outbox_worker_starting")

    container = await build_container(settings)
    dispatcher = container.outbox

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_worker_shutdown_signal_received", signal=sig)
        dispatcher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await dispatcher.start()
    except Exception as e:
        logger.error("outbox_worker_error", error=str(e))
        raise
    finally:
        await container.aclose()
        logger.info("outbox_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
