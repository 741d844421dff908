"""
Reconciliation backlog replayer.

Standalone worker that keeps delivering order status updates the callback
path could not hand to the order service. Run it when the API is started
with BACKLOG_REPLAY_ENABLED=false:

    python -m paymentservice.workers.backlog_replayer
"""
import asyncio
import signal

import structlog

from paymentservice.config import get_settings
from paymentservice.core.backlog import ReconciliationBacklog
from paymentservice.database.connection import Database
from paymentservice.integrations.order_service import OrderServiceClient
from paymentservice.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_backlog_replayer() -> None:
    """
    Start the backlog replayer worker.

    Runs continuously until SIGINT or SIGTERM.
    """
    settings = get_settings()
    setup_logging(settings)

    logger.info("backlog_replayer_worker_starting")

    database = Database.from_settings(settings)
    await database.init()
    order_service = OrderServiceClient(settings)
    replayer = ReconciliationBacklog(
        database.session_factory,
        order_service,
        batch_size=settings.backlog_batch_size,
        poll_interval_seconds=settings.backlog_poll_interval_seconds,
    )

    task = asyncio.ensure_future(replayer.start())

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("backlog_replayer_worker_shutdown_signal_received", signal=sig.name)
        replayer.stop()
        task.cancel()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error("backlog_replayer_worker_error", error=str(e))
        raise
    finally:
        await order_service.close()
        await database.close()
        logger.info("backlog_replayer_worker_stopped")


def main() -> None:
    asyncio.run(start_backlog_replayer())


if __name__ == "__main__":
    main()
