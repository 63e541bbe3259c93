"""Main entry point: run the publishing scheduler as a standalone process."""
import asyncio
import signal
from config.logging import configure_logging, get_logger
from config.settings import settings
from db import db
from db.migrate import run_migrations
from publishing.service import build_publication_service

logger = get_logger(__name__)


class PublishingWorker:
    """Scheduler process sharing the publications table with other workers."""

    def __init__(self):
        self.service = None
        self.running = False
        self._stopped = asyncio.Event()

    async def start(self):
        """Connect, migrate and run the scheduler until stopped."""
        configure_logging()
        logger.info("Starting publishing worker", environment=settings.environment)

        # Connect to database
        await db.connect()

        # Run migrations
        await run_migrations()

        self.service = build_publication_service(database=db)
        await self.service.start()
        self.running = True

        await self._stopped.wait()

    async def stop(self):
        """Stop the scheduler and disconnect."""
        if not self.running:
            self._stopped.set()
            return

        logger.info("Stopping publishing worker")
        self.running = False

        await self.service.stop()
        await db.disconnect()
        self._stopped.set()

        logger.info("Publishing worker stopped")


async def main():
    """Main entry point."""
    worker = PublishingWorker()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def handle_signal():
        logger.info("Received shutdown signal")
        asyncio.create_task(worker.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    try:
        await worker.start()
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
    finally:
        await worker.stop()


def run():
    """Console entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
