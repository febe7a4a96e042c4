"""
Main entry point for the control plane operator.

This module wires the record store, event recorder, reconciler and
scheduling loop together and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import random
import signal
from typing import Optional

from config import get_config
from controller import Controller, ControlPlaneReconciler
from db import DatabaseManager
from events import EventRecorder

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Main application that owns the controller and its dependencies."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.recorder: Optional[EventRecorder] = None
        self.reconciler: Optional[ControlPlaneReconciler] = None
        self.controller: Optional[Controller] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing control plane operator")

        # Initialize database
        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        ctrl_config = self.config.controller
        self.recorder = EventRecorder(self.db)
        self.reconciler = ControlPlaneReconciler(
            self.db,
            ctrl_config,
            recorder=self.recorder,
            rng=random.Random(ctrl_config.failure_domain_seed),
        )
        self.controller = Controller(
            db_manager=self.db,
            reconciler=self.reconciler,
            config=ctrl_config,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting control plane operator")

        try:
            await self.controller.start()
        except asyncio.CancelledError:
            logger.info("Controller task cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running and not self.db:
            return
        logger.info("Stopping control plane operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.db:
            await self.db.close()
            self.db = None

        logger.info("Control plane operator stopped")


async def main():
    """Main entry point."""
    configure_logging(get_config().log_level)
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
