"""Rollout controller main application."""

import asyncio
import logging
import signal
from typing import Optional

import uvicorn

from . import __version__
from .api import create_app
from .config import Settings, get_settings
from .controlplane import ControlPlane

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


class Application:
    """Runs the control plane and serves its API."""

    def __init__(self, settings: Settings):
        """
        Initialize application.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.control_plane: Optional[ControlPlane] = None
        self.server: Optional[uvicorn.Server] = None
        self._shutdown = False

    async def start(self) -> None:
        """Start the application."""
        logging.getLogger().setLevel(self.settings.log_level.upper())

        logger.info("Starting Sentinel rollout controller...")
        logger.info(f"   Version: {__version__}")
        logger.info(f"   Store: {'sql' if self.settings.database_url else 'memory'}")
        logger.info(f"   Execution backend: {self.settings.execution_backend}")
        logger.info(f"   Workers: {self.settings.workers}")

        self.control_plane = await ControlPlane.from_settings(self.settings)
        await self.control_plane.start()

        config = uvicorn.Config(
            create_app(self.control_plane, self.settings),
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level.lower(),
        )
        self.server = uvicorn.Server(config)
        server_task = asyncio.create_task(self.server.serve())

        logger.info(f"Rollout controller listening on {self.settings.host}:{self.settings.port}")

        # Run until shutdown signal or server exit
        try:
            while not self._shutdown and not server_task.done():
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass

        self.server.should_exit = True
        await asyncio.gather(server_task, return_exceptions=True)

    async def stop(self) -> None:
        """Stop the application."""
        logger.info("Shutting down rollout controller...")
        self._shutdown = True

        if self.server:
            self.server.should_exit = True
        if self.control_plane:
            await self.control_plane.stop()

        logger.info("Rollout controller stopped")

    def handle_signal(self, sig: int) -> None:
        """
        Handle shutdown signals.

        Args:
            sig: Signal number
        """
        logger.info(f"Received signal {sig}, initiating shutdown...")
        self._shutdown = True


async def main() -> None:
    """Main entry point."""
    settings = get_settings()
    app = Application(settings)

    # Setup signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.handle_signal, sig)

    try:
        await app.start()
    finally:
        await app.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
