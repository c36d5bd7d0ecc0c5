"""
Main entry point for ODX server discovery

Starts:
- Refresh scheduler (master list, custom servers, optional LAN scan)
- Status server (read-only HTTP view of the aggregated list)
"""

import asyncio
import logging
import signal

from odx_discovery.config import config
from odx_discovery.servers.custom_servers import CustomServerRegistry
from odx_discovery.servers.query_client import GameServerQueryClient
from odx_discovery.servers.scheduler import RefreshScheduler
from odx_discovery.servers.status_server import StatusServer

logger = logging.getLogger(__name__)


def setup_logging(level: str = None):
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


class DiscoveryManager:
    """Owns the scheduler and the status server"""

    def __init__(self, config=config):
        self.config = config
        self.scheduler = None
        self.status_server = None
        self.running = False
        self._stopped = asyncio.Event()

    async def start_all(self):
        """Start discovery and block until stop_all() is called"""

        print("\n" + "=" * 70)
        print("ODX Server Discovery")
        print("=" * 70)
        print()

        try:
            custom_registry = CustomServerRegistry.load(self.config.CUSTOM_SERVERS_FILE)
            logger.info(
                f"Loaded {len(custom_registry)} custom server(s) from {self.config.CUSTOM_SERVERS_FILE}"
            )

            self.scheduler = RefreshScheduler(
                self.config,
                client=GameServerQueryClient(),
                custom_registry=custom_registry,
            )
            await self.scheduler.start()
            print(f"   Masters: {', '.join(self.config.MASTER_SERVERS)}")
            print(f"   Local discovery: {'enabled' if self.scheduler.local_enabled else 'disabled'}")

            self.status_server = StatusServer(self.config, self.scheduler)
            await self.status_server.start()
            print(f"   Status: http://{self.config.STATUS_HOST}:{self.config.STATUS_PORT}/status")

            print()
            print("Press Ctrl+C to stop")
            print("=" * 70)
            print()

            self.running = True

            # Keep running
            await self._stopped.wait()

        except Exception as e:
            logger.error(f"Error starting discovery: {e}", exc_info=True)
            await self.stop_all()
            raise

    async def stop_all(self):
        """Stop everything gracefully"""

        self._stopped.set()
        if self.scheduler is None and self.status_server is None:
            return
        self.running = False

        print("\n" + "=" * 70)
        print("Shutting down...")
        print("=" * 70)

        status_server, self.status_server = self.status_server, None
        scheduler, self.scheduler = self.scheduler, None

        if status_server:
            await status_server.stop()

        if scheduler:
            await scheduler.stop()

        print("\nDiscovery stopped")
        print("=" * 70)


async def main():
    """Main entry point"""

    manager = DiscoveryManager()

    # Setup signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(manager.stop_all()))

    try:
        await manager.start_all()
    finally:
        await manager.stop_all()


def run():
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == '__main__':
    run()
