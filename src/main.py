"""
Main entry point for the EMQX operator.

This module wires the platform client, member admin client, controller,
watches and HTTP API together and runs them until a shutdown signal.
"""

import asyncio
import logging
import os
import signal
from typing import Optional

from admin import BrokerAdminClient
from api import APIServer
from config import get_config
from controller import Controller
from events import EventBus
from kube import KubernetesPlatform
from watch import Watcher

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller, watches and API."""

    def __init__(self):
        self.config = get_config()
        self.platform: Optional[KubernetesPlatform] = None
        self.controller: Optional[Controller] = None
        self.watcher: Optional[Watcher] = None
        self.api: Optional[APIServer] = None
        self.event_bus: Optional[EventBus] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing EMQX operator")

        kube_config = self.config.kubernetes
        self.platform = KubernetesPlatform(
            kubeconfig=kube_config.kubeconfig,
            in_cluster=kube_config.in_cluster,
            request_timeout=kube_config.request_timeout,
            watch_timeout=kube_config.watch_timeout,
        )
        await self.platform.connect()

        admin_config = self.config.admin_api
        admin = BrokerAdminClient(
            port=admin_config.port,
            username=admin_config.username,
            password=admin_config.password,
            timeout=admin_config.timeout,
            scheme=admin_config.scheme,
        )

        self.event_bus = EventBus()

        self.controller = Controller(
            platform=self.platform,
            admin=admin,
            config=self.config.controller,
            plugin_config=self.config.plugins,
            event_bus=self.event_bus,
            namespace=kube_config.namespace,
        )
        self.watcher = Watcher(
            self.platform, self.controller.enqueue, namespace=kube_config.namespace
        )
        self.api = APIServer(
            self.controller,
            event_bus=self.event_bus,
            config=self.config.api,
            watcher=self.watcher,
        )

        scope = kube_config.namespace or "all namespaces"
        logger.info(f"All components initialized, watching {scope}")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting EMQX operator")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.watcher.start()),
            asyncio.create_task(self.api.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping EMQX operator")
        self.running = False

        if self.watcher:
            await self.watcher.stop()

        if self.controller:
            await self.controller.stop()

        if self.api:
            await self.api.stop()

        if self.platform:
            await self.platform.close()

        logger.info("EMQX operator stopped")


async def main():
    """Main entry point."""
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


if __name__ == "__main__":
    asyncio.run(main())
