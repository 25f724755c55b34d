"""
MetricDB Server - Main entry point.

This module starts the MetricDB server with all components:
- Metric storage on the local file system
- Access policy (access tokens, or allow-all for development)
- Metric service with the HTTP transport

Usage:
    python -m tsdb.metricdb_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The storage folder is opened before the HTTP server accepts requests
    - Shutdown stops the HTTP server before closing log files

How to change safely:
    - Keep startup order: storage, access policy, service, transport
    - Test shutdown sequence with requests in flight
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import AccessPolicy, AllowAllAccess, MetricService, TokenAccessManager
from .api.http_server import create_http_app
from .codec import create_codec
from .config import ServerConfig
from .storage import MetricStorage

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def create_access_policy(config: ServerConfig) -> AccessPolicy:
    """Build the access policy from configuration."""
    if config.access.allow_all:
        return AllowAllAccess()
    return TokenAccessManager(config.access.tokens)


class Server:
    """MetricDB server orchestrator.

    Attributes:
        config: Server configuration
        storage: Metric storage (available after start())
        service: Remote operations; embedders use it to flag metrics as
            remotely writable

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.storage: MetricStorage | None = None
        self.service: MetricService | None = None
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting MetricDB server")
        self.config.log_config()

        try:
            self.storage = MetricStorage(
                self.config.storage.data_dir,
                codec=create_codec(self.config.storage.codec),
                max_file_size=self.config.storage.max_file_size,
            )
            self.service = MetricService(self.storage, create_access_policy(self.config))

            app = create_http_app(self.service, self.config.http)
            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()
            logger.info(
                f"HTTP server running on http://{self.config.http.host}:{self.config.http.port}"
            )

            self._running = True
            logger.info("MetricDB server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping MetricDB server")

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        if self.storage:
            await self.storage.close()

        self._running = False
        logger.info("MetricDB server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
