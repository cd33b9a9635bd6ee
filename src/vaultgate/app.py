"""
Server entry point.

Runs the HTTP API (aiohttp), the real-time channel (websockets) and the
background sweeper on one event loop until SIGINT/SIGTERM.
"""

import asyncio
import signal

from aiohttp import web
from loguru import logger

from .api.http import create_app
from .config import Settings
from .log import configure_logging
from .realtime.server import RealtimeServer
from .services import Services, bootstrap_owner, build_services
from .sweeper import sweep_forever


async def start_http_server(services: Services) -> web.AppRunner:
    """Start the HTTP API server."""
    settings = services.settings
    app = create_app(services)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, settings.host, settings.http_port)
    await site.start()

    logger.info(f"HTTP API running on {settings.host}:{settings.http_port}")
    return runner


async def run(settings: Settings) -> None:
    """Main entry point."""
    logger.info("Starting vaultgate")

    services = build_services(settings)
    bootstrap_owner(services)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    stop = loop.create_future()

    def request_stop(signum):
        logger.info(f"Received signal {signum}, shutting down...")
        if not stop.done():
            stop.set_result(None)

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, request_stop, signum)

    http_runner = await start_http_server(services)
    realtime = RealtimeServer(services.router, services.credentials)
    ws_server = await realtime.start(settings.host, settings.ws_port)
    sweeper = asyncio.create_task(sweep_forever(services, settings.sweep_interval))

    try:
        await stop
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        ws_server.close()
        await ws_server.wait_closed()
        await http_runner.cleanup()

    logger.info("Server stopped")


def serve(settings: Settings) -> None:
    configure_logging(settings.log_level)
    asyncio.run(run(settings))
