# main.py
"""
Runner for the Reforger server manager.

Loads the server file named by SERVERS_CONFIG, starts every server and runs
until SIGINT/SIGTERM, then cleans everything up.
"""

import asyncio
import logging
import signal
import sys

from config.settings import PLAYERS_POLL_INTERVAL, SERVERS_CONFIG, configure_logging
from config.servers import ConfigError, load_config
from services.server_manager import ServerManager

logger = logging.getLogger(__name__)


async def run() -> int:
    try:
        configs = load_config(SERVERS_CONFIG)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    manager = ServerManager(configs, players_poll_interval=PLAYERS_POLL_INTERVAL)
    if not await manager.initialize_all():
        logger.error("No server could be initialized, exiting")
        await manager.cleanup_all()
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C raises instead
            pass

    try:
        await stop.wait()
        logger.info("Shutdown requested")
    finally:
        await manager.cleanup_all()
    return 0


def main() -> None:
    configure_logging()
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
