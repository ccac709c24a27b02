# services/server_manager.py
"""
Manager for every configured Reforger server.

Handles creating, initializing, looking up and cleaning up servers. Each
server is isolated: one failing to initialize is skipped and never affects
the others. Events from all servers are republished on ServerManager.events
already stamped with their server id.
"""

import logging
from typing import Callable, Iterator, Optional

from config.servers import ServerConfig
from services.events import Event, EventBus
from services.reforger_server import ReforgerServer

logger = logging.getLogger(__name__)

ServerFactory = Callable[[ServerConfig], ReforgerServer]


class ServerManager:
    """Owns one ReforgerServer per configured server."""

    def __init__(self, configs: list[ServerConfig], *,
                 server_factory: Optional[ServerFactory] = None,
                 players_poll_interval: float = 30.0):
        self.configs = configs
        self.players_poll_interval = players_poll_interval
        self.events = EventBus("servers")
        self._servers: dict[int, ReforgerServer] = {}
        self._server_factory = server_factory or ReforgerServer

    async def initialize_all(self) -> int:
        """
        Initialize every configured server.

        Returns:
            Number of servers that started
        """
        for config in self.configs:
            if config.id in self._servers:
                logger.warning(f"[Server {config.id}] Already initialized, skipping")
                continue

            server = self._server_factory(config)
            server.events.subscribe(Event, self.events.publish)
            try:
                await server.initialize()
            except Exception as e:
                logger.error(f"[Server {config.id}] Failed to initialize, skipping: {e}", exc_info=True)
                await server.cleanup()
                continue

            interval = config.players_poll_interval or self.players_poll_interval
            server.start_sending_players_command(interval)
            self._servers[config.id] = server
            logger.info(f"[Server {config.id}] Initialized successfully")

        logger.info(f"{len(self._servers)}/{len(self.configs)} server(s) running")
        return len(self._servers)

    def get_server(self, server_id: int) -> Optional[ReforgerServer]:
        """Get a running server by id."""
        return self._servers.get(server_id)

    def __iter__(self) -> Iterator[ReforgerServer]:
        return iter(list(self._servers.values()))

    def __len__(self) -> int:
        return len(self._servers)

    async def cleanup_all(self) -> None:
        """Clean up every server."""
        for server_id in list(self._servers.keys()):
            server = self._servers.pop(server_id)
            try:
                await server.cleanup()
            except Exception as e:
                logger.error(f"[Server {server_id}] Error during cleanup: {e}", exc_info=True)
        self.events.clear()
        logger.info("All servers cleaned up")
