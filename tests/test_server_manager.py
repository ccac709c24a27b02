"""Tests for ServerManager."""

import pytest

from config.servers import ServerConfig
from services.events import Event, EventBus
from services.log_parsers import GameStart
from services.server_manager import ServerManager


class FakeServer:
    """Minimal ReforgerServer stand-in."""

    def __init__(self, config, fail=False):
        self.config = config
        self.server_id = config.id
        self.events = EventBus(f"server {config.id}")
        self.fail = fail
        self.initialized = False
        self.cleanup_calls = 0
        self.players_interval = None

    async def initialize(self):
        if self.fail:
            raise RuntimeError("log directory missing")
        self.initialized = True

    async def cleanup(self):
        self.cleanup_calls += 1

    def start_sending_players_command(self, interval):
        self.players_interval = interval


def make_config(server_id, **overrides):
    return ServerConfig(id=server_id, host="127.0.0.1", rcon_port=2302,
                        rcon_password="pw", log_dir="/logs", **overrides)


@pytest.fixture
def created():
    return {}


@pytest.fixture
def factory(created):
    def _factory(config):
        server = FakeServer(config, fail=config.name == "broken")
        created[config.id] = server
        return server
    return _factory


class TestServerManager:
    """Test suite for ServerManager."""

    @pytest.mark.asyncio
    async def test_failing_server_is_skipped(self, factory, created):
        """Test one broken server does not stop the others."""
        manager = ServerManager(
            [make_config(1), make_config(2, name="broken"), make_config(3)],
            server_factory=factory,
        )

        started = await manager.initialize_all()

        assert started == 2
        assert len(manager) == 2
        assert manager.get_server(2) is None
        assert created[2].cleanup_calls == 1
        assert {s.server_id for s in manager} == {1, 3}

    @pytest.mark.asyncio
    async def test_players_poll_interval(self, factory, created):
        """Test the per-server interval wins over the default."""
        manager = ServerManager(
            [make_config(1), make_config(2, players_poll_interval=10.0)],
            server_factory=factory,
            players_poll_interval=45.0,
        )

        await manager.initialize_all()

        assert created[1].players_interval == 45.0
        assert created[2].players_interval == 10.0

    @pytest.mark.asyncio
    async def test_events_are_aggregated(self, factory, created):
        """Test server events reach the manager bus."""
        manager = ServerManager([make_config(1), make_config(2)], server_factory=factory)
        received = []
        manager.events.subscribe(Event, received.append)
        await manager.initialize_all()

        created[2].events.publish(GameStart(server_id=2))

        assert [e.server_id for e in received] == [2]

    @pytest.mark.asyncio
    async def test_initialize_all_twice(self, factory, created):
        """Test already running servers are not recreated."""
        manager = ServerManager([make_config(1)], server_factory=factory)
        await manager.initialize_all()
        first = created[1]

        await manager.initialize_all()

        assert manager.get_server(1) is first

    @pytest.mark.asyncio
    async def test_cleanup_all(self, factory, created):
        """Test every server is cleaned up and forgotten."""
        manager = ServerManager([make_config(1), make_config(2)], server_factory=factory)
        await manager.initialize_all()

        await manager.cleanup_all()

        assert len(manager) == 0
        assert created[1].cleanup_calls == 1
        assert created[2].cleanup_calls == 1
        assert manager.events.subscriber_count(Event) == 0
