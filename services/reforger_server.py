# services/reforger_server.py
"""
Per-server orchestrator.

Owns one RCON client, one console log monitor + parser and any configured
custom parsers for a single Reforger server. Every event they produce is
republished on ReforgerServer.events stamped with the server id.

Also keeps:
- the player roster, merged from RCON polls and log join/update lines
- rolling server health (fps, memory, player count)
- the RCON reconnect loop (exponential backoff, one loop at a time)
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from config.servers import ServerConfig
from services.battleye import RCONAuthError, RCONConnectionError, RCONError
from services.events import Event, EventBus
from services.log_monitor import LocalLogSource, LogMonitor, LogMonitorError, LogSource, SFTPLogSource
from services.log_parsers import (
    DomainEvent,
    FriendlyFire,
    LogParser,
    PlayerGuid,
    PlayerJoined,
    PlayerKilled,
    PlayerUpdate,
    ReforgerLogParser,
    ServerHealth,
    VoteKickStart,
    VoteKickVictim,
    load_parser_class,
)
from services.rcon import (
    Player,
    PlayersUpdated,
    RconConnected,
    RconDisconnected,
    RconErrorOccurred,
    ReforgerRCONClient,
    ServerMessage,
)
from services.wcs_parser import PlayerConnected

logger = logging.getLogger(__name__)

RconFactory = Callable[[ServerConfig], ReforgerRCONClient]
LogSourceFactory = Callable[[ServerConfig, str], LogSource]


def default_rcon_factory(config: ServerConfig) -> ReforgerRCONClient:
    return ReforgerRCONClient(
        config.host,
        config.rcon_port,
        config.rcon_password,
        login_timeout=config.login_timeout,
        command_timeout=config.command_timeout,
        keepalive_interval=config.keepalive_interval,
        keepalive_dead_multiplier=config.keepalive_dead_multiplier,
    )


def default_log_source_factory(config: ServerConfig, mode: str) -> LogSource:
    if mode == 'sftp':
        if config.sftp is None:
            raise LogMonitorError(f"Server {config.id} has no SFTP credentials")
        return SFTPLogSource(
            config.sftp.host,
            config.sftp.port,
            config.sftp.username,
            config.sftp.password,
            server_name=config.display_name,
        )
    return LocalLogSource()


@dataclass
class ReconnectState:
    """Backoff bookkeeping for the RCON reconnect loop."""
    initial_delay: float
    max_delay: float
    attempts: int = 0
    delay: float = field(init=False)
    is_reconnecting: bool = False

    def __post_init__(self):
        self.delay = self.initial_delay

    def next_delay(self) -> float:
        """Count one more attempt and return how long to wait before it."""
        self.attempts += 1
        self.delay = min(self.initial_delay * 2 ** (self.attempts - 1), self.max_delay)
        return self.delay

    def reset(self) -> None:
        self.attempts = 0
        self.delay = self.initial_delay
        self.is_reconnecting = False


class ReforgerServer:
    """One managed Arma Reforger server."""

    def __init__(self, config: ServerConfig, *,
                 rcon_factory: Optional[RconFactory] = None,
                 log_source_factory: Optional[LogSourceFactory] = None,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep,
                 clock: Optional[Callable[[], float]] = None):
        self.config = config
        self.server_id = config.id
        self.events = EventBus(f"server {config.id}")
        self.rcon: Optional[ReforgerRCONClient] = None
        self.log_monitor: Optional[LogMonitor] = None
        self.log_parser: Optional[ReforgerLogParser] = None
        self.custom_parsers: dict[str, tuple[LogParser, LogMonitor]] = {}
        self.players: list[Player] = []
        self.fps: Optional[float] = None
        self.memory_usage: Optional[int] = None  # kB
        self.player_count: Optional[int] = None
        self.reconnect = ReconnectState(config.reconnect_initial_delay, config.reconnect_max_delay)

        self._rcon_factory = rcon_factory or default_rcon_factory
        self._log_source_factory = log_source_factory or default_log_source_factory
        self._sleep = sleep
        self._clock = clock
        self._players_interval: Optional[float] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def tag(self) -> str:
        return f"[Server {self.server_id}]"

    @property
    def is_rcon_connected(self) -> bool:
        return self.rcon is not None and self.rcon.is_connected

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Start log monitoring, custom parsers and RCON.

        A missing log directory or unreachable log source is fatal for this
        server and re-raised after cleanup. RCON failures are not: transport
        errors start the reconnect loop and auth errors are reported once.
        """
        logger.info(f"{self.tag} Initializing {self.config.display_name}")
        try:
            await self._setup_log_parser()
        except (LogMonitorError, OSError) as e:
            logger.error(f"{self.tag} Failed to set up log parser: {e}")
            await self.cleanup()
            raise

        await self._setup_custom_parsers()
        await self._setup_rcon()
        logger.info(f"{self.tag} Initialized")

    async def cleanup(self) -> None:
        """Release every sub-component and subscriber. Idempotent."""
        if self._closed:
            return
        self._closed = True

        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.reconnect.is_reconnecting = False

        self._detach_rcon("server cleanup")

        if self.log_monitor is not None:
            await self.log_monitor.unwatch()
        if self.log_parser is not None:
            self.log_parser.events.clear()

        for parser, monitor in self.custom_parsers.values():
            await monitor.unwatch()
            parser.events.clear()
        self.custom_parsers.clear()

        self.events.clear()
        logger.info(f"{self.tag} Cleaned up")

    # ------------------------------------------------------------------
    # Log parsing
    # ------------------------------------------------------------------

    async def _setup_log_parser(self) -> None:
        source = self._log_source_factory(self.config, self.config.log_reader_mode)
        self.log_parser = ReforgerLogParser(clock=self._clock)
        self.log_monitor = LogMonitor(
            source,
            self.config.log_dir,
            self.config.log_file,
            poll_interval=self.config.log_poll_interval,
            from_beginning=self.config.log_from_beginning,
            name=f"Server {self.server_id} {self.config.log_file}",
        )
        self.log_monitor.on_line(self.log_parser.feed)
        self.log_monitor.on_rotate(lambda path: self.log_parser.reset())
        self.log_monitor.on_error(self._on_log_monitor_error)
        self.log_parser.events.subscribe(DomainEvent, self._handle_log_event)

        await self.log_monitor.watch()
        logger.info(f"{self.tag} Log parser watching {self.config.log_dir}")

    async def _setup_custom_parsers(self) -> None:
        for parser_config in self.config.custom_parsers:
            name = parser_config.name
            if not parser_config.enabled:
                logger.debug(f"{self.tag} Custom parser {name} is disabled, skipping")
                continue

            monitor = None
            try:
                parser_class = load_parser_class(parser_config.parser)
                parser = parser_class(parser_config.options)
                if not parser.event_types:
                    logger.warning(f"{self.tag} Custom parser {name} does not declare any events to forward")
                    continue

                mode = parser_config.log_reader_mode or self.config.log_reader_mode
                monitor = LogMonitor(
                    self._log_source_factory(self.config, mode),
                    parser_config.log_dir,
                    parser_config.file_name,
                    poll_interval=self.config.log_poll_interval,
                    name=f"Server {self.server_id} {name}",
                )
                monitor.on_line(parser.feed)
                monitor.on_rotate(lambda path, p=parser: p.reset())
                monitor.on_error(self._on_log_monitor_error)
                for event_type in parser.event_types:
                    parser.events.subscribe(event_type, self._handle_custom_event)

                await monitor.watch()
            except (ImportError, ValueError, TypeError, LogMonitorError) as e:
                logger.error(f"{self.tag} Failed to initialize custom parser {name}: {e}")
                if monitor is not None:
                    await monitor.unwatch()
                continue

            self.custom_parsers[name] = (parser, monitor)
            logger.info(f"{self.tag} Custom parser {name} initialized and watching logs")

    def _on_log_monitor_error(self, error: Exception) -> None:
        # File level errors usually mean misconfiguration: no automatic restart
        logger.error(f"{self.tag} Log monitoring stopped and will not restart: {error}")

    def _forward(self, event: Event) -> None:
        logger.debug(f"{self.tag} {type(event).__name__} event")
        self.events.publish(event.with_server_id(self.server_id))

    def _handle_log_event(self, event: DomainEvent) -> None:
        match event:
            case PlayerJoined():
                self._on_player_joined(event)
            case PlayerGuid():
                self._on_player_guid(event)
            case PlayerUpdate():
                self._on_player_update(event)
            case VoteKickStart():
                event = self._enrich_vote_kick(event)
                logger.info(f"{self.tag} Votekick started by {event.vote_offender_name} "
                            f"(ID: {event.vote_offender_id}) against {event.vote_victim_name} "
                            f"(ID: {event.vote_victim_id})")
            case VoteKickVictim():
                logger.info(f"{self.tag} Vote kick succeeded against player "
                            f"'{event.vote_victim_name}' (ID: {event.vote_victim_id})")
            case ServerHealth():
                self.fps = event.fps
                self.memory_usage = event.memory
                self.player_count = event.player
            case PlayerKilled(friendly=True):
                logger.info(f"{self.tag} Friendly fire: {event.killer_name} killed {event.victim_name}")
                self._forward(event)
                self._forward(FriendlyFire(
                    time=event.time,
                    raw_line=event.raw_line,
                    victim_name=event.victim_name,
                    killer_name=event.killer_name,
                ))
                return

        self._forward(event)

    def _handle_custom_event(self, event: Event) -> None:
        match event:
            case PlayerConnected():
                self._on_player_connected(event)

        self._forward(event)

    # ------------------------------------------------------------------
    # Player roster
    # ------------------------------------------------------------------

    def find_player(self, name: Optional[str] = None, uid: Optional[str] = None,
                    player_id: Optional[int] = None) -> Optional[Player]:
        """Look a player up by name, then uid, then id."""
        if name is not None:
            for player in self.players:
                if player.name == name:
                    return player
        if uid is not None:
            for player in self.players:
                if player.uid == uid:
                    return player
        if player_id is not None:
            for player in self.players:
                if player.id == player_id:
                    return player
        return None

    def _upsert_player(self, update: Player) -> Player:
        existing = self.find_player(update.name, update.uid, update.id)
        if existing is not None:
            return existing.merge(update)
        self.players.append(update)
        return update

    def _on_players_updated(self, event: PlayersUpdated) -> None:
        roster = []
        for polled in event.players:
            existing = self.find_player(polled.name, polled.uid, polled.id)
            roster.append(existing.copy().merge(polled) if existing else polled.copy())
        self.players = roster
        logger.debug(f"{self.tag} Roster updated: {len(roster)} players")
        self._forward(PlayersUpdated(players=tuple(p.copy() for p in roster)))

    def _on_player_joined(self, event: PlayerJoined) -> None:
        player = self._upsert_player(Player(
            name=event.player_name,
            number=event.player_number,
            ip=event.player_ip,
        ))
        logger.info(f"{self.tag} Player joined: {player.name} (#{player.number}) from {player.ip}")

    def _on_player_guid(self, event: PlayerGuid) -> None:
        self._upsert_player(Player(
            name=event.player_name,
            number=event.player_number,
            be_guid=event.be_guid,
        ))

    def _on_player_connected(self, event: PlayerConnected) -> None:
        if event.platform:
            self._upsert_player(Player(name=event.player_name, device=event.platform))

    def _on_player_update(self, event: PlayerUpdate) -> None:
        existing = self.find_player(event.player_name)
        if existing is not None:
            # Fill in what the join line could not tell us, keep what we know
            if existing.id is None:
                existing.id = event.player_id
            if existing.uid is None:
                existing.uid = event.player_uid
            return
        self.players.append(Player(name=event.player_name, id=event.player_id, uid=event.player_uid))
        logger.info(f"{self.tag} Player tracked from update: {event.player_name} (ID: {event.player_id})")

    def _enrich_vote_kick(self, event: VoteKickStart) -> VoteKickStart:
        offender = self.find_player(player_id=event.vote_offender_id)
        victim = self.find_player(player_id=event.vote_victim_id)
        return dataclasses.replace(
            event,
            vote_offender_name=offender.name if offender else event.vote_offender_name,
            vote_victim_name=victim.name if victim else event.vote_victim_name,
        )

    # ------------------------------------------------------------------
    # RCON
    # ------------------------------------------------------------------

    def _attach_rcon(self) -> ReforgerRCONClient:
        rcon = self._rcon_factory(self.config)
        rcon.events.subscribe(RconConnected, self._on_rcon_connected)
        rcon.events.subscribe(RconDisconnected, self._on_rcon_disconnected)
        rcon.events.subscribe(RconErrorOccurred, self._on_rcon_error)
        rcon.events.subscribe(PlayersUpdated, self._on_players_updated)
        rcon.events.subscribe(ServerMessage, self._forward)
        if self._players_interval is not None:
            rcon.start_sending_players_command(self._players_interval)
        self.rcon = rcon
        return rcon

    def _detach_rcon(self, reason: str) -> None:
        if self.rcon is None:
            return
        # Unsubscribe first so this close does not schedule a reconnect
        self.rcon.events.clear()
        self.rcon.close(reason)
        self.rcon = None

    async def _setup_rcon(self) -> bool:
        rcon = self._attach_rcon()
        try:
            await rcon.connect()
        except RCONAuthError as e:
            self._report_auth_failure(e)
            return False
        except RCONError as e:
            logger.error(f"{self.tag} RCON connection failed: {e}")
            self._schedule_reconnect()
            return False
        return True

    def _report_auth_failure(self, error: RCONAuthError) -> None:
        logger.error(f"{self.tag} RCON authentication failed, not retrying: {error}")
        self.events.publish(RconErrorOccurred(error=error, fatal=True, server_id=self.server_id))

    def _on_rcon_connected(self, event: RconConnected) -> None:
        logger.info(f"{self.tag} RCON connected successfully.")
        self._forward(event)

    def _on_rcon_disconnected(self, event: RconDisconnected) -> None:
        logger.warning(f"{self.tag} RCON connection closed: {event.reason}")
        self._forward(event)
        self._schedule_reconnect()

    def _on_rcon_error(self, event: RconErrorOccurred) -> None:
        logger.error(f"{self.tag} RCON error: {event.error}")
        self._forward(event)

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self.reconnect.is_reconnecting:
            logger.debug(f"{self.tag} Reconnect already in progress")
            return
        self.reconnect.is_reconnecting = True
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        try:
            while not self._closed:
                delay = self.reconnect.next_delay()
                logger.warning(f"{self.tag} RCON reconnect attempt {self.reconnect.attempts} "
                               f"in {delay:g}s")
                await self._sleep(delay)
                if self._closed:
                    return

                self._detach_rcon("reconnecting")
                rcon = self._attach_rcon()
                try:
                    await rcon.connect()
                except RCONAuthError as e:
                    self._report_auth_failure(e)
                    return
                except RCONError as e:
                    logger.warning(f"{self.tag} RCON reconnect attempt {self.reconnect.attempts} failed: {e}")
                    continue

                logger.info(f"{self.tag} RCON reconnected after {self.reconnect.attempts} attempt(s)")
                self.reconnect.reset()
                return
        finally:
            self.reconnect.is_reconnecting = False
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def restart_rcon(self) -> bool:
        """Drop the current RCON session and connect a fresh one."""
        logger.warning(f"{self.tag} Restarting RCON...")
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.reconnect.reset()
        self._detach_rcon("restart requested")
        return await self._setup_rcon()

    def start_sending_players_command(self, interval: float = 30.0) -> None:
        """Poll players every interval seconds, on this and every future RCON session."""
        self._players_interval = interval
        if self.rcon is None:
            logger.error(f"{self.tag} RCON is not initialized. Call initialize() first.")
            return
        self.rcon.start_sending_players_command(interval)

    def send_custom_command(self, command: str) -> Optional[int]:
        if self.rcon is None:
            logger.error(f"{self.tag} RCON is not initialized. Call initialize() first.")
            return None
        return self.rcon.send_custom_command(command)

    async def send_command(self, command: str, timeout: Optional[float] = None) -> str:
        """
        Send a command and return the response text.

        Raises:
            RCONConnectionError: no connected RCON session
            RCONTimeoutError: the server did not answer in time
        """
        if self.rcon is None:
            raise RCONConnectionError(f"{self.tag} RCON is not initialized")
        return await self.rcon.send_command(command, timeout)
