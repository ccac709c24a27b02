# services/rcon.py
"""
RCON client for Arma Reforger dedicated servers.

Speaks the BattlEye RCON protocol (see services/battleye.py) over a
connected UDP transport and keeps one long-lived session per server:

- Login with the configured password (rejection is fatal, never retried)
- Keep-alive packets while connected, forced close when the server goes silent
- Command dispatch with sequence-number correlation
- Periodic "#players" poll publishing the full roster

A client instance is single use: once CLOSED it cannot reconnect. The server
orchestrator builds a fresh client for every reconnect attempt.
"""

import asyncio
import dataclasses
import logging
import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from services.battleye import (
    ClientPacket,
    ConnectTimeoutError,
    MultipartAssembler,
    Packet,
    PacketType,
    RCONAuthError,
    RCONConnectionError,
    RCONError,
    RCONFramingError,
    RCONProtocolError,
    RCONTimeoutError,
    SEQUENCE_MODULO,
    command_packet,
    decode_packet,
    encode_packet,
    keepalive_packet,
    login_packet,
    message_ack_packet,
)
from services.events import Event, EventBus
from services.transport import RconTransport

logger = logging.getLogger(__name__)

# Consecutive undecodable packets before the stream is considered desynced
MAX_MALFORMED_PACKETS = 5

TransportFactory = Callable[[str, int, float], Awaitable[RconTransport]]


class ConnectionState(Enum):
    """Lifecycle of one RCON client instance."""
    IDLE = "idle"
    CONNECTING = "connecting"
    LOGGING_IN = "logging_in"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class RCONResponse:
    """Standardized response from RCON admin commands."""
    success: bool
    message: str
    data: Optional[dict] = None
    raw_response: Optional[str] = None


@dataclass
class Player:
    """
    A player seen on the server, either through the RCON players poll or
    through the console log. Every field is optional because the two sources
    report different subsets at different times.
    """
    name: Optional[str] = None
    number: Optional[int] = None  # BattlEye player number
    id: Optional[int] = None  # Reforger player id
    ip: Optional[str] = None
    be_guid: Optional[str] = None
    device: Optional[str] = None
    uid: Optional[str] = None  # Reforger identity id

    def merge(self, other: "Player") -> "Player":
        """Copy every non-empty field of other onto this player."""
        for f in dataclasses.fields(self):
            value = getattr(other, f.name)
            if value is not None:
                setattr(self, f.name, value)
        return self

    def copy(self) -> "Player":
        return dataclasses.replace(self)


@dataclass(frozen=True, kw_only=True)
class RconConnected(Event):
    """The RCON session logged in and is ready for commands."""
    pass


@dataclass(frozen=True, kw_only=True)
class RconDisconnected(Event):
    """An established RCON session was closed."""
    reason: str = ""


@dataclass(frozen=True, kw_only=True)
class RconErrorOccurred(Event):
    """An RCON failure worth reporting to operators."""
    error: Exception
    fatal: bool = False


@dataclass(frozen=True, kw_only=True)
class PlayersUpdated(Event):
    """Full roster after a players poll (replace-all, never a delta)."""
    players: tuple[Player, ...] = ()


@dataclass(frozen=True, kw_only=True)
class ServerMessage(Event):
    """Message pushed by the BattlEye server (connects, kicks, chat echoes)."""
    message: str


@dataclass(eq=False)
class PendingCommand:
    """A command waiting for the response carrying its sequence number."""
    sequence: int
    command: str
    issued_at: float
    future: asyncio.Future = field(repr=False)


# "#players" rows: <id> ; <identity uid> ; <name>
PLAYER_ROW_PATTERN = re.compile(
    r'^(?P<id>\d+)\s*;\s*(?P<uid>[0-9a-fA-F-]+)\s*;\s*(?P<name>.+?)\s*$'
)
PLAYERS_HEADER = "players on server"


def parse_players(response: str) -> list[Player]:
    """
    Parse the tabular "#players" response.

    Format:
        Players on server:
        ID ; UID ; Name
        ------------------------------
        1 ; 2d6f...-uuid ; PlayerName
        (1 players in total)

    Raises:
        ValueError: the response is not a players table
    """
    if PLAYERS_HEADER not in response.lower():
        raise ValueError(f"Unexpected players response: {response[:100]!r}")

    players = []
    for line in response.splitlines():
        match = PLAYER_ROW_PATTERN.match(line.strip())
        if not match:
            continue
        players.append(Player(
            name=match.group('name'),
            id=int(match.group('id')),
            uid=match.group('uid'),
        ))
    return players


class ReforgerRCONClient:
    """
    BattlEye RCON session for one Arma Reforger server.

    Events (on self.events): RconConnected, RconDisconnected,
    RconErrorOccurred, PlayersUpdated, ServerMessage.
    """

    PLAYERS_COMMAND = "#players"

    def __init__(self, host: str, port: int, password: str, *,
                 login_timeout: float = 10.0,
                 command_timeout: float = 5.0,
                 keepalive_interval: float = 30.0,
                 keepalive_dead_multiplier: int = 3,
                 transport_factory: Optional[TransportFactory] = None):
        self.host = host
        self.port = port
        self.password = password
        self.login_timeout = login_timeout
        self.command_timeout = command_timeout
        self.keepalive_interval = keepalive_interval
        self.keepalive_dead_multiplier = keepalive_dead_multiplier
        self.events = EventBus(f"rcon {host}:{port}")
        self.state = ConnectionState.IDLE
        self.players: list[Player] = []
        self.players_interval: Optional[float] = None
        self.close_reason: Optional[str] = None

        self._transport_factory = transport_factory or RconTransport.open
        self._transport: Optional[RconTransport] = None
        self._sequence = 0
        self._pending: dict[int, deque[PendingCommand]] = defaultdict(deque)
        self._assembler = MultipartAssembler()
        self._login_future: Optional[asyncio.Future] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._players_task: Optional[asyncio.Task] = None
        self._last_received = 0.0
        self._malformed_count = 0
        self._last_message_sequence: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.READY

    @property
    def pending_count(self) -> int:
        return sum(len(queue) for queue in self._pending.values())

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Open the transport and log in.

        Returns:
            True once the session is READY

        Raises:
            RCONAuthError: the server rejected the password (fatal)
            RCONConnectionError: transport failure or login timeout (recoverable)
        """
        if self.state != ConnectionState.IDLE:
            raise RCONError(f"RCON client for {self.host}:{self.port} is {self.state.value}, "
                            f"create a new client to reconnect")

        loop = asyncio.get_running_loop()
        self.state = ConnectionState.CONNECTING
        logger.info(f"Connecting RCON to {self.host}:{self.port}")

        try:
            transport = await self._transport_factory(self.host, self.port, self.login_timeout)
        except RCONError as e:
            logger.error(f"RCON connection to {self.host}:{self.port} failed: {e}")
            self.close(str(e))
            raise

        if self.state == ConnectionState.CLOSED:
            transport.close()
            raise RCONConnectionError(f"RCON client for {self.host}:{self.port} closed while connecting")

        self._transport = transport
        self.state = ConnectionState.LOGGING_IN
        self._last_received = loop.time()
        self._login_future = loop.create_future()
        self._reader_task = asyncio.create_task(self._read_loop())

        try:
            self._write(login_packet(self.password))
            accepted = await asyncio.wait_for(self._login_future, self.login_timeout)
        except asyncio.TimeoutError:
            self.close("login timeout")
            raise ConnectTimeoutError(f"No login response from {self.host}:{self.port} "
                                      f"after {self.login_timeout}s")
        except RCONError as e:
            self.close(str(e))
            raise

        if not accepted:
            logger.error(f"RCON login to {self.host}:{self.port} rejected, check the password")
            self.close("authentication rejected")
            raise RCONAuthError(f"Password rejected by {self.host}:{self.port}")

        self.state = ConnectionState.READY
        logger.info(f"RCON logged in to {self.host}:{self.port}")
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        self.events.publish(RconConnected())

        if self.players_interval is not None:
            self._start_players_task()
        return True

    def close(self, reason: str = "closed") -> None:
        """
        Close the session. Idempotent and safe from any state.

        Cancels every timer and task, fails pending commands and publishes
        RconDisconnected if the session had reached READY.
        """
        if self.state == ConnectionState.CLOSED:
            return

        was_ready = self.state == ConnectionState.READY
        self.state = ConnectionState.CLOSED
        self.close_reason = reason

        for task in (self._reader_task, self._keepalive_task, self._players_task):
            self._cancel(task)
        self._reader_task = self._keepalive_task = self._players_task = None

        if self._login_future is not None and not self._login_future.done():
            self._login_future.set_exception(RCONConnectionError(f"Connection closed: {reason}"))

        for queue in self._pending.values():
            for pending in queue:
                if not pending.future.done():
                    pending.future.set_exception(RCONConnectionError(f"Connection closed: {reason}"))
        self._pending.clear()
        self._assembler.clear()

        if self._transport is not None:
            self._transport.close()

        if was_ready:
            logger.warning(f"RCON connection to {self.host}:{self.port} closed: {reason}")
            self.events.publish(RconDisconnected(reason=reason))
        else:
            logger.debug(f"RCON client for {self.host}:{self.port} closed before ready: {reason}")

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        try:
            if task is asyncio.current_task():
                return
        except RuntimeError:
            pass
        task.cancel()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        reason = "transport closed"
        try:
            async for chunk in self._transport.read_available():
                if self.state == ConnectionState.CLOSED:
                    return
                self._handle_datagram(chunk)
        except RCONError as e:
            if self.state == ConnectionState.CLOSED:
                return
            logger.warning(f"RCON transport error from {self.host}:{self.port}: {e}")
            self.events.publish(RconErrorOccurred(error=e))
            reason = str(e)
        self.close(reason)

    def _handle_datagram(self, data: bytes) -> None:
        self._last_received = asyncio.get_running_loop().time()

        try:
            packet = decode_packet(data)
        except RCONProtocolError as e:
            self._malformed_count += 1
            logger.warning(f"Dropping malformed RCON packet from {self.host}:{self.port} "
                           f"({self._malformed_count} in a row): {e}")
            if self._malformed_count >= MAX_MALFORMED_PACKETS:
                error = RCONFramingError(f"{self._malformed_count} malformed packets in a row")
                logger.error(f"RCON stream from {self.host}:{self.port} desynced: {error}")
                self.events.publish(RconErrorOccurred(error=error))
                self.close("framing desync")
            return

        self._malformed_count = 0
        if packet.packet_type == PacketType.LOGIN:
            self._handle_login(packet)
        elif packet.packet_type == PacketType.COMMAND:
            self._handle_command_response(packet)
        else:
            self._handle_server_message(packet)

    def _handle_login(self, packet: Packet) -> None:
        if self._login_future is None or self._login_future.done():
            logger.debug(f"Ignoring unexpected login response from {self.host}:{self.port}")
            return
        self._login_future.set_result(packet.body == b'\x01')

    def _handle_command_response(self, packet: Packet) -> None:
        if packet.is_multipart:
            try:
                body = self._assembler.add(packet)
            except RCONProtocolError as e:
                logger.warning(f"Discarding multipart response from {self.host}:{self.port}: {e}")
                return
            if body is None:
                return
        else:
            body = packet.body

        text = body.decode('utf-8', errors='replace')
        queue = self._pending.get(packet.sequence)
        if not queue:
            # Keep-alive acks and fire-and-forget command responses land here
            logger.debug(f"RCON response for seq {packet.sequence} with no waiter: {text[:100]!r}")
            return

        pending = queue.popleft()
        if not queue:
            del self._pending[packet.sequence]
        if not pending.future.done():
            pending.future.set_result(text)

    def _handle_server_message(self, packet: Packet) -> None:
        try:
            self._write(message_ack_packet(packet.sequence))
        except RCONConnectionError as e:
            logger.warning(f"Could not acknowledge server message {packet.sequence}: {e}")

        if packet.sequence == self._last_message_sequence:
            logger.debug(f"Duplicate server message {packet.sequence} ignored")
            return
        self._last_message_sequence = packet.sequence

        message = packet.body.decode('utf-8', errors='replace')
        logger.debug(f"RCON server message from {self.host}:{self.port}: {message}")
        self.events.publish(ServerMessage(message=message))

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _next_sequence(self) -> int:
        sequence = self._sequence
        self._sequence = (sequence + 1) % SEQUENCE_MODULO
        return sequence

    def _write(self, packet: ClientPacket) -> None:
        if self._transport is None:
            raise RCONConnectionError(f"RCON client for {self.host}:{self.port} has no transport")
        self._transport.write(encode_packet(packet))

    def send_custom_command(self, command: str) -> Optional[int]:
        """
        Send a command without waiting for its response.

        Returns:
            The sequence number used, or None if the command was not sent
        """
        if not self.is_connected:
            logger.warning(f"RCON not connected to {self.host}:{self.port}, dropping command '{command}'")
            return None

        sequence = self._next_sequence()
        try:
            self._write(command_packet(sequence, command))
        except RCONConnectionError as e:
            logger.error(f"Failed to send RCON command '{command}': {e}")
            self.close(str(e))
            return None

        logger.debug(f"Sent RCON command '{command}' (seq {sequence})")
        return sequence

    async def send_command(self, command: str, timeout: Optional[float] = None) -> str:
        """
        Send a command and wait for its response.

        Raises:
            RCONConnectionError: not connected, or the connection dropped
            RCONTimeoutError: no response in time (the connection stays up)
        """
        if not self.is_connected:
            raise RCONConnectionError(f"RCON not connected to {self.host}:{self.port}")

        loop = asyncio.get_running_loop()
        timeout = self.command_timeout if timeout is None else timeout
        sequence = self._next_sequence()
        pending = PendingCommand(sequence, command, loop.time(), loop.create_future())
        self._pending[sequence].append(pending)

        try:
            self._write(command_packet(sequence, command))
        except RCONConnectionError as e:
            self._forget(pending)
            self.close(str(e))
            raise

        try:
            return await asyncio.wait_for(pending.future, timeout)
        except asyncio.TimeoutError:
            self._forget(pending)
            self._assembler.discard(sequence)
            logger.warning(f"RCON command '{command}' (seq {sequence}) timed out after {timeout}s")
            raise RCONTimeoutError(f"No response to '{command}' after {timeout}s")

    def _forget(self, pending: PendingCommand) -> None:
        queue = self._pending.get(pending.sequence)
        if queue and pending in queue:
            queue.remove(pending)
            if not queue:
                del self._pending[pending.sequence]

    async def _keepalive_loop(self) -> None:
        loop = asyncio.get_running_loop()
        dead_after = self.keepalive_interval * self.keepalive_dead_multiplier

        while self.state == ConnectionState.READY:
            await asyncio.sleep(self.keepalive_interval)
            if self.state != ConnectionState.READY:
                return

            silent_for = loop.time() - self._last_received
            if silent_for >= dead_after:
                logger.warning(f"No RCON traffic from {self.host}:{self.port} for {silent_for:.1f}s, "
                               f"closing connection")
                self.close("keep-alive timeout")
                return

            try:
                self._write(keepalive_packet(self._next_sequence()))
            except RCONConnectionError as e:
                self.close(str(e))
                return

    # ------------------------------------------------------------------
    # Players poll
    # ------------------------------------------------------------------

    def start_sending_players_command(self, interval: float = 30.0) -> None:
        """Poll the player list every interval seconds while connected."""
        self.players_interval = interval
        if self.is_connected:
            self._start_players_task()
        else:
            logger.info(f"Players poll for {self.host}:{self.port} will start once connected")

    def stop_sending_players_command(self) -> None:
        self.players_interval = None
        self._cancel(self._players_task)
        self._players_task = None

    def _start_players_task(self) -> None:
        self._cancel(self._players_task)
        self._players_task = asyncio.create_task(self._players_loop())

    async def _players_loop(self) -> None:
        while self.state == ConnectionState.READY and self.players_interval is not None:
            await self.poll_players()
            await asyncio.sleep(self.players_interval)

    async def poll_players(self) -> Optional[list[Player]]:
        """
        Run one players poll and publish PlayersUpdated.

        Returns None when the poll failed; failures are logged, never raised.
        """
        try:
            response = await self.send_command(self.PLAYERS_COMMAND)
        except RCONError as e:
            logger.warning(f"Players poll on {self.host}:{self.port} failed: {e}")
            return None

        try:
            players = parse_players(response)
        except ValueError as e:
            logger.warning(f"Players poll on {self.host}:{self.port} skipped: {e}")
            return None

        self.players = players
        logger.debug(f"Players poll on {self.host}:{self.port}: {len(players)} online")
        self.events.publish(PlayersUpdated(players=tuple(p.copy() for p in players)))
        return players

    # ------------------------------------------------------------------
    # Admin commands
    # ------------------------------------------------------------------

    async def _admin_command(self, command: str, message: str,
                             data: Optional[dict] = None) -> RCONResponse:
        try:
            response = await self.send_command(command)
            return RCONResponse(
                success=True,
                message=message,
                data=data,
                raw_response=response
            )
        except RCONError as e:
            return RCONResponse(success=False, message=str(e), data=data)

    async def kick(self, player_id: str) -> RCONResponse:
        """Kick a player by player id."""
        return await self._admin_command(
            f"#kick {player_id}", f"Kicked player {player_id}", {"player_id": player_id}
        )

    async def ban(self, player_id: str, duration: int, reason: str = "") -> RCONResponse:
        """Ban a player for duration seconds."""
        command = f"#ban create {player_id} {duration}"
        if reason:
            command += f" {reason}"
        return await self._admin_command(
            command, f"Banned player {player_id}",
            {"player_id": player_id, "duration": duration, "reason": reason}
        )

    async def unban(self, player_id: str) -> RCONResponse:
        """Remove a ban by player id."""
        return await self._admin_command(
            f"#ban remove {player_id}", f"Unbanned player {player_id}", {"player_id": player_id}
        )

    async def restart(self) -> RCONResponse:
        return await self._admin_command("#restart", "Server restart requested")

    async def shutdown(self) -> RCONResponse:
        return await self._admin_command("#shutdown", "Server shutdown requested")
