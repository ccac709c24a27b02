# services/battleye.py
"""
BattlEye RCON packets used by Arma Reforger dedicated servers.

Framing, checksums and packet parsing come from berconpy's protocol packet
classes. This module turns berconpy packets into the flat `Packet` view the
engine works with, reassembles multipart command responses and holds the
RCON exception hierarchy shared by the transport and the engine.

Packet types:
- login:   client sends the password, server answers ok or rejected
- command: client sends seq + command, server answers seq + response.
           An empty command is the keep-alive. Long responses arrive as
           numbered fragments of the same sequence.
- message: server pushes seq + text, client acknowledges with seq
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from berconpy.protocol import (
    ClientCommandPacket,
    ClientLoginPacket,
    ClientMessagePacket,
    ClientPacket,
    Packet as WirePacket,
    ServerCommandPacket,
    ServerLoginPacket,
    ServerMessagePacket,
)

logger = logging.getLogger(__name__)

SEQUENCE_MODULO = 256


class RCONError(Exception):
    """Base exception for RCON errors."""
    pass


class RCONConnectionError(RCONError):
    """Failed to connect to RCON server, or the connection dropped."""
    pass


class ConnectTimeoutError(RCONConnectionError):
    """The server did not answer in time."""
    pass


class ConnectRefusedError(RCONConnectionError):
    """The server actively refused the connection."""
    pass


class TransportClosedError(RCONConnectionError):
    """Write attempted on a closed transport."""
    pass


class RCONAuthError(RCONError):
    """RCON authentication failed."""
    pass


class RCONCommandError(RCONError):
    """RCON command execution failed."""
    pass


class RCONTimeoutError(RCONCommandError):
    """No response arrived for a command within the allowed time."""
    pass


class RCONProtocolError(RCONError):
    """A single packet could not be decoded."""
    pass


class RCONFramingError(RCONProtocolError):
    """The packet stream can no longer be trusted."""
    pass


class PacketType(IntEnum):
    """BattlEye packet types."""
    LOGIN = 0x00
    COMMAND = 0x01
    SERVER_MESSAGE = 0x02


def _as_bytes(message) -> bytes:
    if isinstance(message, str):
        return message.encode('utf-8')
    return bytes(message)


@dataclass(frozen=True)
class Packet:
    """One decoded server packet.

    For login packets `sequence` is None and `body` is b'\\x01' (accepted) or
    b'\\x00'. For multipart command responses `part_total` and `part_index`
    are set and `body` is the raw chunk.
    """
    packet_type: PacketType
    sequence: Optional[int] = None
    body: bytes = b''
    part_total: Optional[int] = None
    part_index: Optional[int] = None

    @property
    def is_multipart(self) -> bool:
        return self.part_total is not None


def login_packet(password: str) -> ClientPacket:
    return ClientLoginPacket(password)


def command_packet(sequence: int, command: str) -> ClientPacket:
    return ClientCommandPacket(sequence, command)


def keepalive_packet(sequence: int) -> ClientPacket:
    return ClientCommandPacket(sequence, '')


def message_ack_packet(sequence: int) -> ClientPacket:
    return ClientMessagePacket(sequence)


def encode_packet(packet: ClientPacket) -> bytes:
    """Wire bytes of a client packet."""
    return packet.data


def decode_packet(data: bytes) -> Packet:
    """Decode one datagram sent by the server.

    Raises:
        RCONProtocolError: berconpy rejected the datagram, or a fragment
            index lies outside its declared total
    """
    try:
        wire = WirePacket.from_bytes(data, from_client=False)
        return _from_wire(wire)
    except (ValueError, IndexError) as e:
        raise RCONProtocolError(f"Undecodable packet ({len(data)} bytes): {e}") from e


def _from_wire(wire: WirePacket) -> Packet:
    if isinstance(wire, ServerLoginPacket):
        return Packet(PacketType.LOGIN, body=b'\x01' if wire.login_success else b'\x00')

    if isinstance(wire, ServerMessagePacket):
        return Packet(PacketType.SERVER_MESSAGE, wire.sequence, _as_bytes(wire.message))

    if isinstance(wire, ServerCommandPacket):
        body = _as_bytes(wire.message)
        total, index = wire.total or 1, wire.index or 0
        if total <= 1 and index == 0:
            return Packet(PacketType.COMMAND, wire.sequence, body)
        if index >= total:
            raise RCONProtocolError(f"Invalid fragment {index}/{total}")
        return Packet(PacketType.COMMAND, wire.sequence, body, part_total=total, part_index=index)

    raise RCONProtocolError(f"Unexpected packet {type(wire).__name__} from server")


class MultipartAssembler:
    """
    Buffers multipart command responses until every fragment has arrived.

    Fragments may arrive in any order. Bytes are joined before decoding so a
    multi-byte UTF-8 character split across fragments survives intact.
    """

    def __init__(self):
        self._buffers: dict[int, dict] = {}  # sequence -> {total, parts}

    def add(self, packet: Packet) -> Optional[bytes]:
        """Add a fragment; return the joined body once complete.

        Raises:
            RCONProtocolError: fragment disagrees with previous fragments
        """
        state = self._buffers.get(packet.sequence)
        if state is None:
            state = {'total': packet.part_total, 'parts': {}}
            self._buffers[packet.sequence] = state
        elif state['total'] != packet.part_total:
            del self._buffers[packet.sequence]
            raise RCONProtocolError(
                f"Fragment count changed for sequence {packet.sequence}: "
                f"{state['total']} -> {packet.part_total}"
            )

        state['parts'][packet.part_index] = packet.body
        if len(state['parts']) < state['total']:
            return None

        del self._buffers[packet.sequence]
        return b''.join(state['parts'][i] for i in range(state['total']))

    def discard(self, sequence: int) -> None:
        """Forget a partially received response."""
        self._buffers.pop(sequence, None)

    def clear(self) -> None:
        self._buffers.clear()

    def __len__(self) -> int:
        return len(self._buffers)
