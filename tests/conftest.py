"""Shared fixtures: a scripted RCON transport and an in-memory log source."""

import asyncio
import struct
import zlib
from typing import Optional

import pytest

from services.battleye import PacketType, TransportClosedError
from services.log_monitor import FileSignature, LogSource, LogSourceUnavailable

HEADER = b'BE'


def checksum(payload: bytes) -> bytes:
    return struct.pack('<I', zlib.crc32(payload) & 0xFFFFFFFF)


def frame(payload: bytes) -> bytes:
    """Wrap a payload (starting at the 0xFF marker) in header and checksum."""
    return HEADER + checksum(payload) + payload


def server_packet(packet_type: PacketType, sequence: Optional[int] = None, body: bytes = b'',
                  part_total: Optional[int] = None, part_index: Optional[int] = None) -> bytes:
    """Wire bytes of a packet as the game server would send it."""
    payload = bytes([0xFF, packet_type])
    if sequence is not None:
        payload += bytes([sequence])
    if part_total is not None:
        payload += bytes([0x00, part_total, part_index])
    return frame(payload + body)


def corrupt_packet() -> bytes:
    payload = bytes([0xFF, PacketType.COMMAND, 0]) + b'oops'
    return HEADER + b'\x00\x00\x00\x00' + payload


class FakeTransport:
    """
    Stand-in for RconTransport.

    Records what the client writes and lets tests feed server datagrams.
    Answers the login packet with login_result (None stays silent) and
    answers commands listed in responses automatically.
    """

    def __init__(self, login_result: Optional[bool] = True, ack_keepalive: bool = True):
        self.login_result = login_result
        self.ack_keepalive = ack_keepalive
        self.responses: dict[str, str] = {}
        self.sent: list[bytes] = []
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def is_closed(self) -> bool:
        return self.closed

    def write(self, data: bytes) -> None:
        if self.closed:
            raise TransportClosedError("fake transport closed")
        self.sent.append(data)

        packet_type, sequence, body = self.parse_client(data)
        if packet_type == PacketType.LOGIN and self.login_result is not None:
            self.feed(server_packet(PacketType.LOGIN, body=b'\x01' if self.login_result else b'\x00'))
        elif packet_type == PacketType.COMMAND:
            command = body.decode('utf-8')
            if command == '' and self.ack_keepalive:
                self.feed(server_packet(PacketType.COMMAND, sequence))
            elif command in self.responses:
                self.feed(server_packet(PacketType.COMMAND, sequence, self.responses[command].encode('utf-8')))

    @staticmethod
    def parse_client(data: bytes) -> tuple[int, Optional[int], bytes]:
        """Split a client packet into (type, sequence, body)."""
        payload = data[6:]
        assert data[:2] == HEADER
        assert data[2:6] == checksum(payload)
        packet_type = payload[1]
        if packet_type == PacketType.LOGIN:
            return packet_type, None, payload[2:]
        return packet_type, payload[2], payload[3:]

    def sent_packets(self) -> list[tuple[int, Optional[int], bytes]]:
        return [self.parse_client(data) for data in self.sent]

    def sent_commands(self) -> list[tuple[int, str]]:
        return [(seq, body.decode('utf-8')) for packet_type, seq, body in self.sent_packets()
                if packet_type == PacketType.COMMAND and body]

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    async def read_available(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)


class MemoryLogSource(LogSource):
    """LogSource over in-memory files and a set of known directories."""

    join = staticmethod(lambda *parts: "/".join(parts))

    def __init__(self, directories=("/logs",)):
        self.files: dict[str, bytes] = {}
        self.inodes: dict[str, int] = {}
        self.mtimes: dict[str, float] = {}
        self.directories = set(directories)
        self.unavailable = False
        self.closed = False
        self._next_inode = 1

    def write(self, path: str, data: bytes, mtime: Optional[float] = None) -> None:
        """Create or replace a file (new inode)."""
        self.files[path] = data
        self.inodes[path] = self._next_inode
        self._next_inode += 1
        self.mtimes[path] = mtime if mtime is not None else float(self._next_inode)

    def append(self, path: str, data: bytes) -> None:
        self.files[path] += data

    def truncate(self, path: str, data: bytes = b'') -> None:
        """Shrink a file in place (same inode)."""
        self.files[path] = data

    def add_dir(self, path: str, mtime: float) -> None:
        self.directories.add(path)
        self.mtimes[path] = mtime

    def _check(self):
        if self.unavailable:
            raise LogSourceUnavailable("source offline")

    async def close(self) -> None:
        self.closed = True

    async def is_dir(self, path: str) -> bool:
        self._check()
        return path in self.directories

    async def list_dirs(self, path: str) -> list[tuple[str, float]]:
        self._check()
        prefix = path.rstrip('/') + '/'
        result = []
        for directory in self.directories:
            if directory.startswith(prefix) and '/' not in directory[len(prefix):]:
                result.append((directory[len(prefix):], self.mtimes.get(directory, 0.0)))
        return result

    async def stat(self, path: str) -> FileSignature:
        self._check()
        if path not in self.files:
            raise FileNotFoundError(path)
        return FileSignature(size=len(self.files[path]), mtime=self.mtimes[path], inode=self.inodes[path])

    async def read_from(self, path: str, offset: int) -> bytes:
        self._check()
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path][offset:]


@pytest.fixture
def fake_transport():
    """A transport that accepts the login."""
    return FakeTransport()


@pytest.fixture
def transport_factory(fake_transport):
    """RconTransport.open replacement handing out fake_transport."""
    calls = []

    async def factory(host, port, timeout):
        calls.append((host, port, timeout))
        return fake_transport

    factory.calls = calls
    return factory


@pytest.fixture
def memory_source():
    return MemoryLogSource()


@pytest.fixture
def make_packet():
    """Build server-side wire packets."""
    return server_packet


@pytest.fixture
def make_corrupt_packet():
    return corrupt_packet


@pytest.fixture
def transport_class():
    return FakeTransport


@pytest.fixture
def source_class():
    return MemoryLogSource


@pytest.fixture
def make_frame():
    """Frame a raw payload with header and checksum."""
    return frame
