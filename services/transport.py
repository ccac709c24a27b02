# services/transport.py
"""
Connection transport for BattlEye RCON.

BattlEye RCON runs over UDP, so a "connection" is a connected datagram
endpoint. Every received datagram is surfaced as one chunk by
read_available(). No retry policy lives here; the protocol engine and the
server orchestrator decide what to do with failures.
"""

import asyncio
import logging
import socket
from typing import AsyncIterator, Optional

from services.battleye import (
    ConnectRefusedError,
    ConnectTimeoutError,
    RCONConnectionError,
    TransportClosedError,
)

logger = logging.getLogger(__name__)

_EOF = object()


class _QueueProtocol(asyncio.DatagramProtocol):
    """Pushes datagrams and socket errors into a queue for the reader."""

    def __init__(self, queue: asyncio.Queue):
        self._queue = queue

    def datagram_received(self, data: bytes, addr) -> None:
        self._queue.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        self._queue.put_nowait(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._queue.put_nowait(exc if exc is not None else _EOF)


class RconTransport:
    """A connected UDP endpoint to one RCON server."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self._queue: asyncio.Queue = asyncio.Queue()
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._closed = False

    @classmethod
    async def open(cls, host: str, port: int, timeout: float = 10.0) -> "RconTransport":
        """
        Open a transport to host:port.

        Raises:
            ConnectTimeoutError: name resolution or socket setup took too long
            ConnectRefusedError: the peer refused the connection
            RCONConnectionError: any other socket failure
        """
        instance = cls(host, port)
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await asyncio.wait_for(
                loop.create_datagram_endpoint(
                    lambda: _QueueProtocol(instance._queue),
                    remote_addr=(host, port),
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectTimeoutError(f"Timed out opening {host}:{port}")
        except ConnectionRefusedError as e:
            raise ConnectRefusedError(f"Connection refused by {host}:{port}: {e}")
        except (OSError, socket.gaierror) as e:
            raise RCONConnectionError(f"Could not open {host}:{port}: {e}")

        instance._transport = transport
        logger.debug(f"RCON transport opened to {host}:{port}")
        return instance

    @property
    def is_closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        """Send one datagram.

        Raises:
            TransportClosedError: the transport was closed or never opened
        """
        if self._closed or self._transport is None or self._transport.is_closing():
            raise TransportClosedError(f"Transport to {self.host}:{self.port} is closed")
        try:
            self._transport.sendto(data)
        except OSError as e:
            raise TransportClosedError(f"Write to {self.host}:{self.port} failed: {e}")

    async def read_available(self) -> AsyncIterator[bytes]:
        """
        Yield received datagrams until the transport is closed.

        Raises:
            ConnectRefusedError: the peer port is unreachable
            RCONConnectionError: any other socket error
        """
        while True:
            item = await self._queue.get()
            if item is _EOF:
                return
            if isinstance(item, ConnectionRefusedError):
                raise ConnectRefusedError(f"{self.host}:{self.port} is unreachable: {item}")
            if isinstance(item, Exception):
                raise RCONConnectionError(f"Socket error on {self.host}:{self.port}: {item}")
            yield item

    def close(self) -> None:
        """Close the transport. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True
        if self._transport is not None:
            self._transport.close()
        # Wake up a pending reader even if connection_lost never fires
        self._queue.put_nowait(_EOF)
        logger.debug(f"RCON transport to {self.host}:{self.port} closed")
