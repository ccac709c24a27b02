# services/log_monitor.py
"""
Log file tailing for Arma Reforger servers.

Reads only the bytes appended since the last poll, either from the local
filesystem or over SFTP (paramiko). Reforger writes each session into its own
sub-directory (logs/logs_2024-05-01_18-00-00/console.log), so every tick
resolves the newest session directory holding the watched file. A new session
directory, a replaced file or a shrunken file resets the cursor to 0.

Only complete lines are emitted. A trailing line without terminator stays in
the file and is read again on the next tick.
"""

import asyncio
import logging
import os
import posixpath
import socket
import stat as stat_module
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import paramiko

logger = logging.getLogger(__name__)


class LogMonitorError(Exception):
    """Base exception for log monitoring errors."""
    pass


class LogDirectoryNotFound(LogMonitorError):
    """Configured log directory does not exist."""
    pass


class LogSourceUnavailable(LogMonitorError):
    """The source could not be read this tick. Retried on the next tick."""
    pass


class SFTPConnectionError(LogSourceUnavailable):
    """Failed to connect to SFTP server."""
    pass


class SFTPAuthError(LogMonitorError):
    """SFTP authentication failed."""
    pass


@dataclass(frozen=True)
class FileSignature:
    """What a stat of the watched file tells us."""
    size: int
    mtime: float
    inode: Optional[int] = None  # unavailable over SFTP


@dataclass
class LogCursor:
    """Read position within one file identity."""
    identity: tuple
    offset: int = 0


class LogSource(ABC):
    """Filesystem access used by LogMonitor."""

    join = staticmethod(os.path.join)

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def is_dir(self, path: str) -> bool:
        ...

    @abstractmethod
    async def list_dirs(self, path: str) -> list[tuple[str, float]]:
        """Return (name, mtime) for every sub-directory of path."""
        ...

    @abstractmethod
    async def stat(self, path: str) -> FileSignature:
        """Raises FileNotFoundError when the file does not exist."""
        ...

    @abstractmethod
    async def read_from(self, path: str, offset: int) -> bytes:
        """Read from offset to the current end of the file."""
        ...


class LocalLogSource(LogSource):
    """Reads logs from the local filesystem."""

    async def is_dir(self, path: str) -> bool:
        return await asyncio.to_thread(os.path.isdir, path)

    async def list_dirs(self, path: str) -> list[tuple[str, float]]:
        def _list():
            with os.scandir(path) as entries:
                return [(entry.name, entry.stat().st_mtime)
                        for entry in entries if entry.is_dir()]

        return await asyncio.to_thread(_list)

    async def stat(self, path: str) -> FileSignature:
        st = await asyncio.to_thread(os.stat, path)
        return FileSignature(size=st.st_size, mtime=st.st_mtime, inode=st.st_ino)

    async def read_from(self, path: str, offset: int) -> bytes:
        def _read():
            with open(path, 'rb') as f:
                f.seek(offset)
                return f.read()

        return await asyncio.to_thread(_read)


class SFTPLogSource(LogSource):
    """
    Reads logs over SFTP.

    The connection is opened lazily and dropped on any I/O error; the next
    tick reconnects. Authentication failures are fatal.
    """

    join = staticmethod(posixpath.join)

    def __init__(self, host: str, port: int, username: str, password: str,
                 timeout: float = 30, server_name: str = "Unknown Server"):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout
        self.server_name = server_name  # For log identification
        self._transport: Optional[paramiko.Transport] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    @property
    def is_connected(self) -> bool:
        return self._sftp is not None

    async def connect(self) -> None:
        """Establish SFTP connection."""
        if self._sftp is not None:
            return

        def _connect():
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
            transport = paramiko.Transport(sock)
            transport.banner_timeout = self.timeout
            transport.auth_timeout = self.timeout
            try:
                transport.connect(username=self.username, password=self.password)
                return transport, paramiko.SFTPClient.from_transport(transport)
            except Exception:
                transport.close()
                raise

        try:
            self._transport, self._sftp = await asyncio.to_thread(_connect)
        except paramiko.AuthenticationException as e:
            logger.error(f"[{self.server_name}] SFTP authentication failed for {self.username}@{self.host}")
            raise SFTPAuthError(f"Authentication failed: {e}")
        except (OSError, paramiko.SSHException, EOFError) as e:
            logger.warning(f"[{self.server_name}] SFTP connection to {self.host}:{self.port} failed: {e}")
            raise SFTPConnectionError(f"Connection failed: {e}")

        logger.info(f"[{self.server_name}] SFTP connected to {self.host}:{self.port}")

    async def close(self) -> None:
        """Close SFTP connection."""
        sftp, transport = self._sftp, self._transport
        self._sftp = self._transport = None
        try:
            if sftp:
                await asyncio.to_thread(sftp.close)
            if transport:
                await asyncio.to_thread(transport.close)
        except (OSError, paramiko.SSHException) as e:
            logger.debug(f"[{self.server_name}] Error disconnecting SFTP: {e}")

    async def _run(self, func: Callable, *args):
        await self.connect()
        try:
            return await asyncio.to_thread(func, self._sftp, *args)
        except FileNotFoundError:
            raise
        except (OSError, paramiko.SSHException, EOFError) as e:
            logger.warning(f"[{self.server_name}] SFTP read failed, reconnecting next tick: {e}")
            await self.close()
            raise LogSourceUnavailable(f"SFTP operation on {self.host} failed: {e}")

    async def is_dir(self, path: str) -> bool:
        def _is_dir(sftp, p):
            try:
                return stat_module.S_ISDIR(sftp.stat(p).st_mode)
            except FileNotFoundError:
                return False

        return await self._run(_is_dir, path)

    async def list_dirs(self, path: str) -> list[tuple[str, float]]:
        def _list(sftp, p):
            return [(attr.filename, attr.st_mtime or 0)
                    for attr in sftp.listdir_attr(p)
                    if attr.st_mode is not None and stat_module.S_ISDIR(attr.st_mode)]

        return await self._run(_list, path)

    async def stat(self, path: str) -> FileSignature:
        attrs = await self._run(lambda sftp, p: sftp.stat(p), path)
        return FileSignature(size=attrs.st_size or 0, mtime=attrs.st_mtime or 0)

    async def read_from(self, path: str, offset: int) -> bytes:
        def _read(sftp, p, start):
            with sftp.open(p, 'rb') as f:
                f.seek(start)
                return f.read()

        return await self._run(_read, path, offset)


LineCallback = Callable[[str], Any]
ErrorCallback = Callable[[Exception], Any]
RotateCallback = Callable[[str], Any]


class LogMonitor:
    """
    Background log monitor that polls one log file and invokes callbacks
    for every new complete line.
    """

    def __init__(self, source: LogSource, log_dir: str, file_name: str = "console.log",
                 poll_interval: float = 1.0, from_beginning: bool = False,
                 name: str = "log"):
        self.source = source
        self.log_dir = log_dir
        self.file_name = file_name
        self.poll_interval = poll_interval
        self.from_beginning = from_beginning
        self.name = name
        self.cursor: Optional[LogCursor] = None
        self.current_path: Optional[str] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._line_callbacks: list[LineCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._rotate_callbacks: list[RotateCallback] = []
        self._callback_tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        """Check if monitor is running."""
        return self._running

    def on_line(self, callback: LineCallback) -> None:
        self._line_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register a callback for fatal errors that stop the monitor."""
        self._error_callbacks.append(callback)

    def on_rotate(self, callback: RotateCallback) -> None:
        """Register a callback invoked with the new path after rotation or truncation."""
        self._rotate_callbacks.append(callback)

    async def watch(self) -> None:
        """
        Verify the log directory, prime the cursor and start polling.

        Raises:
            LogDirectoryNotFound: log_dir does not exist
            SFTPAuthError / SFTPConnectionError: remote source unreachable
        """
        if self._running:
            logger.warning(f"[{self.name}] Monitor already running")
            return

        await self.source.connect()
        if not await self.source.is_dir(self.log_dir):
            await self.source.close()
            raise LogDirectoryNotFound(f"Log directory not found: {self.log_dir}")

        await self._prime()
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"[{self.name}] Watching {self.current_path or self.log_dir}, "
                    f"poll interval: {self.poll_interval}s")

    async def _prime(self) -> None:
        try:
            path = await self.resolve_path()
            signature = await self.source.stat(path)
        except FileNotFoundError:
            # File not created yet: read it from the start once it appears
            logger.info(f"[{self.name}] {self.file_name} not present yet in {self.log_dir}")
            self.cursor = None
            return

        self.current_path = path
        offset = 0 if self.from_beginning else signature.size
        self.cursor = LogCursor(self._identity(path, signature), offset)

    async def unwatch(self) -> None:
        """Stop polling and release the source. Safe to call any number of times."""
        self._running = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.source.close()

    async def resolve_path(self) -> str:
        """Newest session sub-directory holding file_name, else log_dir/file_name."""
        try:
            directories = await self.source.list_dirs(self.log_dir)
        except FileNotFoundError:
            directories = []

        for name, _ in sorted(directories, key=lambda d: (d[1], d[0]), reverse=True):
            candidate = self.source.join(self.log_dir, name, self.file_name)
            try:
                await self.source.stat(candidate)
            except FileNotFoundError:
                continue
            return candidate
        return self.source.join(self.log_dir, self.file_name)

    @staticmethod
    def _identity(path: str, signature: FileSignature) -> tuple:
        return (path, signature.inode)

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.poll_interval)
            if not self._running:
                return
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"[{self.name}] Log monitor stopped: {e}", exc_info=True)
                self._running = False
                self._task = None
                await self.source.close()
                self._notify(self._error_callbacks, e)
                return

    async def poll_once(self) -> list[str]:
        """
        Run one tick and return the emitted lines.

        Transient failures are logged and skip the tick without touching the
        cursor. Anything else propagates.
        """
        try:
            path = await self.resolve_path()
            signature = await self.source.stat(path)
        except FileNotFoundError:
            logger.debug(f"[{self.name}] {self.file_name} not found, waiting")
            return []
        except LogSourceUnavailable as e:
            logger.warning(f"[{self.name}] Log source unavailable, skipping tick: {e}")
            return []

        identity = self._identity(path, signature)
        if self.cursor is None:
            logger.info(f"[{self.name}] Log file appeared: {path}")
            self.cursor = LogCursor(identity, 0)
            self.current_path = path
        elif self.cursor.identity != identity:
            logger.info(f"[{self.name}] Log rotated to {path}, reading from start")
            self.cursor = LogCursor(identity, 0)
            self.current_path = path
            self._notify(self._rotate_callbacks, path)
        elif signature.size < self.cursor.offset:
            logger.info(f"[{self.name}] Log truncated ({signature.size} < {self.cursor.offset}), "
                        f"reading from start")
            self.cursor.offset = 0
            self._notify(self._rotate_callbacks, path)

        if signature.size == self.cursor.offset:
            return []

        try:
            data = await self.source.read_from(path, self.cursor.offset)
        except FileNotFoundError:
            logger.debug(f"[{self.name}] {path} vanished during read")
            return []
        except LogSourceUnavailable as e:
            logger.warning(f"[{self.name}] Log source unavailable, skipping tick: {e}")
            return []

        end = data.rfind(b'\n')
        if end < 0:
            return []

        complete = data[:end + 1]
        self.cursor.offset += len(complete)
        lines = [raw.decode('utf-8', errors='replace').rstrip('\r')
                 for raw in complete.split(b'\n')[:-1]]

        logger.debug(f"[{self.name}] Read {len(lines)} new lines, offset {self.cursor.offset}")
        for line in lines:
            self._notify(self._line_callbacks, line)
        return lines

    def _notify(self, callbacks: list, value) -> None:
        for callback in callbacks:
            try:
                result = callback(value)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._callback_done)
            except Exception as e:
                logger.error(f"[{self.name}] Callback error: {e}", exc_info=True)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self.name}] Async callback failed: {task.exception()}")
