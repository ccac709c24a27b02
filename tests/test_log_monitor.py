"""Tests for log tailing."""

import asyncio
import logging

import pytest

from services.log_monitor import (
    LocalLogSource,
    LogDirectoryNotFound,
    LogMonitor,
)


def make_monitor(source, **kwargs):
    kwargs.setdefault('poll_interval', 60)
    return LogMonitor(source, "/logs", **kwargs)


class TestResolvePath:
    """Test suite for session directory resolution."""

    @pytest.mark.asyncio
    async def test_flat_layout(self, memory_source):
        """Test the file directly inside log_dir."""
        memory_source.write("/logs/console.log", b'')

        assert await make_monitor(memory_source).resolve_path() == "/logs/console.log"

    @pytest.mark.asyncio
    async def test_newest_session_directory_wins(self, memory_source):
        """Test the most recent sub-directory holding the file is chosen."""
        memory_source.add_dir("/logs/logs_2024-05-01", 100.0)
        memory_source.add_dir("/logs/logs_2024-05-02", 200.0)
        memory_source.add_dir("/logs/empty_newest", 300.0)
        memory_source.write("/logs/logs_2024-05-01/console.log", b'')
        memory_source.write("/logs/logs_2024-05-02/console.log", b'')

        path = await make_monitor(memory_source).resolve_path()

        assert path == "/logs/logs_2024-05-02/console.log"


class TestWatch:
    """Test suite for starting and stopping the monitor."""

    @pytest.mark.asyncio
    async def test_missing_directory(self, source_class):
        """Test watch fails when the directory is absent."""
        source = source_class(directories=())
        monitor = make_monitor(source)

        with pytest.raises(LogDirectoryNotFound):
            await monitor.watch()
        assert not monitor.is_running
        assert source.closed

    @pytest.mark.asyncio
    async def test_primes_at_end_of_file(self, memory_source):
        """Test existing content is not replayed by default."""
        memory_source.write("/logs/console.log", b'old line\n')
        monitor = make_monitor(memory_source)

        await monitor.watch()
        try:
            assert monitor.cursor.offset == len(b'old line\n')
            assert await monitor.poll_once() == []
        finally:
            await monitor.unwatch()

    @pytest.mark.asyncio
    async def test_from_beginning(self, memory_source):
        """Test from_beginning replays existing content."""
        memory_source.write("/logs/console.log", b'old line\n')
        monitor = make_monitor(memory_source, from_beginning=True)

        await monitor.watch()
        try:
            assert await monitor.poll_once() == ["old line"]
        finally:
            await monitor.unwatch()

    @pytest.mark.asyncio
    async def test_unwatch_is_idempotent(self, memory_source):
        """Test unwatch can be called repeatedly."""
        monitor = make_monitor(memory_source)
        await monitor.watch()

        await monitor.unwatch()
        await monitor.unwatch()

        assert not monitor.is_running
        assert memory_source.closed

    @pytest.mark.asyncio
    async def test_background_polling_delivers_lines(self, memory_source):
        """Test the poll task invokes line callbacks."""
        memory_source.write("/logs/console.log", b'')
        monitor = make_monitor(memory_source, poll_interval=0.01)
        lines = []
        monitor.on_line(lines.append)

        await monitor.watch()
        memory_source.append("/logs/console.log", b'hello\nworld\n')
        await asyncio.sleep(0.1)
        await monitor.unwatch()

        assert lines == ["hello", "world"]


class TestPollOnce:
    """Test suite for incremental reads."""

    @pytest.mark.asyncio
    async def test_append_emits_only_new_lines(self, memory_source):
        """Test two polls return exactly the appended lines."""
        memory_source.write("/logs/console.log", b'one\n')
        monitor = make_monitor(memory_source)
        await monitor.watch()

        memory_source.append("/logs/console.log", b'two\nthree\n')
        first = await monitor.poll_once()
        memory_source.append("/logs/console.log", b'four\n')
        second = await monitor.poll_once()
        await monitor.unwatch()

        assert first == ["two", "three"]
        assert second == ["four"]

    @pytest.mark.asyncio
    async def test_partial_line_is_held_back(self, memory_source):
        """Test a line without terminator waits for the next poll."""
        memory_source.write("/logs/console.log", b'')
        monitor = make_monitor(memory_source)
        await monitor.watch()

        memory_source.append("/logs/console.log", b'complete\npart')
        first = await monitor.poll_once()
        memory_source.append("/logs/console.log", b'ial\r\n')
        second = await monitor.poll_once()
        await monitor.unwatch()

        assert first == ["complete"]
        assert second == ["partial"]

    @pytest.mark.asyncio
    async def test_truncation_restarts_from_zero(self, memory_source):
        """Test a shrunken file is re-read from the start."""
        memory_source.write("/logs/console.log", b'first\nsecond\n')
        monitor = make_monitor(memory_source)
        rotations = []
        monitor.on_rotate(rotations.append)
        await monitor.watch()

        memory_source.truncate("/logs/console.log", b'new\n')
        lines = await monitor.poll_once()
        await monitor.unwatch()

        assert lines == ["new"]
        assert rotations == ["/logs/console.log"]

    @pytest.mark.asyncio
    async def test_replaced_file_restarts_from_zero(self, memory_source):
        """Test a new file identity at the same path is read from the start."""
        memory_source.write("/logs/console.log", b'a long previous session line\n')
        monitor = make_monitor(memory_source)
        await monitor.watch()

        memory_source.write("/logs/console.log", b'fresh start line that is longer than before\n')
        lines = await monitor.poll_once()
        await monitor.unwatch()

        assert lines == ["fresh start line that is longer than before"]

    @pytest.mark.asyncio
    async def test_new_session_directory(self, memory_source):
        """Test rotation to a newer session directory."""
        memory_source.add_dir("/logs/s1", 100.0)
        memory_source.write("/logs/s1/console.log", b'old\n')
        monitor = make_monitor(memory_source)
        rotations = []
        monitor.on_rotate(rotations.append)
        await monitor.watch()

        memory_source.add_dir("/logs/s2", 200.0)
        memory_source.write("/logs/s2/console.log", b'session two\n')
        lines = await monitor.poll_once()
        await monitor.unwatch()

        assert lines == ["session two"]
        assert rotations == ["/logs/s2/console.log"]
        assert monitor.current_path == "/logs/s2/console.log"

    @pytest.mark.asyncio
    async def test_file_appearing_later_is_read_from_start(self, memory_source):
        """Test a file created after watch starts."""
        monitor = make_monitor(memory_source)
        await monitor.watch()
        assert monitor.cursor is None
        assert await monitor.poll_once() == []

        memory_source.write("/logs/console.log", b'boot\n')
        lines = await monitor.poll_once()
        await monitor.unwatch()

        assert lines == ["boot"]

    @pytest.mark.asyncio
    async def test_unavailable_source_skips_tick(self, memory_source):
        """Test a transient source failure keeps the cursor."""
        memory_source.write("/logs/console.log", b'')
        monitor = make_monitor(memory_source)
        await monitor.watch()

        memory_source.append("/logs/console.log", b'queued\n')
        memory_source.unavailable = True
        assert await monitor.poll_once() == []
        assert monitor.cursor.offset == 0

        memory_source.unavailable = False
        lines = await monitor.poll_once()
        await monitor.unwatch()

        assert lines == ["queued"]

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_delivery(self, memory_source):
        """Test a failing line callback is isolated."""
        memory_source.write("/logs/console.log", b'')
        monitor = make_monitor(memory_source)
        received = []

        def broken(line):
            raise RuntimeError("boom")

        monitor.on_line(broken)
        monitor.on_line(received.append)
        await monitor.watch()

        memory_source.append("/logs/console.log", b'x\n')
        await monitor.poll_once()
        await monitor.unwatch()

        assert received == ["x"]

    @pytest.mark.asyncio
    async def test_async_callback_tasks_are_tracked(self, memory_source, caplog):
        """Test coroutine callbacks run to completion and their failures are logged."""
        memory_source.write("/logs/console.log", b'')
        monitor = make_monitor(memory_source)
        received = []

        async def collect(line):
            received.append(line)

        async def broken(line):
            raise RuntimeError("async boom")

        monitor.on_line(collect)
        monitor.on_line(broken)
        await monitor.watch()

        memory_source.append("/logs/console.log", b'x\n')
        with caplog.at_level(logging.ERROR, logger="services.log_monitor"):
            await monitor.poll_once()
            assert len(monitor._callback_tasks) == 2
            await asyncio.sleep(0)
            await asyncio.sleep(0)
        await monitor.unwatch()

        assert received == ["x"]
        assert len(monitor._callback_tasks) == 0
        assert "async boom" in caplog.text


class TestFatalErrors:
    """Test suite for unexpected failures in the poll loop."""

    @pytest.mark.asyncio
    async def test_unexpected_error_stops_monitor(self, source_class):
        """Test on_error fires and the monitor stops."""

        class BrokenSource(source_class):
            async def read_from(self, path, offset):
                raise RuntimeError("disk on fire")

        source = BrokenSource()
        source.write("/logs/console.log", b'')
        monitor = make_monitor(source, poll_interval=0.01)
        errors = []
        monitor.on_error(errors.append)

        await monitor.watch()
        source.append("/logs/console.log", b'line\n')
        await asyncio.sleep(0.1)

        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)
        assert not monitor.is_running
        assert source.closed
        await monitor.unwatch()


class TestLocalLogSource:
    """Test suite for the filesystem source."""

    @pytest.mark.asyncio
    async def test_tails_real_file(self, tmp_path):
        """Test appended lines are read from disk."""
        session = tmp_path / "logs_2024-05-01_18-00-00"
        session.mkdir()
        log_file = session / "console.log"
        log_file.write_bytes(b'existing\n')
        monitor = LogMonitor(LocalLogSource(), str(tmp_path), poll_interval=60)

        await monitor.watch()
        with open(log_file, 'ab') as f:
            f.write('Jürgen joined\n'.encode('utf-8'))
        lines = await monitor.poll_once()
        await monitor.unwatch()

        assert monitor.current_path == str(log_file)
        assert lines == ["Jürgen joined"]

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        """Test a missing local directory."""
        monitor = LogMonitor(LocalLogSource(), str(tmp_path / "nope"))

        with pytest.raises(LogDirectoryNotFound):
            await monitor.watch()
