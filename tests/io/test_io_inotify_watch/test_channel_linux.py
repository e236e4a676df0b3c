# SPDX-FileCopyrightText: 2023 Mewbot Developers <mewbot@quicksilver.london>
#
# SPDX-License-Identifier: BSD-2-Clause

"""
Tests for the event channel - against a real inotify instance.
"""

from typing import Any

import errno
import os

import pytest

from mewbot.io.inotify_watch import channel as channel_module
from mewbot.io.inotify_watch.channel import (
    MIN_READ_SIZE,
    ChannelState,
    EventChannel,
)
from mewbot.io.inotify_watch.decoder import decode_events
from mewbot.io.inotify_watch.exceptions import (
    AddWatchError,
    ChannelClosedError,
    InitError,
    InvalidPathError,
    KernelContractViolation,
    PathTooLongError,
    RemoveWatchError,
)
from mewbot.io.inotify_watch.flags import EventFlags, InitFlags
from mewbot.io.inotify_watch.watch_table import WatchTable

from tests.io.test_io_inotify_watch.inotify_test_utils import WatchTestUtils, linux_only

# pylint: disable=invalid-name
# for clarity, test functions should be named after the things they test


class TestEventChannelPaths:
    """
    Path resolution - which happens before the kernel is involved.
    """

    def test_resolve_path_absolute_unchanged(self) -> None:
        """
        Absolute, normalised paths pass straight through.
        """
        assert EventChannel.resolve_path("/tmp/some/file") == "/tmp/some/file"
        assert EventChannel.resolve_path(b"/tmp/some/../file") == "/tmp/file"

    def test_resolve_path_relative(
        self, tmp_path: "os.PathLike[str]", monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """
        Relative paths are joined onto the working directory.
        """
        monkeypatch.chdir(tmp_path)

        assert EventChannel.resolve_path("a/b") == os.path.join(os.getcwd(), "a", "b")

    def test_resolve_path_rejects_bad_paths(self) -> None:
        """
        Empty paths, NUL bytes, long components and long paths are all rejected.
        """
        with pytest.raises(InvalidPathError):
            EventChannel.resolve_path("")
        with pytest.raises(InvalidPathError):
            EventChannel.resolve_path("/tmp/a\x00b")
        with pytest.raises(PathTooLongError):
            EventChannel.resolve_path("/tmp/" + "x" * 256)
        with pytest.raises(PathTooLongError):
            EventChannel.resolve_path("/" + "/".join(["y" * 200] * 21))

    def test_unknown_options_rejected(self) -> None:
        """
        Only NONBLOCK and CLOEXEC can be given at creation.
        """
        with pytest.raises(ValueError):
            EventChannel(0x1)

    def test_zero_byte_read_is_a_contract_violation(self) -> None:
        """
        A successful read of nothing should never happen.
        """
        with pytest.raises(KernelContractViolation):
            EventChannel._check_read_count(0)  # pylint: disable=protected-access
        assert EventChannel._check_read_count(16) == 16  # pylint: disable=protected-access


@linux_only
class TestEventChannelLinux(WatchTestUtils):
    """
    Channel lifecycle and kernel calls.
    """

    def test_open_and_close(self) -> None:
        """
        NEW -> OPEN -> CLOSED - and the descriptor is released.
        """
        channel = EventChannel(InitFlags.NONBLOCK | InitFlags.CLOEXEC)
        assert channel.state is ChannelState.NEW

        channel.open()
        assert channel.state is ChannelState.OPEN
        assert channel.nonblocking
        fd = channel.fileno()
        assert not os.get_inheritable(fd)

        channel.close()
        assert channel.closed
        with pytest.raises(OSError):
            os.fstat(fd)

    def test_inheritable_without_cloexec(self) -> None:
        """
        Leaving out CLOEXEC makes the descriptor inheritable.
        """
        with EventChannel.create(InitFlags.EMPTY) as channel:
            assert os.get_inheritable(channel.fileno())
            assert not channel.nonblocking

    def test_close_twice_is_fatal(self) -> None:
        """
        A channel can only be closed once.
        """
        channel = EventChannel.create()
        channel.close()

        with pytest.raises(ChannelClosedError):
            channel.close()

    def test_use_after_close_is_fatal(self, tmp_path: "os.PathLike[str]") -> None:
        """
        Nothing can be done with a closed - or never opened - channel.
        """
        unopened = EventChannel()
        with pytest.raises(ChannelClosedError):
            unopened.add_watch(os.fspath(tmp_path), EventFlags.OPEN)

        channel = EventChannel.create()
        channel.close()
        with pytest.raises(ChannelClosedError):
            channel.add_watch(os.fspath(tmp_path), EventFlags.OPEN)
        with pytest.raises(ChannelClosedError):
            channel.read()
        with pytest.raises(ChannelClosedError):
            channel.open()

    def test_init_failure_raises_InitError(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """
        If the kernel refuses an instance, InitError carries the errno.
        """

        def refuse(**_: Any) -> None:
            raise OSError(errno.EMFILE, os.strerror(errno.EMFILE))

        monkeypatch.setattr(channel_module, "INotify", refuse)
        channel = EventChannel()

        with pytest.raises(InitError) as exc_info:
            channel.open()

        assert exc_info.value.errno == errno.EMFILE
        assert channel.state is ChannelState.NEW

    def test_add_watch_missing_path(self, tmp_path: "os.PathLike[str]") -> None:
        """
        Watching something which does not exist fails with ENOENT.
        """
        with EventChannel.create() as channel:
            with pytest.raises(AddWatchError) as exc_info:
                channel.add_watch(self.in_tmp(tmp_path, "nope"), EventFlags.OPEN)

        assert exc_info.value.errno == errno.ENOENT
        assert exc_info.value.path == self.in_tmp(tmp_path, "nope")

    def test_add_watch_same_path_same_handle(self, tmp_path: "os.PathLike[str]") -> None:
        """
        The kernel hands back the existing handle for a path it already watches.
        """
        with EventChannel.create() as channel:
            first = channel.add_watch(os.fspath(tmp_path), EventFlags.OPEN)
            second = channel.add_watch(os.fspath(tmp_path), EventFlags.OPEN)
            other = channel.add_watch(os.fspath(tmp_path) + "/.", EventFlags.OPEN)

        assert first == second == other

    def test_remove_unknown_handle(self) -> None:
        """
        Removing a handle the kernel does not know fails with EINVAL.
        """
        with EventChannel.create() as channel:
            with pytest.raises(RemoveWatchError) as exc_info:
                channel.remove_watch(12345)

        assert exc_info.value.errno == errno.EINVAL

    def test_nonblocking_read_with_nothing_pending(self) -> None:
        """
        A non-blocking channel with nothing queued returns None - not an error.
        """
        with EventChannel.create(InitFlags.NONBLOCK) as channel:
            assert channel.read() is None
            assert channel.read_into(bytearray(MIN_READ_SIZE)) is None

    def test_blocking_read_with_timeout(self) -> None:
        """
        A timeout on a blocking channel gives None if nothing arrives.
        """
        with EventChannel.create() as channel:
            assert channel.read(timeout=0.05) is None

    def test_read_buffer_too_small(self) -> None:
        """
        Buffers which could not hold a maximal event are refused.
        """
        with EventChannel.create(InitFlags.NONBLOCK) as channel:
            with pytest.raises(ValueError):
                channel.read_into(bytearray(MIN_READ_SIZE - 1))
            with pytest.raises(ValueError):
                channel.read_into(bytes(MIN_READ_SIZE))
            with pytest.raises(ValueError):
                channel.read(MIN_READ_SIZE - 1)

    def test_read_into_buffer(self, tmp_path: "os.PathLike[str]") -> None:
        """
        read_into fills the caller's buffer and reports the valid length.
        """
        file_path = self.in_tmp(tmp_path, "watched_file")
        self.touch(file_path)

        table = WatchTable()
        buffer = bytearray(4096)
        with EventChannel.create(InitFlags.NONBLOCK) as channel:
            handle = table.add(channel, file_path, EventFlags.OPEN)
            self.open_and_close(file_path)

            count = channel.read_into(buffer)

        assert count == 16
        (event,) = decode_events(table, buffer, length=count)
        assert event.handle == handle
        assert event.mask == EventFlags.OPEN
        assert event.name is None
        assert event.path == file_path
