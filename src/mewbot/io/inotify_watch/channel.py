# SPDX-FileCopyrightText: 2023 Mewbot Developers <mewbot@quicksilver.london>
#
# SPDX-License-Identifier: BSD-2-Clause

"""
Owns a single inotify instance - and the file descriptor the kernel hands back for it.

inotify_simple does the libc plumbing for creating the instance and adding/removing watches.
Reading is done directly against the descriptor, so the raw bytes can be handed to the decoder.
"""

from __future__ import annotations

from typing import Any, Optional, Union

import enum
import logging
import os
import select

from inotify_simple import INotify

from mewbot.io.inotify_watch.exceptions import (
    AddWatchError,
    ChannelClosedError,
    InitError,
    InvalidPathError,
    KernelContractViolation,
    PathTooLongError,
    RemoveWatchError,
)
from mewbot.io.inotify_watch.flags import KNOWN_INIT_BITS, EventFlags, InitFlags

PathLike = Union[str, bytes, "os.PathLike[str]", "os.PathLike[bytes]"]

# Linux limits - including the terminating NUL for PATH_MAX
PATH_MAX = 4096
NAME_MAX = 255

EVENT_HEADER_SIZE = 16
# Smallest buffer the kernel is guaranteed to be able to put one event into
MIN_READ_SIZE = EVENT_HEADER_SIZE + NAME_MAX + 1
DEFAULT_READ_SIZE = 64 * MIN_READ_SIZE


class ChannelState(enum.Enum):
    """
    A channel goes NEW -> OPEN -> CLOSED exactly once.
    """

    NEW = "new"
    OPEN = "open"
    CLOSED = "closed"


class EventChannel:
    """
    One open session with the kernel inotify facility.
    """

    _options: InitFlags
    _state: ChannelState
    _inotify: Optional[INotify]

    _logger: logging.Logger

    def __init__(self, options: Union[InitFlags, int] = InitFlags.CLOEXEC) -> None:
        """
        Prepare - but do not yet open - a channel.

        :param options: Creation options - any combination of InitFlags.
        """
        if int(options) & ~KNOWN_INIT_BITS:
            raise ValueError(f"Unsupported inotify creation options {int(options):#x}")

        self._options = InitFlags(int(options))
        self._state = ChannelState.NEW
        self._inotify = None

        self._logger = logging.getLogger(__name__ + ":" + type(self).__name__)

    @classmethod
    def create(cls, options: Union[InitFlags, int] = InitFlags.CLOEXEC) -> EventChannel:
        """
        Construct and open a channel in one go.

        :param options:
        :return:
        """
        channel = cls(options)
        channel.open()
        return channel

    @property
    def options(self) -> InitFlags:
        """
        The creation options this channel was (or will be) opened with.

        :return:
        """
        return self._options

    @property
    def state(self) -> ChannelState:
        """
        Where the channel is in its lifecycle.

        :return:
        """
        return self._state

    @property
    def closed(self) -> bool:
        """
        True once close() has been called.

        :return:
        """
        return self._state is ChannelState.CLOSED

    @property
    def nonblocking(self) -> bool:
        """
        Reads return straight away, rather than waiting for events.

        :return:
        """
        return bool(self._options & InitFlags.NONBLOCK)

    def open(self) -> None:
        """
        Ask the kernel for a new inotify instance.

        :return:
        """
        if self._state is not ChannelState.NEW:
            raise ChannelClosedError(f"Channel cannot be opened from state {self._state.value}")

        try:
            self._inotify = INotify(
                inheritable=not (self._options & InitFlags.CLOEXEC),
                nonblocking=bool(self._options & InitFlags.NONBLOCK),
            )
        except OSError as exc:
            raise InitError("Could not create inotify instance", exc.errno) from exc

        self._state = ChannelState.OPEN
        self._logger.info(
            "Opened inotify instance on fd %s with options %s", self.fileno(), self._options
        )

    def fileno(self) -> int:
        """
        The descriptor backing this channel - e.g. for registering with an event loop.

        :return:
        """
        return self._live().fileno()

    @staticmethod
    def resolve_path(path: PathLike) -> str:
        """
        Turn path into the absolute form inotify_add_watch will be given.

        Relative paths are resolved against the current working directory.
        Symlinks are not resolved - the kernel follows them unless DONT_FOLLOW is set.
        :param path:
        :return:
        """
        raw = os.fspath(path)
        if not raw:
            raise InvalidPathError(path, "Cannot watch an empty path")

        as_str = os.fsdecode(raw)
        if "\x00" in as_str:
            raise InvalidPathError(path, "Path contains a NUL byte")

        resolved = os.path.abspath(as_str)
        encoded = os.fsencode(resolved)

        if len(encoded) >= PATH_MAX:
            raise PathTooLongError(path, f"Resolved path is longer than {PATH_MAX - 1} bytes")
        if any(len(part) > NAME_MAX for part in encoded.split(b"/")):
            raise PathTooLongError(path, f"Path has a component longer than {NAME_MAX} bytes")

        return resolved

    def add_watch(self, path: PathLike, mask: Union[EventFlags, int]) -> int:
        """
        Register interest in path - returning the kernel assigned handle.

        If the path (or rather the inode behind it) is already watched by this channel, the kernel
        hands back the existing handle.
        :param path:
        :param mask:
        :return:
        """
        inotify = self._live()
        resolved = self.resolve_path(path)

        try:
            handle: int = inotify.add_watch(resolved, int(mask))
        except OSError as exc:
            raise AddWatchError(resolved, int(mask), exc.errno) from exc

        self._logger.debug("Kernel assigned handle %d to %s", handle, resolved)
        return handle

    def remove_watch(self, handle: int) -> None:
        """
        Ask the kernel to stop watching handle.

        The kernel will still put an IGNORED event for the handle on the queue.
        :param handle:
        :return:
        """
        inotify = self._live()

        try:
            inotify.rm_watch(handle)
        except OSError as exc:
            raise RemoveWatchError(handle, exc.errno) from exc

        self._logger.debug("Requested removal of handle %d", handle)

    def read_into(self, buffer: Any) -> Optional[int]:
        """
        Read pending events into a writable buffer.

        :param buffer: A writable bytes-like object - at least MIN_READ_SIZE long.
        :return: The number of valid bytes - or None if the channel is non-blocking and the queue
                 is empty.
        """
        view = memoryview(buffer)
        if view.readonly:
            raise ValueError("read_into needs a writable buffer")
        if view.nbytes < MIN_READ_SIZE:
            raise ValueError(f"Buffer must be at least {MIN_READ_SIZE} bytes - got {view.nbytes}")

        fd = self.fileno()
        try:
            count = os.readv(fd, [view])
        except BlockingIOError:
            return None

        return self._check_read_count(count)

    def read(
        self, size: int = DEFAULT_READ_SIZE, timeout: Optional[float] = None
    ) -> Optional[bytes]:
        """
        Read whatever events are pending.

        :param size: Maximum number of bytes to read.
        :param timeout: If given, wait at most this many seconds for events to arrive.
        :return: The raw event bytes - or None if there was nothing to read.
        """
        if size < MIN_READ_SIZE:
            raise ValueError(f"Read size must be at least {MIN_READ_SIZE} - got {size}")

        fd = self.fileno()
        if timeout is not None:
            readable, _, _ = select.select([fd], [], [], timeout)
            if not readable:
                return None

        try:
            data = os.read(fd, size)
        except BlockingIOError:
            return None

        self._check_read_count(len(data))
        return data

    def close(self) -> None:
        """
        Release the kernel instance. A channel can only be closed once.

        :return:
        """
        if self._state is ChannelState.CLOSED:
            raise ChannelClosedError("Channel has already been closed")

        if self._inotify is not None:
            fd = self._inotify.fileno()
            self._inotify.close()
            self._inotify = None
            self._logger.info("Closed inotify instance on fd %s", fd)

        self._state = ChannelState.CLOSED

    def _live(self) -> INotify:
        """
        Return the underlying instance - if this channel is in a state to use it.

        :return:
        """
        if self._state is not ChannelState.OPEN or self._inotify is None:
            raise ChannelClosedError(f"Channel is not open (state is {self._state.value})")
        return self._inotify

    @staticmethod
    def _check_read_count(count: int) -> int:
        if count == 0:
            raise KernelContractViolation("inotify read returned zero bytes")
        return count

    def __enter__(self) -> EventChannel:
        if self._state is ChannelState.NEW:
            self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        if not self.closed:
            self.close()

    def __repr__(self) -> str:
        fd = self._inotify.fileno() if self._inotify is not None else None
        return f"<{type(self).__name__} state={self._state.value} fd={fd} options={self._options!r}>"


__all__ = [
    "ChannelState",
    "DEFAULT_READ_SIZE",
    "EVENT_HEADER_SIZE",
    "EventChannel",
    "MIN_READ_SIZE",
    "NAME_MAX",
    "PATH_MAX",
]
