# SPDX-FileCopyrightText: 2023 Mewbot Developers <mewbot@quicksilver.london>
#
# SPDX-License-Identifier: BSD-2-Clause

"""
Errors raised by the inotify watch manager.

Anything deriving from InotifyWatchError is a runtime condition the caller may want to handle.
Anything deriving from RuntimeError here signals misuse of the API - and should not be caught.
"""

from __future__ import annotations

from typing import Any, List, Optional

import os


class InotifyWatchError(Exception):
    """
    Base class for recoverable errors from this package.
    """


class KernelCallError(InotifyWatchError):
    """
    The kernel refused one of the inotify calls.
    """

    errno: Optional[int]
    strerror: Optional[str]

    def __init__(self, message: str, errno: Optional[int] = None) -> None:
        """
        Store the errno the kernel returned alongside the message.

        :param message:
        :param errno:
        """
        self.errno = errno
        self.strerror = os.strerror(errno) if errno is not None else None
        if self.strerror is not None:
            message = f"{message} - [Errno {errno}] {self.strerror}"
        super().__init__(message)


class InitError(KernelCallError):
    """
    inotify_init1 failed - there is no channel to release.
    """


class AddWatchError(KernelCallError):
    """
    inotify_add_watch failed for a path.
    """

    path: str
    mask: int

    def __init__(self, path: str, mask: int, errno: Optional[int] = None) -> None:
        """
        Record which registration failed.

        :param path:
        :param mask:
        :param errno:
        """
        self.path = path
        self.mask = mask
        super().__init__(f"Could not add watch on {path!r} with mask {mask:#010x}", errno)


class RemoveWatchError(KernelCallError):
    """
    inotify_rm_watch failed for a handle.
    """

    handle: int

    def __init__(self, handle: int, errno: Optional[int] = None) -> None:
        """
        Record which handle failed to be removed.

        :param handle:
        :param errno:
        """
        self.handle = handle
        super().__init__(f"Could not remove watch {handle}", errno)


class PathError(InotifyWatchError, ValueError):
    """
    A path was rejected before it was handed to the kernel.
    """

    path: object

    def __init__(self, path: object, reason: str) -> None:
        self.path = path
        super().__init__(f"{reason}: {path!r}")


class InvalidPathError(PathError):
    """
    Empty path, or a path containing NUL bytes.
    """


class PathTooLongError(PathError):
    """
    The resolved path exceeds PATH_MAX, or one of its components exceeds NAME_MAX.
    """


class WatchNotFound(InotifyWatchError, LookupError):
    """
    An event referenced a handle the watch table does not know about.

    The event queue and the table have gone out of sync.
    """

    handle: int
    offset: int
    resume_offset: int
    events: List[Any]

    def __init__(self, handle: int, offset: int = -1, resume_offset: int = -1) -> None:
        """
        Keep the offending handle - and where in the buffer it was found.

        :param handle:
        :param offset: Start of the offending record.
        :param resume_offset: Start of the record after it - decoding can carry on from there.
        """
        self.handle = handle
        self.offset = offset
        self.resume_offset = resume_offset
        # Filled in by readers which had already decoded events from the same buffer
        self.events = []
        super().__init__(f"No watch registered for handle {handle} (buffer offset {offset})")


class EventDecodeError(InotifyWatchError):
    """
    The event buffer is truncated or otherwise malformed.
    """

    offset: int
    events: List[Any]

    def __init__(self, message: str, offset: int) -> None:
        self.offset = offset
        self.events = []
        super().__init__(f"{message} (buffer offset {offset})")


class WatchRemovalError(RuntimeError):
    """
    Removing a watch which is unknown or has already been removed.
    """


class ChannelClosedError(RuntimeError):
    """
    The channel was used before being opened, after being closed, or closed twice.
    """


class KernelContractViolation(RuntimeError):
    """
    The kernel did something inotify(7) says it will not do.
    """


__all__ = [
    "AddWatchError",
    "ChannelClosedError",
    "EventDecodeError",
    "InitError",
    "InotifyWatchError",
    "InvalidPathError",
    "KernelCallError",
    "KernelContractViolation",
    "PathError",
    "PathTooLongError",
    "RemoveWatchError",
    "WatchNotFound",
    "WatchRemovalError",
]
