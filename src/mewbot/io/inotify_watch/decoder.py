# SPDX-FileCopyrightText: 2023 Mewbot Developers <mewbot@quicksilver.london>
#
# SPDX-License-Identifier: BSD-2-Clause

"""
Turns the bytes read off an inotify descriptor into Event objects.

Each record is a fixed header - struct inotify_event - of wd, mask, cookie and len, followed
by len bytes of name. The name is NUL terminated and NUL padded, so the offset of the next record
is always header size + len, never header size + the length of the string.
"""

from __future__ import annotations

from typing import Any, Iterator, List, Optional, Union

import dataclasses
import logging
import os
import struct

from mewbot.io.inotify_watch.exceptions import EventDecodeError, WatchNotFound
from mewbot.io.inotify_watch.flags import EventFlags
from mewbot.io.inotify_watch.watch_table import WatchTable

# Host byte order - the kernel writes these in native endianness
EVENT_HEADER = struct.Struct("iIII")

# The kernel pads names so records stay aligned to the header size
NAME_ALIGNMENT = EVENT_HEADER.size

# Queue overflow events are not attached to a watch
OVERFLOW_HANDLE = -1

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Event:
    """
    A single decoded inotify event.

    path is the watched path the event was reported against (None for queue overflow events).
    name is only set when the event concerns an entry inside a watched directory.
    """

    handle: int
    mask: EventFlags
    cookie: int
    name: Optional[str]
    path: Optional[str]

    @property
    def full_path(self) -> Optional[str]:
        """
        The path of the thing the event actually happened to.

        :return:
        """
        if self.path is None or self.name is None:
            return self.path
        return os.path.join(self.path, self.name)

    @property
    def flags(self) -> List[EventFlags]:
        """
        The individual flags set in the mask.

        :return:
        """
        return EventFlags.from_mask(self.mask)

    @property
    def is_dir(self) -> bool:
        """
        The subject of the event is a directory.

        :return:
        """
        return bool(self.mask & EventFlags.ISDIR)

    @property
    def is_overflow(self) -> bool:
        """
        The kernel queue overflowed - events have been lost.

        :return:
        """
        return bool(self.mask & EventFlags.Q_OVERFLOW)

    @property
    def is_ignored(self) -> bool:
        """
        The final event the kernel sends for a watch.

        :return:
        """
        return bool(self.mask & EventFlags.IGNORED)


def iter_events(
    table: WatchTable,
    buffer: Any,
    length: Optional[int] = None,
    strict: bool = True,
) -> Iterator[Event]:
    """
    Decode every record in buffer - yielding them in order.

    :param table: Used to resolve each handle back to the watched path.
    :param buffer: Bytes-like object holding the raw records.
    :param length: Number of valid bytes in buffer - defaults to all of it.
    :param strict: If True, an unknown handle raises WatchNotFound. Otherwise the event is logged
                   and skipped.
    :return:
    """
    view = memoryview(buffer).cast("B")
    valid = len(view) if length is None else length
    if valid < 0 or valid > len(view):
        raise ValueError(f"Valid length {valid} does not fit a buffer of {len(view)} bytes")

    offset = 0
    while offset < valid:
        if offset + EVENT_HEADER.size > valid:
            raise EventDecodeError(
                f"Truncated event header - {valid - offset} bytes remain", offset
            )
        handle, raw_mask, cookie, name_len = EVENT_HEADER.unpack_from(view, offset)

        name_start = offset + EVENT_HEADER.size
        name_end = name_start + name_len
        if name_end > valid:
            raise EventDecodeError(
                f"Event name of {name_len} bytes runs past the end of the buffer", offset
            )

        name: Optional[str] = None
        if name_len:
            raw_name = bytes(view[name_start:name_end]).split(b"\x00", 1)[0]
            name = os.fsdecode(raw_name) if raw_name else None

        mask = EventFlags.from_raw(raw_mask)

        if mask & EventFlags.Q_OVERFLOW:
            _logger.warning("inotify event queue overflowed - events have been lost")
            path = table.resolve(handle) if handle != OVERFLOW_HANDLE else None
        else:
            path = table.resolve(handle)
            if path is None:
                if strict:
                    raise WatchNotFound(handle, offset, resume_offset=name_end)
                _logger.warning(
                    "Skipping event %s for unknown handle %d at offset %d", mask, handle, offset
                )
                offset = name_end
                continue

        yield Event(handle=handle, mask=mask, cookie=cookie, name=name, path=path)
        offset = name_end


def decode_events(
    table: WatchTable,
    buffer: Any,
    length: Optional[int] = None,
    strict: bool = True,
) -> List[Event]:
    """
    Decode every record in buffer into a list.

    :param table:
    :param buffer:
    :param length:
    :param strict:
    :return:
    """
    return list(iter_events(table, buffer, length=length, strict=strict))


def encode_event(
    handle: int,
    mask: Union[EventFlags, int],
    cookie: int = 0,
    name: Optional[Union[str, bytes]] = None,
) -> bytes:
    """
    Build one record the way the kernel lays it out.

    The name is NUL terminated, then padded with NULs to a multiple of the header size.
    :param handle:
    :param mask:
    :param cookie:
    :param name:
    :return:
    """
    raw_name = b""
    if name:
        raw_name = os.fsencode(name) + b"\x00"
        remainder = len(raw_name) % NAME_ALIGNMENT
        if remainder:
            raw_name += b"\x00" * (NAME_ALIGNMENT - remainder)

    return EVENT_HEADER.pack(handle, int(mask), cookie, len(raw_name)) + raw_name


__all__ = [
    "EVENT_HEADER",
    "Event",
    "NAME_ALIGNMENT",
    "OVERFLOW_HANDLE",
    "decode_events",
    "encode_event",
    "iter_events",
]
