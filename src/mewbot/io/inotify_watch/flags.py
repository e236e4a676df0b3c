# SPDX-FileCopyrightText: 2023 Mewbot Developers <mewbot@quicksilver.london>
#
# SPDX-License-Identifier: BSD-2-Clause

"""
Bit field types for the two parameter spaces the inotify interface accepts.

InitFlags are passed when the instance is created (see inotify_init1(2)).
EventFlags are both the interest mask given to inotify_add_watch(2) and the mask the
kernel reports back with each event (see inotify(7)).
"""

from __future__ import annotations

from typing import List, TypeVar, Union

import enum

_FlagT = TypeVar("_FlagT", "InitFlags", "EventFlags")

_U32 = 0xFFFFFFFF


class InitFlags(enum.IntFlag):
    """
    Options for creating a new inotify instance.
    """

    EMPTY = 0
    NONBLOCK = 0x00000800
    CLOEXEC = 0x00080000

    @classmethod
    def from_raw(cls, value: int) -> InitFlags:
        """
        Decode a raw integer - bits which are not creation options are dropped.

        :param value:
        :return:
        """
        return cls(int(value) & KNOWN_INIT_BITS)


class EventFlags(enum.IntFlag):
    """
    Every bit inotify recognises - plus the named groups the kernel headers define.
    """

    NONE = 0

    # Events suitable for the mask parameter of inotify_add_watch
    ACCESS = 0x00000001
    MODIFY = 0x00000002
    ATTRIB = 0x00000004
    CLOSE_WRITE = 0x00000008
    CLOSE_NOWRITE = 0x00000010
    OPEN = 0x00000020
    MOVED_FROM = 0x00000040
    MOVED_TO = 0x00000080
    CREATE = 0x00000100
    DELETE = 0x00000200
    DELETE_SELF = 0x00000400
    MOVE_SELF = 0x00000800

    # Sent by the kernel - whatever the watch mask was
    UNMOUNT = 0x00002000
    Q_OVERFLOW = 0x00004000
    IGNORED = 0x00008000

    # Special flags
    ONLYDIR = 0x01000000
    DONT_FOLLOW = 0x02000000
    EXCL_UNLINK = 0x04000000
    MASK_CREATE = 0x10000000
    MASK_ADD = 0x20000000
    ISDIR = 0x40000000
    ONESHOT = 0x80000000

    # Groups
    CLOSE = CLOSE_WRITE | CLOSE_NOWRITE
    MOVE = MOVED_FROM | MOVED_TO
    ALL_EVENTS = (
        ACCESS
        | MODIFY
        | ATTRIB
        | CLOSE_WRITE
        | CLOSE_NOWRITE
        | OPEN
        | MOVED_FROM
        | MOVED_TO
        | CREATE
        | DELETE
        | DELETE_SELF
        | MOVE_SELF
    )

    @classmethod
    def from_raw(cls, value: int) -> EventFlags:
        """
        Decode a raw 32-bit mask.

        Reserved bit positions are dropped - so this never raises for garbage input.
        :param value:
        :return:
        """
        return cls(int(value) & _U32 & KNOWN_EVENT_BITS)

    @classmethod
    def from_mask(cls, mask: Union[int, EventFlags]) -> List[EventFlags]:
        """
        Break a mask down into the single bit flags which are set in it.

        :param mask:
        :return:
        """
        return [flag for flag in _SINGLE_EVENT_BITS if int(mask) & flag.value]

    @classmethod
    def parse(cls, value: Union[int, str, List[str], EventFlags]) -> EventFlags:
        """
        Build a mask from config style input.

        Accepts an int, a single flag name, a "|" separated string of names or a list of names.
        Names are case-insensitive and may carry the kernel "IN_" prefix.
        :param value:
        :return:
        """
        if isinstance(value, int):
            return cls.from_raw(value)

        names = value.split("|") if isinstance(value, str) else list(value)

        mask = cls.NONE
        for name in names:
            key = name.strip().upper()
            if key.startswith("IN_"):
                key = key[3:]
            try:
                mask |= cls[key]
            except KeyError as exc:
                raise ValueError(f"{name!r} is not a known inotify event flag") from exc
        return mask


def _is_single_bit(value: int) -> bool:
    return value != 0 and value & (value - 1) == 0


# Class iteration of multi-bit members differs between python versions - so pin it down
_SINGLE_EVENT_BITS = tuple(
    member
    for name, member in EventFlags.__members__.items()
    if member.name == name and _is_single_bit(member.value)
)

KNOWN_EVENT_BITS: int = 0
for _flag in _SINGLE_EVENT_BITS:
    KNOWN_EVENT_BITS |= _flag.value
del _flag

KNOWN_INIT_BITS: int = InitFlags.NONBLOCK.value | InitFlags.CLOEXEC.value


def union(a: _FlagT, b: Union[_FlagT, int]) -> _FlagT:
    """
    Bitwise OR of two masks - the result has the type of the first argument.

    :param a:
    :param b:
    :return:
    """
    return type(a)(int(a) | int(b))


def intersect(a: _FlagT, b: Union[_FlagT, int]) -> _FlagT:
    """
    Bitwise AND of two masks - the result has the type of the first argument.

    :param a:
    :param b:
    :return:
    """
    return type(a)(int(a) & int(b))


flags_from_mask = EventFlags.from_mask

__all__ = [
    "EventFlags",
    "InitFlags",
    "KNOWN_EVENT_BITS",
    "KNOWN_INIT_BITS",
    "flags_from_mask",
    "intersect",
    "union",
]
