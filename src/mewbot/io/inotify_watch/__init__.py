#!/usr/bin/env python3

"""
Public api for the inotify watch IOConfig - and the watch manager underneath it.
"""

# SPDX-FileCopyrightText: 2023 Mewbot Developers <mewbot@quicksilver.london>
#
# SPDX-License-Identifier: BSD-2-Clause

from __future__ import annotations

from typing import List, Optional, Sequence, Union

from mewbot.api.v1 import Input, IOConfig, Output

from mewbot.io.inotify_watch.channel import (
    DEFAULT_READ_SIZE,
    MIN_READ_SIZE,
    ChannelState,
    EventChannel,
)
from mewbot.io.inotify_watch.decoder import Event, decode_events, encode_event, iter_events
from mewbot.io.inotify_watch.exceptions import (
    AddWatchError,
    ChannelClosedError,
    EventDecodeError,
    InitError,
    InotifyWatchError,
    InvalidPathError,
    KernelCallError,
    KernelContractViolation,
    PathError,
    PathTooLongError,
    RemoveWatchError,
    WatchNotFound,
    WatchRemovalError,
)
from mewbot.io.inotify_watch.flags import EventFlags, InitFlags, intersect, union
from mewbot.io.inotify_watch.inputs import InotifyWatchInput, InotifyWatchInputEvent
from mewbot.io.inotify_watch.session import WatchSession
from mewbot.io.inotify_watch.watch_table import WatchEntry, WatchTable

__version__ = "0.0.1"


__all__ = (
    "AddWatchError",
    "ChannelClosedError",
    "ChannelState",
    "DEFAULT_READ_SIZE",
    "Event",
    "EventChannel",
    "EventDecodeError",
    "EventFlags",
    "InitError",
    "InitFlags",
    "InotifyWatchError",
    "InotifyWatchIO",
    "InotifyWatchInput",
    "InotifyWatchInputEvent",
    "InvalidPathError",
    "KernelCallError",
    "KernelContractViolation",
    "MIN_READ_SIZE",
    "PathError",
    "PathTooLongError",
    "RemoveWatchError",
    "WatchEntry",
    "WatchNotFound",
    "WatchRemovalError",
    "WatchSession",
    "WatchTable",
    "decode_events",
    "encode_event",
    "intersect",
    "iter_events",
    "union",
)


class InotifyWatchIO(IOConfig):
    """
    Produces events when inotify reports changes to the configured paths.
    """

    _input: Optional[InotifyWatchInput] = None

    _watch_paths: List[str] = []
    _watch_mask: EventFlags = EventFlags.ALL_EVENTS
    _polling_interval: float = 0.5

    @property
    def watch_paths(self) -> List[str]:
        """
        The paths to watch.

        :return:
        """
        return list(self._watch_paths)

    @watch_paths.setter
    def watch_paths(self, watch_paths: Union[str, List[str]]) -> None:
        """
        Set the watched paths - a single path is accepted as well as a list.

        :param watch_paths:
        :return:
        """
        if isinstance(watch_paths, str):
            watch_paths = [watch_paths]
        self._watch_paths = list(watch_paths)

    @property
    def watch_mask(self) -> EventFlags:
        """
        The events to watch for.

        :return:
        """
        return self._watch_mask

    @watch_mask.setter
    def watch_mask(self, watch_mask: Union[int, str, List[str]]) -> None:
        """
        Set the events to watch for - e.g. "CREATE | DELETE", ["IN_OPEN", "MODIFY"] or 0x100.

        :param watch_mask:
        :return:
        """
        mask = EventFlags.parse(watch_mask)
        assert mask, f"watch_mask couldn't be set as {watch_mask} - no events selected"
        self._watch_mask = mask

    @property
    def polling_interval(self) -> float:
        """
        Seconds between reads of the inotify channel.

        :return:
        """
        return self._polling_interval

    @polling_interval.setter
    def polling_interval(self, polling_interval: float) -> None:
        """
        Set how often the channel is read.

        :param polling_interval:
        :return:
        """
        assert polling_interval > 0, f"polling_interval must be positive - got {polling_interval}"
        self._polling_interval = float(polling_interval)

    def get_inputs(self) -> Sequence[Input]:
        """
        Return all the input methods for this IOConfig.

        :return:
        """
        assert self._watch_paths, "watch_paths must be set before startup"

        if not self._input:
            self._input = InotifyWatchInput(
                watch_paths=self._watch_paths,
                watch_mask=self._watch_mask,
                polling_interval=self._polling_interval,
            )

        return [self._input]

    def get_outputs(self) -> Sequence[Output]:
        """
        No outputs are currently supported for this IOConfig.

        :return:
        """
        return []
