# SPDX-FileCopyrightText: 2023 Mewbot Developers <mewbot@quicksilver.london>
#
# SPDX-License-Identifier: BSD-2-Clause

"""
A channel, the table of watches made on it, and the decoder - behind one object.

Nothing here is thread safe. If more than one thread needs a session, the whole session has to
sit behind a single lock - add, remove and read all touch both the kernel and the table.
"""

from __future__ import annotations

from typing import Any, List, Optional, Set, Union

import logging

from mewbot.io.inotify_watch.channel import DEFAULT_READ_SIZE, EventChannel, PathLike
from mewbot.io.inotify_watch.decoder import Event, iter_events
from mewbot.io.inotify_watch.exceptions import EventDecodeError, WatchNotFound
from mewbot.io.inotify_watch.flags import EventFlags, InitFlags
from mewbot.io.inotify_watch.watch_table import WatchTable


class WatchSession:
    """
    Watch some paths - read back what happened to them.
    """

    channel: EventChannel
    table: WatchTable

    _read_size: int
    _strict: bool
    _cleanup_queue: Set[int]
    _backlog: Optional[bytes]

    _logger: logging.Logger

    def __init__(
        self,
        options: Union[InitFlags, int] = InitFlags.CLOEXEC,
        read_size: int = DEFAULT_READ_SIZE,
        strict: bool = True,
    ) -> None:
        """
        Open a channel for the session.

        :param options: Creation options for the channel.
        :param read_size: Maximum bytes pulled off the channel per read.
        :param strict: Should events for unknown handles raise (True) or be skipped (False).
        """
        self._logger = logging.getLogger(__name__ + ":" + type(self).__name__)

        self._read_size = read_size
        self._strict = strict
        self._cleanup_queue = set()
        self._backlog = None

        self.table = WatchTable()
        self.channel = EventChannel.create(options)

    @property
    def closed(self) -> bool:
        """
        Has the session been closed.

        :return:
        """
        return self.channel.closed

    def fileno(self) -> int:
        """
        Descriptor to poll on for readability.

        :return:
        """
        return self.channel.fileno()

    def add(self, path: PathLike, mask: Union[EventFlags, int] = EventFlags.ALL_EVENTS) -> int:
        """
        Watch path for the events in mask.

        :param path:
        :param mask:
        :return: The kernel handle for the watch.
        """
        return self.table.add(self.channel, path, mask)

    def remove_path(self, path: PathLike) -> int:
        """
        Stop watching path.

        :param path:
        :return: The handle which was removed.
        """
        return self.table.remove_by_path(self.channel, path)

    def remove_handle(self, handle: int) -> None:
        """
        Stop watching the given handle.

        :param handle:
        :return:
        """
        self.table.remove_by_handle(self.channel, handle)

    def resolve(self, handle: int) -> Optional[str]:
        """
        Path registered for handle.

        :param handle:
        :return:
        """
        return self.table.resolve(handle)

    def read_events(self, timeout: Optional[float] = None) -> List[Event]:
        """
        Read and decode whatever is pending on the channel.

        Watches whose final IGNORED event came out of the previous call are dropped from the table
        first.

        If decoding fails part way through, the events decoded before the failure are attached to
        the raised error as `events`. After a WatchNotFound the records following the unknown one
        are kept, and the next call returns them without reading the channel.
        :param timeout: Seconds to wait for events - None waits indefinitely on a blocking channel.
        :return: The events - empty if nothing arrived.
        """
        if self._cleanup_queue:
            self.table.purge(self._cleanup_queue)
            self._cleanup_queue = set()

        if self._backlog is not None:
            data, self._backlog = self._backlog, None
        else:
            data = self.channel.read(self._read_size, timeout=timeout)
            if data is None:
                return []

        events: List[Event] = []
        try:
            for event in iter_events(self.table, data, strict=self._strict):
                if event.is_ignored:
                    self.table.mark_ignored(event.handle)
                    self._cleanup_queue.add(event.handle)
                events.append(event)
        except WatchNotFound as exc:
            if 0 <= exc.resume_offset < len(data):
                self._backlog = data[exc.resume_offset :]
            exc.events = events
            raise
        except EventDecodeError as exc:
            # No way to find the next record boundary - the rest of the buffer is lost
            self._logger.warning("Dropping %d undecodable bytes", len(data) - exc.offset)
            exc.events = events
            raise

        self._logger.debug("Decoded %d events from %d bytes", len(events), len(data))
        return events

    def close(self) -> None:
        """
        Close the channel and drop every watch.

        :return:
        """
        self.channel.close()
        self.table.clear()
        self._cleanup_queue = set()
        self._backlog = None

    def __enter__(self) -> WatchSession:
        return self

    def __exit__(self, *args: Any) -> None:
        if not self.closed:
            self.close()


__all__ = ["WatchSession"]
