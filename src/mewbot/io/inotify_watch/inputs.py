#!/usr/bin/env python3

# SPDX-FileCopyrightText: 2023 Mewbot Developers <mewbot@quicksilver.london>
#
# SPDX-License-Identifier: BSD-2-Clause

"""
Input which puts decoded inotify events on the mewbot input queue.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Set, Type, Union

import asyncio
import dataclasses
import logging

import aiopath  # type: ignore
from mewbot.api.v1 import Input, InputEvent

from mewbot.io.inotify_watch.decoder import Event
from mewbot.io.inotify_watch.exceptions import (
    AddWatchError,
    EventDecodeError,
    PathError,
    WatchNotFound,
)
from mewbot.io.inotify_watch.flags import EventFlags, InitFlags
from mewbot.io.inotify_watch.session import WatchSession


@dataclasses.dataclass
class InotifyWatchInputEvent(InputEvent):
    """
    Something happened to one of the watched paths.

    path is the watched path, name the entry within it (for watched dirs) if any.
    """

    path: Optional[str]
    name: Optional[str]
    mask: EventFlags
    cookie: int
    base_event: Event

    @classmethod
    def from_event(cls, event: Event) -> InotifyWatchInputEvent:
        """
        Wrap a decoded event.

        :param event:
        :return:
        """
        return cls(
            path=event.path,
            name=event.name,
            mask=event.mask,
            cookie=event.cookie,
            base_event=event,
        )


class InotifyWatchInput(Input):
    """
    Watches a set of paths with inotify - sending an InputEvent for every event decoded.

    Paths which do not exist yet are polled for, and watched once they appear.
    If the kernel drops a watch (the path was deleted, or its file system unmounted) the path goes
    back to being polled for.
    """

    _watch_paths: List[str]
    _watch_mask: EventFlags
    _polling_interval: float

    _pending: List[str]
    session: Optional[WatchSession]

    _logger: logging.Logger

    def __init__(
        self,
        watch_paths: Optional[Iterable[str]] = None,
        watch_mask: Union[EventFlags, int] = EventFlags.ALL_EVENTS,
        polling_interval: float = 0.5,
    ) -> None:
        """
        Set up - but do not start - the input.

        :param watch_paths: Paths to watch.
        :param watch_mask: Events to watch them for.
        :param polling_interval: Seconds between reads of the channel.
        """
        super().__init__()

        self._watch_paths = list(watch_paths) if watch_paths is not None else []
        self._watch_mask = EventFlags.from_raw(int(watch_mask))
        self._polling_interval = polling_interval

        self._pending = []
        self.session = None

        self._logger = logging.getLogger(__name__ + ":" + type(self).__name__)

    @staticmethod
    def produces_inputs() -> Set[Type[InputEvent]]:
        """
        Defines the set of input events this Input class can produce.

        :return:
        """
        return {InotifyWatchInputEvent}

    @property
    def watch_paths(self) -> List[str]:
        """
        The paths this input was asked to watch.

        :return:
        """
        return list(self._watch_paths)

    @property
    def watch_mask(self) -> EventFlags:
        """
        The events each path is watched for.

        :return:
        """
        return self._watch_mask

    async def run(self) -> None:
        """
        Open a session, then keep moving events from it onto the queue.
        """
        self._logger.info(
            "Starting InotifyWatchInput - watching %s for %s", self._watch_paths, self._watch_mask
        )

        with WatchSession(options=InitFlags.NONBLOCK | InitFlags.CLOEXEC) as session:
            self.session = session
            self._pending = list(self._watch_paths)

            try:
                while True:
                    await self._add_pending_watches(session)

                    for event in self._read_events(session):
                        await self._process_event(event)

                    # Give the rest of the loop a chance to do something
                    await asyncio.sleep(self._polling_interval)
            finally:
                self.session = None

    async def _add_pending_watches(self, session: WatchSession) -> None:
        """
        Start watching any pending path which now exists.

        :param session:
        :return:
        """
        still_pending: List[str] = []

        for path in self._pending:
            if not await aiopath.AsyncPath(path).exists():
                still_pending.append(path)
                continue

            try:
                handle = session.add(path, self._watch_mask)
            except PathError as exc:
                # Will never be accepted - stop polling for it
                self._logger.error("Cannot watch %r - %s", path, exc)
                continue
            except AddWatchError as exc:
                # The path can vanish between the check and the add
                self._logger.info("Could not watch %s yet - %s", path, exc)
                still_pending.append(path)
                continue

            self._logger.info("Something has appeared at %s - watching as handle %d", path, handle)

        self._pending = still_pending

    def _read_events(self, session: WatchSession) -> List[Event]:
        """
        Pull whatever is pending off the session.

        A decoding failure is logged - the events decoded before it are still returned.
        :param session:
        :return:
        """
        try:
            return session.read_events()
        except (WatchNotFound, EventDecodeError) as exc:
            self._logger.warning("Could not decode every pending event - %s", exc)
            return list(exc.events)

    async def _process_event(self, event: Event) -> None:
        """
        Put an event on the wire - and go back to waiting for its path if the watch is gone.

        :param event:
        :return:
        """
        if event.is_overflow:
            self._logger.warning("inotify queue overflowed - some events were lost")

        if event.is_ignored and event.path is not None:
            self._logger.info("Watch on %s has been dropped - waiting for it to reappear", event.path)
            self._pending.append(event.path)

        await self.send(InotifyWatchInputEvent.from_event(event))

    async def send(self, event: InotifyWatchInputEvent) -> None:
        """
        Put events on the wire.

        :param event:
        :return:
        """
        if self.queue is None:
            return

        await self.queue.put(event)


__all__ = ["InotifyWatchInput", "InotifyWatchInputEvent"]
