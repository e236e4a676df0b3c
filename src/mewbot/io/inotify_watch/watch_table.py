# SPDX-FileCopyrightText: 2023 Mewbot Developers <mewbot@quicksilver.london>
#
# SPDX-License-Identifier: BSD-2-Clause

"""
Keeps track of which kernel handle corresponds to which watched path.

For an inotify instance the kernel hands out watch descriptors which are never reused and keep
increasing - so they cannot be used as list indices, but new ones always sort after the old.
The table is therefore an append-only list of entries, with a parallel list of handles which is
binary searched.
"""

from __future__ import annotations

from typing import Iterable, Iterator, List, Optional, Union

import bisect
import dataclasses
import logging

from mewbot.io.inotify_watch.channel import EventChannel, PathLike
from mewbot.io.inotify_watch.exceptions import WatchRemovalError
from mewbot.io.inotify_watch.flags import EventFlags

# Change how a watch is added - never part of the mask the kernel keeps on it
REQUEST_ONLY_BITS = EventFlags.MASK_ADD | EventFlags.MASK_CREATE


@dataclasses.dataclass
class WatchEntry:
    """
    A single registered watch.

    An ignored entry has had its removal requested (or been dropped by the kernel) but is kept
    so events already in the queue for it can still be resolved.
    """

    handle: int
    path: str
    mask: EventFlags = EventFlags.NONE
    ignored: bool = False


class WatchTable:
    """
    Ordered collection of watch entries - keyed by kernel assigned handle.
    """

    _handles: List[int]
    _entries: List[WatchEntry]

    _logger: logging.Logger

    def __init__(self) -> None:
        """
        Start with an empty table.
        """
        self._handles = []
        self._entries = []

        self._logger = logging.getLogger(__name__ + ":" + type(self).__name__)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[WatchEntry]:
        return iter(list(self._entries))

    def __contains__(self, handle: object) -> bool:
        return isinstance(handle, int) and self._index_of(handle) is not None

    @property
    def handles(self) -> List[int]:
        """
        Every handle in the table - ignored ones included - in increasing order.

        :return:
        """
        return list(self._handles)

    def live_entries(self) -> List[WatchEntry]:
        """
        Entries which have not been removed.

        :return:
        """
        return [entry for entry in self._entries if not entry.ignored]

    def add(self, channel: EventChannel, path: PathLike, mask: Union[EventFlags, int]) -> int:
        """
        Register path with the channel and record the handle it comes back with.

        If the kernel returns a handle which is already in the table (the same inode watched
        again) no new entry is created.
        :param channel:
        :param path:
        :param mask:
        :return: The kernel handle for the watch.
        """
        resolved = channel.resolve_path(path)
        handle = channel.add_watch(resolved, mask)
        requested = EventFlags.from_raw(int(mask))
        new_mask = EventFlags.from_raw(int(requested) & ~int(REQUEST_ONLY_BITS))

        index = self._index_of(handle)
        if index is not None:
            existing = self._entries[index]
            if requested & EventFlags.MASK_ADD:
                existing.mask |= new_mask
            else:
                existing.mask = new_mask
            self._logger.debug(
                "Handle %d for %s is already watched as %s - absorbed",
                handle,
                resolved,
                existing.path,
            )
            return handle

        entry = WatchEntry(handle=handle, path=resolved, mask=new_mask)
        position = bisect.bisect_left(self._handles, handle)
        if position == len(self._handles):
            self._handles.append(handle)
            self._entries.append(entry)
        else:
            # Only reachable if the handles are not coming from a single inotify instance
            self._logger.warning(
                "Handle %d arrived out of order (last is %d)", handle, self._handles[-1]
            )
            self._handles.insert(position, handle)
            self._entries.insert(position, entry)

        self._logger.debug("Watching %s as handle %d", resolved, handle)
        return handle

    def remove_by_path(self, channel: EventChannel, path: PathLike) -> int:
        """
        Remove the live watch on path.

        The entry stays in the table, marked ignored, so in flight events still resolve.
        :param channel:
        :param path:
        :return: The handle which was removed.
        """
        resolved = channel.resolve_path(path)

        entry = self.find_live(resolved)
        if entry is None:
            raise WatchRemovalError(f"Could not find a live watch associated with path {resolved}")

        self._remove_entry(channel, entry)
        return entry.handle

    def remove_by_handle(self, channel: EventChannel, handle: int) -> None:
        """
        Remove the watch with the given handle.

        :param channel:
        :param handle:
        :return:
        """
        entry = self.get(handle)
        if entry is None:
            raise WatchRemovalError(f"Could not find a watch with handle {handle}")
        if entry.ignored:
            raise WatchRemovalError(f"Trying to remove handle {handle}, but it was already removed")

        self._remove_entry(channel, entry)

    def _remove_entry(self, channel: EventChannel, entry: WatchEntry) -> None:
        """
        Mark the entry as ignored, then tell the kernel.

        If the kernel has already dropped the watch the error propagates - the entry stays ignored.
        :param channel:
        :param entry:
        :return:
        """
        entry.ignored = True
        channel.remove_watch(entry.handle)
        self._logger.debug("Removed watch %d on %s", entry.handle, entry.path)

    def get(self, handle: int) -> Optional[WatchEntry]:
        """
        Find the entry for a handle - ignored or not.

        :param handle:
        :return:
        """
        index = self._index_of(handle)
        if index is None:
            return None
        return self._entries[index]

    def resolve(self, handle: int) -> Optional[str]:
        """
        Path registered for a handle - or None if the handle is unknown.

        :param handle:
        :return:
        """
        entry = self.get(handle)
        return None if entry is None else entry.path

    def find_live(self, path: str) -> Optional[WatchEntry]:
        """
        First non-ignored entry watching exactly this (already resolved) path.

        :param path:
        :return:
        """
        for entry in self._entries:
            if not entry.ignored and entry.path == path:
                return entry
        return None

    def mark_ignored(self, handle: int) -> bool:
        """
        Record that the kernel has stopped watching handle of its own accord.

        :param handle:
        :return: True if a live entry was changed.
        """
        entry = self.get(handle)
        if entry is None or entry.ignored:
            return False
        entry.ignored = True
        self._logger.debug("Kernel dropped watch %d on %s", handle, entry.path)
        return True

    def purge(self, handles: Iterable[int]) -> int:
        """
        Physically drop ignored entries - once their final IGNORED event has been consumed.

        Live entries are never dropped.
        :param handles:
        :return: How many entries were dropped.
        """
        dropped = 0
        for handle in handles:
            index = self._index_of(handle)
            if index is None or not self._entries[index].ignored:
                continue
            del self._handles[index]
            del self._entries[index]
            dropped += 1
            self._logger.debug("Purged watch %d", handle)
        return dropped

    def clear(self) -> None:
        """
        Drop every entry - the table is being torn down.

        :return:
        """
        self._handles.clear()
        self._entries.clear()

    def _index_of(self, handle: int) -> Optional[int]:
        index = bisect.bisect_left(self._handles, handle)
        if index < len(self._handles) and self._handles[index] == handle:
            return index
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} entries={self._entries!r}>"


__all__ = ["REQUEST_ONLY_BITS", "WatchEntry", "WatchTable"]
