from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from core.layers import LayerSet
from core.lifecycle import ResourceLifecycle
from core.raster import Raster


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    base: Raster
    layers: LayerSet = field(default_factory=LayerSet)

    def rasters(self) -> Tuple[Raster, ...]:
        return (self.base,) + self.layers.rasters()


class HistoryStore:
    """
    Append-only sequence of snapshots with a movable pointer.

    Pushing while the pointer is behind the tail drops the redo branch and
    releases everything it owned. The pointer is -1 only when empty.
    """

    def __init__(self, lifecycle: Optional[ResourceLifecycle] = None):
        self.lifecycle = lifecycle or ResourceLifecycle()
        self._entries: List[HistoryEntry] = []
        self._pointer = -1
        # Bumped on every pointer move or push; lets callers detect a changed target.
        self.revision = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pointer(self) -> int:
        return self._pointer

    @property
    def can_undo(self) -> bool:
        return self._pointer > 0

    @property
    def can_redo(self) -> bool:
        return self._pointer < len(self._entries) - 1

    def entries(self) -> Tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    def current(self) -> Optional[HistoryEntry]:
        if self._pointer < 0:
            return None
        return self._entries[self._pointer]

    def original(self) -> Optional[HistoryEntry]:
        return self._entries[0] if self._entries else None

    def push(self, entry: HistoryEntry) -> int:
        owned = {r.resource_id for e in self._entries[: self._pointer + 1] for r in e.rasters()}
        for raster in entry.rasters():
            if raster.resource_id in owned:
                raise ValueError(f"{raster!r} is already owned by a history entry")
            if raster.released:
                raise ValueError(f"cannot push released {raster!r}")

        discarded = self._entries[self._pointer + 1:]
        survivors = self._entries[: self._pointer + 1]
        if discarded:
            released = self.lifecycle.release_entries(discarded, survivors + [entry])
            logger.debug("dropped %d redo entries (%d rasters released)", len(discarded), released)

        for raster in entry.rasters():
            self.lifecycle.track(raster)
        self._entries = survivors + [entry]
        self._pointer = len(self._entries) - 1
        self.revision += 1
        return self._pointer

    def undo(self) -> bool:
        if not self.can_undo:
            logger.debug("undo ignored at index %d", self._pointer)
            return False
        self._pointer -= 1
        self.revision += 1
        return True

    def redo(self) -> bool:
        if not self.can_redo:
            logger.debug("redo ignored at index %d", self._pointer)
            return False
        self._pointer += 1
        self.revision += 1
        return True

    def rewind(self) -> bool:
        """Jump back to the first entry, keeping later entries reachable by redo."""
        if self._pointer <= 0:
            return False
        self._pointer = 0
        self.revision += 1
        return True

    def reset(self) -> int:
        released = self.lifecycle.release_entries(self._entries)
        self._entries = []
        self._pointer = -1
        self.revision += 1
        return released
