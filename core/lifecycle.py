from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List

from core.raster import Raster


logger = logging.getLogger(__name__)


class ResourceLifecycle:
    """
    Registry of live raster handles.

    Rasters are tracked when a history entry takes ownership of them and
    released when that entry is discarded or the session is reset.
    """

    def __init__(self) -> None:
        self._live: Dict[str, Raster] = {}
        self._on_release: List[Callable[[Raster], None]] = []

    def add_release_listener(self, fn: Callable[[Raster], None]) -> None:
        self._on_release.append(fn)

    @property
    def live_count(self) -> int:
        return len(self._live)

    def is_tracked(self, raster: Raster) -> bool:
        return raster.resource_id in self._live

    def track(self, raster: Raster) -> None:
        if raster.released:
            raise ValueError(f"cannot track released {raster!r}")
        if self.is_tracked(raster):
            logger.debug("%r is already tracked", raster)
            return
        self._live[raster.resource_id] = raster

    def release(self, raster: Raster) -> bool:
        """Release one raster. Returns False when it was already released."""
        if raster.released:
            self._live.pop(raster.resource_id, None)
            return False
        self._live.pop(raster.resource_id, None)
        for fn in self._on_release:
            fn(raster)
        raster.release()
        return True

    def release_entries(self, discarded: Iterable, survivors: Iterable = ()) -> int:
        """Release every raster of `discarded` that no surviving entry still reaches."""
        keep = {r.resource_id for entry in survivors for r in entry.rasters()}
        count = 0
        for entry in discarded:
            for raster in entry.rasters():
                if raster.resource_id in keep:
                    logger.warning("not releasing %r: still reachable from history", raster)
                    continue
                if self.release(raster):
                    count += 1
        return count

    def release_all(self) -> int:
        rasters = list(self._live.values())
        count = 0
        for raster in rasters:
            if self.release(raster):
                count += 1
        return count
