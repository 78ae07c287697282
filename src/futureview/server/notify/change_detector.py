"""Artifact change detection.

The detector keeps the last mtime it observed for each artifact and reports
which ones advanced since the previous check. It is the only owner of that
snapshot.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from futureview.server.artifacts.store import ArtifactName, ArtifactStore, TRACKED_ARTIFACTS
from futureview.server.notify.notifier import Notifier

logger = logging.getLogger(__name__)

ChangedSet = dict[str, bool]


def has_advanced(previous: Optional[int], current: Optional[int]) -> bool:
    if current is None:
        return False
    if previous is None:
        return True
    return current > previous


class ChangeDetector:
    def __init__(self, store: ArtifactStore, notifier: Notifier) -> None:
        self._store = store
        self._notifier = notifier
        self._snapshot: dict[str, Optional[int]] = {}

    def last_seen(self, name: ArtifactName) -> Optional[int]:
        return self._snapshot.get(name)

    def prime(self, names: Iterable[ArtifactName] = TRACKED_ARTIFACTS) -> None:
        """Record current mtimes without notifying, so startup state is not news."""

        for name in names:
            self._snapshot[name] = self._store.mtime_ns(name)
        logger.debug("change detector primed: %s", self._snapshot)

    def detect(self, names: Iterable[ArtifactName] = TRACKED_ARTIFACTS) -> tuple[ChangedSet, dict[str, Optional[int]]]:
        current = {name: self._store.mtime_ns(name) for name in names}
        changed = {name: has_advanced(self._snapshot.get(name), mtime) for name, mtime in current.items()}
        return changed, current

    async def check_and_broadcast(self, names: Iterable[ArtifactName] = TRACKED_ARTIFACTS) -> ChangedSet:
        """Broadcast a changed-set if any artifact advanced; always refresh the snapshot."""

        changed, current = self.detect(tuple(names))
        try:
            if any(changed.values()):
                delivered = await self._notifier.broadcast(changed)
                logger.info("artifacts changed %s; notified %d viewers", changed, delivered)
            else:
                logger.debug("no artifact changes detected")
        finally:
            self._snapshot.update(current)
        return changed


__all__ = ["ChangeDetector", "ChangedSet", "has_advanced"]
