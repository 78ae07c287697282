"""Named image artifacts on disk.

Each artifact has a fixed, well-known path under the data directory. Readers
(viewers, the waiter, the change detector) only ever observe complete files:
every write goes to a sibling temp file that is then atomically renamed over
the canonical path.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Literal, Mapping, Optional, Union

logger = logging.getLogger(__name__)


ArtifactName = Literal[
    "reference",
    "rendered-overlay",
    "composite-plain",
    "composite-sky-masked",
]

REFERENCE: ArtifactName = "reference"
RENDERED_OVERLAY: ArtifactName = "rendered-overlay"
COMPOSITE_PLAIN: ArtifactName = "composite-plain"
COMPOSITE_SKY_MASKED: ArtifactName = "composite-sky-masked"

# Artifacts whose changes are pushed to viewers.
TRACKED_ARTIFACTS: tuple[ArtifactName, ...] = (
    REFERENCE,
    COMPOSITE_PLAIN,
    COMPOSITE_SKY_MASKED,
)


@dataclass(frozen=True)
class ArtifactSpec:
    name: ArtifactName
    filename: str
    media_type: str


DEFAULT_ARTIFACTS: Mapping[ArtifactName, ArtifactSpec] = {
    REFERENCE: ArtifactSpec(REFERENCE, "image_ref.jpg", "image/jpeg"),
    RENDERED_OVERLAY: ArtifactSpec(RENDERED_OVERLAY, "image_new.png", "image/png"),
    COMPOSITE_PLAIN: ArtifactSpec(COMPOSITE_PLAIN, "image_future_over.png", "image/png"),
    COMPOSITE_SKY_MASKED: ArtifactSpec(COMPOSITE_SKY_MASKED, "image_future_integrated.png", "image/png"),
}


def atomic_write_bytes(path: Union[str, Path], data: bytes) -> Path:
    """Write ``data`` to ``path`` via a temp file in the same directory and rename."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    return target


class ArtifactStore:
    """Path registry plus existence/mtime accessors for named artifacts."""

    def __init__(
        self,
        root: Union[str, Path],
        specs: Optional[Mapping[ArtifactName, ArtifactSpec]] = None,
    ) -> None:
        self._root = Path(root)
        self._specs = dict(specs or DEFAULT_ARTIFACTS)

    @property
    def root(self) -> Path:
        return self._root

    def names(self) -> Iterable[ArtifactName]:
        return tuple(self._specs)

    def spec(self, name: ArtifactName) -> ArtifactSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise KeyError(f"unknown artifact: {name!r}") from None

    def path(self, name: ArtifactName) -> Path:
        return self._root / self.spec(name).filename

    def ensure_root(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def mtime_ns(self, name: ArtifactName) -> Optional[int]:
        """Last-modified time in nanoseconds, or None when absent."""

        try:
            return self.path(name).stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def exists(self, name: ArtifactName, *, require_nonempty: bool = False) -> bool:
        try:
            st = self.path(name).stat()
        except FileNotFoundError:
            return False
        if require_nonempty and st.st_size <= 0:
            return False
        return True

    def delete(self, name: ArtifactName) -> bool:
        """Remove the artifact; returns False when it was already absent."""

        path = self.path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug("artifact %s absent at %s; nothing to delete", name, path)
            return False
        logger.debug("deleted artifact %s at %s", name, path)
        return True

    def read_bytes(self, name: ArtifactName) -> bytes:
        return self.path(name).read_bytes()

    def write_bytes(self, name: ArtifactName, data: bytes) -> Path:
        path = atomic_write_bytes(self.path(name), data)
        logger.debug("published artifact %s (%d bytes) at %s", name, len(data), path)
        return path


__all__ = [
    "ArtifactName",
    "ArtifactSpec",
    "ArtifactStore",
    "COMPOSITE_PLAIN",
    "COMPOSITE_SKY_MASKED",
    "DEFAULT_ARTIFACTS",
    "REFERENCE",
    "RENDERED_OVERLAY",
    "TRACKED_ARTIFACTS",
    "atomic_write_bytes",
]
