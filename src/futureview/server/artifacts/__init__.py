"""Artifact file registry and the bounded wait for engine output."""

from .store import (
    COMPOSITE_PLAIN,
    COMPOSITE_SKY_MASKED,
    REFERENCE,
    RENDERED_OVERLAY,
    TRACKED_ARTIFACTS,
    ArtifactName,
    ArtifactSpec,
    ArtifactStore,
    atomic_write_bytes,
)
from .waiter import ArtifactWaiter, WaitResult

__all__ = [
    "ArtifactName",
    "ArtifactSpec",
    "ArtifactStore",
    "ArtifactWaiter",
    "COMPOSITE_PLAIN",
    "COMPOSITE_SKY_MASKED",
    "REFERENCE",
    "RENDERED_OVERLAY",
    "TRACKED_ARTIFACTS",
    "WaitResult",
    "atomic_write_bytes",
]
