"""Render job data: camera parameters, stages, and failure records."""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import Literal, Mapping, Optional

JobStage = Literal[
    "idle",
    "preparing_inputs",
    "dispatching",
    "waiting_artifact",
    "compositing",
    "detecting_changes",
    "done",
    "failed",
]

FailureKind = Literal["dispatch", "artifact_timeout", "composite", "io", "cancelled"]

TERMINAL_STAGES: frozenset[str] = frozenset({"done", "failed"})

_CAMERA_FIELDS = ("latitude", "longitude", "elevation", "heading", "pitch", "fov")


@dataclass(frozen=True)
class CameraParams:
    """Panorama camera pose; elevation is resolved upstream and injected."""

    latitude: float
    longitude: float
    elevation: float
    heading: float
    pitch: float
    fov: float

    def __post_init__(self) -> None:
        for name in _CAMERA_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TypeError(f"camera {name} must be numeric, got {value!r}")
            if not math.isfinite(float(value)):
                raise ValueError(f"camera {name} must be finite, got {value!r}")
            object.__setattr__(self, name, float(value))

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "CameraParams":
        """Build from a loose mapping, accepting ``lat``/``lng`` aliases and numeric strings."""

        aliases = {"latitude": ("latitude", "lat"), "longitude": ("longitude", "lng", "lon")}
        values: dict[str, float] = {}
        for name in _CAMERA_FIELDS:
            raw = None
            for key in aliases.get(name, (name,)):
                if key in data and data[key] is not None:
                    raw = data[key]
                    break
            if raw is None:
                raise ValueError(f"camera parameter {name!r} is missing")
            if isinstance(raw, str):
                try:
                    raw = float(raw)
                except ValueError:
                    raise ValueError(f"camera parameter {name!r} is not numeric: {raw!r}") from None
            values[name] = raw  # type: ignore[assignment]
        return cls(**values)

    def to_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in _CAMERA_FIELDS}


@dataclass(frozen=True)
class JobFailure:
    kind: FailureKind
    stage: JobStage
    cause: str


@dataclass
class RenderJob:
    """One pipeline run, from submission to a terminal stage."""

    job_id: int
    params: CameraParams
    started_at: float
    reference: Optional[bytes] = field(default=None, repr=False)
    stage: JobStage = "idle"
    failure: Optional[JobFailure] = None
    finished_at: Optional[float] = None
    changed: Optional[dict[str, bool]] = None
    stage_history: list[JobStage] = field(default_factory=list)
    task: Optional[asyncio.Task[None]] = field(default=None, repr=False, compare=False)

    @property
    def terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def succeeded(self) -> bool:
        return self.stage == "done"

    def status(self) -> dict[str, object]:
        """JSON-ready job status for callers and logs."""

        failure = None
        if self.failure is not None:
            failure = {
                "kind": self.failure.kind,
                "stage": self.failure.stage,
                "cause": self.failure.cause,
            }
        return {
            "job_id": self.job_id,
            "stage": self.stage,
            "params": self.params.to_dict(),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "failure": failure,
            "changed": self.changed,
        }


__all__ = [
    "CameraParams",
    "FailureKind",
    "JobFailure",
    "JobStage",
    "RenderJob",
    "TERMINAL_STAGES",
]
