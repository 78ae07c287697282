"""Render job model and orchestration."""

from .models import CameraParams, JobFailure, JobStage, RenderJob
from .orchestrator import RenderJobOrchestrator

__all__ = ["CameraParams", "JobFailure", "JobStage", "RenderJob", "RenderJobOrchestrator"]
