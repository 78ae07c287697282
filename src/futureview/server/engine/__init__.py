"""Rendering engine channel: script dispatch and script sources."""

from .dispatcher import DispatchResult, ScriptDispatcher
from .scripts import (
    build_model_load_script,
    load_view_script,
    read_model_customization,
    validate_model_name,
)

__all__ = [
    "DispatchResult",
    "ScriptDispatcher",
    "build_model_load_script",
    "load_view_script",
    "read_model_customization",
    "validate_model_name",
]
