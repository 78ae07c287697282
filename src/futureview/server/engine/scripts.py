"""Engine script sources.

The rendering engine evaluates Ruby text. The custom-view script (which reads
the camera parameters file and writes the rendered overlay) is supplied by the
deployment; model-loading scripts are generated here.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

_MODEL_LOAD_TEMPLATE = """
model_path = {path}
if File.exist?(model_path)
  Sketchup.active_model.close(true)
  Sketchup.open_file(model_path)
  puts "Opened model: #{{model_path}}"
else
  raise "The model file '#{{model_path}}' does not exist."
end
"""


def validate_model_name(name: str) -> str:
    value = (name or "").strip()
    if not value:
        raise ValueError("model name is required")
    if "/" in value or "\\" in value or value in {".", ".."}:
        raise ValueError(f"invalid model name: {name!r}")
    return value


def model_path(models_dir: Union[str, Path], name: str) -> Path:
    return Path(models_dir) / f"{validate_model_name(name)}.skp"


def _ruby_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("#", "\\#")
    return f'"{escaped}"'


def build_model_load_script(models_dir: Union[str, Path], name: str) -> str:
    """Return a script that replaces the engine's active model with ``name``."""

    path = model_path(models_dir, name).resolve().as_posix()
    return _MODEL_LOAD_TEMPLATE.format(path=_ruby_string(path))


def read_model_customization(models_dir: Union[str, Path], name: str) -> Optional[str]:
    """Per-model follow-up script, or None when the model has none."""

    path = Path(models_dir) / f"{validate_model_name(name)}.txt"
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("no customization script for model %s at %s", name, path)
        return None


def load_view_script(path: Union[str, Path, None]) -> str:
    """Read the custom-view script; a missing script is a startup error."""

    if not path:
        raise FileNotFoundError("no custom-view script configured (FUTUREVIEW_VIEW_SCRIPT_PATH)")
    text = Path(path).read_text(encoding="utf-8")
    logger.info("loaded custom-view script from %s (%d chars)", path, len(text))
    return text


__all__ = [
    "build_model_load_script",
    "load_view_script",
    "model_path",
    "read_model_customization",
    "validate_model_name",
]
