"""Centralized server configuration.

Typed configuration objects and a loader that reads the environment once.
The bootstrap calls `load_server_ctx()` and passes the resulting `ServerCtx`
down; no other module reads `os.environ` directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional
import ipaddress
import logging
import os

from futureview.server.logging_policy import DebugPolicy, load_debug_policy


logger = logging.getLogger(__name__)


# ---- Helpers -----------------------------------------------------------------

def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    v = env.get(name)
    if v is None:
        return int(default)
    try:
        return int(v)
    except Exception:
        return int(default)


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    v = env.get(name)
    if v is None:
        return float(default)
    try:
        return float(v)
    except Exception:
        return float(default)


def _env_str(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    v = env.get(name)
    if v is None:
        return default
    v = v.strip()
    return v if v != "" else default


def is_loopback_host(host: str) -> bool:
    """Return True when ``host`` names the local machine only."""

    value = (host or "").strip().lower()
    if value == "localhost":
        return True
    try:
        return ipaddress.ip_address(value).is_loopback
    except ValueError:
        return False


# ---- Types -------------------------------------------------------------------

@dataclass(frozen=True)
class EngineEndpoint:
    """Address of the rendering engine's script server.

    The engine executes arbitrary script text, so the endpoint is restricted
    to loopback addresses.
    """

    host: str = "127.0.0.1"
    port: int = 4567
    timeout_s: float = 30.0


@dataclass(frozen=True)
class PipelineConfig:
    """Paths and timings for the render job pipeline."""

    data_dir: str = "public/data"
    camera_params_path: str = "data/camera_params.json"
    view_script_path: Optional[str] = None
    models_dir: str = "sketchup/models"
    default_model: str = "empty"
    artifact_timeout_s: float = 60.0
    artifact_poll_s: float = 0.1
    notify_settle_s: float = 0.5


@dataclass(frozen=True)
class ServerConfig:
    """Top-level server configuration."""

    host: str = "127.0.0.1"
    notify_port: int = 3001
    engine: EngineEndpoint = EngineEndpoint()
    pipeline: PipelineConfig = PipelineConfig()


@dataclass(frozen=True)
class ServerCtx:
    """Resolved runtime context handed to the server bootstrap."""

    cfg: ServerConfig = field(default_factory=ServerConfig)
    debug_policy: DebugPolicy = field(default_factory=DebugPolicy)
    metrics_window: int = 512


def _load_engine_endpoint(env: Mapping[str, str]) -> EngineEndpoint:
    host = _env_str(env, "FUTUREVIEW_ENGINE_HOST", "127.0.0.1") or "127.0.0.1"
    if not is_loopback_host(host):
        logger.warning(
            "FUTUREVIEW_ENGINE_HOST=%s is not a loopback address; using 127.0.0.1",
            host,
        )
        host = "127.0.0.1"
    port = _env_int(env, "FUTUREVIEW_ENGINE_PORT", 4567)
    timeout_s = _env_float(env, "FUTUREVIEW_DISPATCH_TIMEOUT", 30.0)
    return EngineEndpoint(
        host=host,
        port=port,
        timeout_s=timeout_s if timeout_s > 0 else 30.0,
    )


def _load_pipeline_config(env: Mapping[str, str]) -> PipelineConfig:
    timeout_s = _env_float(env, "FUTUREVIEW_ARTIFACT_TIMEOUT", 60.0)
    poll_s = _env_float(env, "FUTUREVIEW_ARTIFACT_POLL", 0.1)
    settle_s = _env_float(env, "FUTUREVIEW_NOTIFY_SETTLE", 0.5)
    return PipelineConfig(
        data_dir=_env_str(env, "FUTUREVIEW_DATA_DIR", "public/data") or "public/data",
        camera_params_path=(
            _env_str(env, "FUTUREVIEW_CAMERA_PARAMS_PATH", "data/camera_params.json")
            or "data/camera_params.json"
        ),
        view_script_path=_env_str(env, "FUTUREVIEW_VIEW_SCRIPT_PATH"),
        models_dir=_env_str(env, "FUTUREVIEW_MODELS_DIR", "sketchup/models") or "sketchup/models",
        default_model=_env_str(env, "FUTUREVIEW_DEFAULT_MODEL", "empty") or "empty",
        artifact_timeout_s=timeout_s if timeout_s > 0 else 60.0,
        artifact_poll_s=poll_s if poll_s > 0 else 0.1,
        notify_settle_s=max(0.0, settle_s),
    )


def load_server_config(env: Optional[Mapping[str, str]] = None) -> ServerConfig:
    if env is None:
        env = os.environ
    return ServerConfig(
        host=_env_str(env, "FUTUREVIEW_HOST", "127.0.0.1") or "127.0.0.1",
        notify_port=_env_int(env, "FUTUREVIEW_NOTIFY_PORT", 3001),
        engine=_load_engine_endpoint(env),
        pipeline=_load_pipeline_config(env),
    )


def load_server_ctx(env: Optional[Mapping[str, str]] = None) -> ServerCtx:
    """Build a `ServerCtx` by reading environment once.

    Note: This does not mutate the process environment and is side-effect free.
    """
    if env is None:
        env = os.environ
    return ServerCtx(
        cfg=load_server_config(env),
        debug_policy=load_debug_policy(env),
        metrics_window=max(16, _env_int(env, "FUTUREVIEW_METRICS_WINDOW", 512)),
    )


__all__ = [
    "EngineEndpoint",
    "PipelineConfig",
    "ServerConfig",
    "ServerCtx",
    "is_loopback_host",
    "load_server_config",
    "load_server_ctx",
]
