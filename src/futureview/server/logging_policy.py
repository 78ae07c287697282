from __future__ import annotations

"""Centralised debug/logging policy for the futureview server.

This module materialises immutable dataclasses that capture every logging and
debug toggle consumed by the dispatcher, waiter, and notification layers.
All env var parsing happens here so the rest of the codebase can depend on a
structured policy rather than scattered `os.getenv` calls.
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    val = raw.strip().lower()
    if val in {"1", "true", "yes", "on"}:
        return True
    if val in {"0", "false", "no", "off"}:
        return False
    try:
        return bool(int(raw))
    except Exception:
        return default


@dataclass(frozen=True)
class LoggingToggles:
    """Pipeline logging flags."""

    log_dispatch: bool = False
    log_polls: bool = False
    log_broadcasts: bool = False


@dataclass(frozen=True)
class DebugPolicy:
    """Composite debug/logging policy for the server runtime."""

    enabled: bool = False
    logging: LoggingToggles = LoggingToggles()


def load_debug_policy(env: Optional[Mapping[str, str]] = None) -> DebugPolicy:
    """Read debug/logging flags from the provided environment mapping."""

    if env is None:
        env = os.environ

    toggles = LoggingToggles(
        log_dispatch=_env_bool(env, "FUTUREVIEW_LOG_DISPATCH", False),
        log_polls=_env_bool(env, "FUTUREVIEW_LOG_POLLS", False),
        log_broadcasts=_env_bool(env, "FUTUREVIEW_LOG_BROADCASTS", False),
    )
    return DebugPolicy(
        enabled=_env_bool(env, "FUTUREVIEW_DEBUG", False),
        logging=toggles,
    )


def apply_debug_policy(policy: DebugPolicy, *, root: str = "futureview") -> None:
    """Enable DEBUG on the package logger tree only, leaving the root at INFO."""

    if not policy.enabled:
        return
    pkg_logger = logging.getLogger(root)
    pkg_logger.setLevel(logging.DEBUG)


__all__ = [
    "DebugPolicy",
    "LoggingToggles",
    "apply_debug_policy",
    "load_debug_policy",
]
