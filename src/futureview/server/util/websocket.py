"""Shared helpers for resilient viewer WebSocket sends."""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


def peer_label(ws: Any) -> str:
    """Best-effort ``host:port`` label for log lines."""

    addr = getattr(ws, "remote_address", None)
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return hex(id(ws))


async def safe_send(ws: Any, data: Any) -> bool:
    """Send ``data`` on ``ws``; on failure close the socket and return False.

    Exceptions from the send and the follow-up close are logged at DEBUG and
    never propagate, so a dead viewer cannot abort a broadcast.
    """

    try:
        await ws.send(data)
        return True
    except Exception:
        logger.debug("viewer %s: send failed", peer_label(ws), exc_info=True)
    try:
        await ws.close()
    except Exception:
        logger.debug("viewer %s: close after failed send failed", peer_label(ws), exc_info=True)
    return False


__all__ = ["peer_label", "safe_send"]
