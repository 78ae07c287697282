"""Viewer subscriber set and broadcast."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Mapping, Optional

from futureview.server.util.websocket import safe_send

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from futureview.server.metrics import Metrics

logger = logging.getLogger(__name__)


class Notifier:
    """Holds live viewer channels and fans messages out to them.

    A subscriber is anything with ``async send(text)`` and ``async close()``
    (a websocket connection in production). Subscribers whose send fails are
    dropped without interrupting delivery to the others.
    """

    def __init__(self, *, metrics: Optional["Metrics"] = None, log_broadcasts: bool = False) -> None:
        self._subscribers: set[Any] = set()
        self._metrics = metrics
        self._log_broadcasts = log_broadcasts

    @property
    def subscribers(self) -> frozenset[Any]:
        return frozenset(self._subscribers)

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, ws: Any) -> None:
        self._subscribers.add(ws)
        self._update_gauge()
        logger.debug("viewer subscribed (%d live)", len(self._subscribers))

    def unsubscribe(self, ws: Any) -> None:
        self._subscribers.discard(ws)
        self._update_gauge()
        logger.debug("viewer unsubscribed (%d live)", len(self._subscribers))

    async def broadcast(self, payload: Mapping[str, object]) -> int:
        """Send ``payload`` as JSON to every subscriber; return deliveries."""

        text = json.dumps(dict(payload))
        targets = list(self._subscribers)
        if not targets:
            return 0
        results = await asyncio.gather(
            *(safe_send(ws, text) for ws in targets),
            return_exceptions=True,
        )
        delivered = 0
        for ws, result in zip(targets, results):
            if result is True:
                delivered += 1
            else:
                self._subscribers.discard(ws)
        dropped = len(targets) - delivered
        self._update_gauge()
        if self._metrics is not None:
            self._metrics.inc("futureview_broadcasts_total")
            if dropped:
                self._metrics.inc("futureview_subscribers_dropped_total", dropped)
        if self._log_broadcasts:
            logger.info("broadcast %s to %d viewers (%d dropped)", text, delivered, dropped)
        elif dropped:
            logger.debug("dropped %d dead viewers during broadcast", dropped)
        return delivered

    def _update_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.set("futureview_subscribers", float(len(self._subscribers)))


__all__ = ["Notifier"]
