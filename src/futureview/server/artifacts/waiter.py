"""Bounded, cancellable wait for an artifact to appear."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from futureview.server.artifacts.store import ArtifactName, ArtifactStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitResult:
    name: ArtifactName
    ready: bool
    elapsed_s: float
    polls: int


class ArtifactWaiter:
    """Poll an `ArtifactStore` until an artifact exists or the timeout passes.

    The loop sleeps between checks, so cancelling the awaiting task abandons
    the wait at the next suspension point. The final check happens at the
    deadline, which bounds a timed-out wait to ``[timeout, timeout + poll]``.
    """

    def __init__(
        self,
        store: ArtifactStore,
        *,
        timeout_s: float = 60.0,
        poll_interval_s: float = 0.1,
        log_polls: bool = False,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if poll_interval_s <= 0:
            raise ValueError("poll interval must be positive")
        self._store = store
        self._timeout_s = float(timeout_s)
        self._poll_interval_s = float(poll_interval_s)
        self._log_polls = log_polls
        self._clock = clock

    async def wait(
        self,
        name: ArtifactName,
        *,
        timeout_s: Optional[float] = None,
        poll_interval_s: Optional[float] = None,
        require_nonempty: bool = True,
    ) -> WaitResult:
        timeout = self._timeout_s if timeout_s is None else float(timeout_s)
        interval = self._poll_interval_s if poll_interval_s is None else float(poll_interval_s)
        clock = self._clock or asyncio.get_running_loop().time
        start = clock()
        polls = 0
        while True:
            polls += 1
            present = self._store.exists(name, require_nonempty=require_nonempty)
            elapsed = clock() - start
            if self._log_polls:
                logger.info("poll %d for %s: present=%s elapsed=%.3fs", polls, name, present, elapsed)
            if present:
                logger.debug("artifact %s ready after %.3fs (%d polls)", name, elapsed, polls)
                return WaitResult(name=name, ready=True, elapsed_s=elapsed, polls=polls)
            remaining = timeout - elapsed
            if remaining <= 0:
                logger.debug("artifact %s not ready after %.3fs (%d polls)", name, elapsed, polls)
                return WaitResult(name=name, ready=False, elapsed_s=elapsed, polls=polls)
            await asyncio.sleep(min(interval, remaining))


__all__ = ["ArtifactWaiter", "WaitResult"]
