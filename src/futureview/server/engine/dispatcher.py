"""Script dispatch to the external rendering engine.

Wire protocol: open a TCP connection to the engine's loopback port, send one
newline-terminated JSON envelope ``{"script": <text>}``, read one JSON line
``{"status": "success"|"error", "message": <text>}``, then close. The protocol
has no correlation id, so dispatches are serialized by an internal lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

from futureview.server.config import EngineEndpoint, is_loopback_host

logger = logging.getLogger(__name__)

# Engine replies are a single short JSON line.
_MAX_REPLY_BYTES = 1 << 20


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch.

    ``ok`` is True only when the engine replied with ``status == "success"``.
    On failure ``error`` carries a human-readable cause; ``message`` is the
    engine's own message when a reply arrived.
    """

    ok: bool
    message: Optional[str] = None
    error: Optional[str] = None
    elapsed_s: float = 0.0

    @classmethod
    def failure(cls, error: str, *, message: Optional[str] = None, elapsed_s: float = 0.0) -> "DispatchResult":
        return cls(ok=False, message=message, error=error, elapsed_s=elapsed_s)


def encode_envelope(script: str) -> bytes:
    return (json.dumps({"script": script}) + "\n").encode("utf-8")


def parse_reply(line: bytes) -> DispatchResult:
    """Interpret one reply line from the engine."""

    text = line.decode("utf-8", errors="replace").strip()
    if not text:
        return DispatchResult.failure("engine closed the connection before replying")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return DispatchResult.failure(f"malformed engine reply: {text[:200]!r}")
    if not isinstance(payload, dict):
        return DispatchResult.failure(f"engine reply is not an object: {text[:200]!r}")
    status = payload.get("status")
    message = payload.get("message")
    message = None if message is None else str(message)
    if status == "success":
        return DispatchResult(ok=True, message=message)
    if status == "error":
        return DispatchResult.failure(f"engine reported script failure: {message}", message=message)
    return DispatchResult.failure(f"unexpected engine status {status!r}", message=message)


class ScriptDispatcher:
    """Send script text to the rendering engine, one request at a time."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 4567,
        *,
        timeout_s: float = 30.0,
        log_dispatch: bool = False,
    ) -> None:
        if not is_loopback_host(host):
            raise ValueError(f"engine host must be a loopback address, got {host!r}")
        if timeout_s <= 0:
            raise ValueError("dispatch timeout must be positive")
        self.host = host
        self.port = int(port)
        self.timeout_s = float(timeout_s)
        self._log_dispatch = log_dispatch
        self._lock = asyncio.Lock()

    @classmethod
    def from_endpoint(cls, endpoint: EngineEndpoint, *, log_dispatch: bool = False) -> "ScriptDispatcher":
        return cls(endpoint.host, endpoint.port, timeout_s=endpoint.timeout_s, log_dispatch=log_dispatch)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def dispatch(self, script: str) -> DispatchResult:
        """Deliver ``script`` and return the engine's verdict.

        Never raises for engine-side problems: refused connections, write
        failures, early closes, timeouts and engine-reported script errors all
        come back as ``DispatchResult(ok=False)``.
        """

        async with self._lock:
            start = time.perf_counter()
            if self._log_dispatch:
                logger.info("dispatching %d chars to engine %s:%d", len(script), self.host, self.port)
            try:
                result = await asyncio.wait_for(self._exchange(script), timeout=self.timeout_s)
            except TimeoutError:
                result = DispatchResult.failure(f"no engine reply within {self.timeout_s:.1f}s")
            except ConnectionRefusedError as exc:
                result = DispatchResult.failure(f"engine unreachable at {self.host}:{self.port}: {exc}")
            except (OSError, asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError) as exc:
                result = DispatchResult.failure(f"engine connection failed: {exc!r}")
            elapsed = time.perf_counter() - start
            result = DispatchResult(ok=result.ok, message=result.message, error=result.error, elapsed_s=elapsed)
            if result.ok:
                if self._log_dispatch:
                    logger.info("engine replied in %.3fs: %s", elapsed, result.message)
            else:
                logger.warning("dispatch failed after %.3fs: %s", elapsed, result.error)
            return result

    async def _exchange(self, script: str) -> DispatchResult:
        reader, writer = await asyncio.open_connection(self.host, self.port, limit=_MAX_REPLY_BYTES)
        try:
            writer.write(encode_envelope(script))
            await writer.drain()
            line = await reader.readline()
            return parse_reply(line)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                logger.debug("engine socket close failed", exc_info=True)


__all__ = ["DispatchResult", "ScriptDispatcher", "encode_envelope", "parse_reply"]
