"""futureview render server.

Wires the artifact store, engine dispatcher, compositor pipeline, and viewer
notification channel together, and serves the notification websocket. The
HTTP layer (panorama fetch, elevation lookup, static files) lives outside this
package and talks to `FutureViewServer.submit` / `load_model`.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Optional

import websockets

from futureview.server.artifacts.store import ArtifactStore
from futureview.server.artifacts.waiter import ArtifactWaiter
from futureview.server.config import ServerCtx, load_server_ctx
from futureview.server.engine.dispatcher import DispatchResult, ScriptDispatcher
from futureview.server.engine.scripts import load_view_script
from futureview.server.jobs.models import CameraParams, RenderJob
from futureview.server.jobs.orchestrator import RenderJobOrchestrator
from futureview.server.logging_policy import apply_debug_policy
from futureview.server.metrics import Metrics
from futureview.server.notify.change_detector import ChangeDetector
from futureview.server.notify.notifier import Notifier
from futureview.server.util.websocket import peer_label

logger = logging.getLogger(__name__)


class FutureViewServer:
    def __init__(self, ctx: Optional[ServerCtx] = None, *, view_script: Optional[str] = None) -> None:
        self._ctx = ctx or load_server_ctx()
        cfg = self._ctx.cfg
        policy = self._ctx.debug_policy
        self.host = cfg.host
        self.notify_port = cfg.notify_port
        self.metrics = Metrics(window=self._ctx.metrics_window)
        self.store = ArtifactStore(cfg.pipeline.data_dir)
        self.notifier = Notifier(metrics=self.metrics, log_broadcasts=policy.logging.log_broadcasts)
        self.detector = ChangeDetector(self.store, self.notifier)
        self.dispatcher = ScriptDispatcher.from_endpoint(cfg.engine, log_dispatch=policy.logging.log_dispatch)
        self.waiter = ArtifactWaiter(
            self.store,
            timeout_s=cfg.pipeline.artifact_timeout_s,
            poll_interval_s=cfg.pipeline.artifact_poll_s,
            log_polls=policy.logging.log_polls,
        )
        self._view_script = view_script
        self.orchestrator: Optional[RenderJobOrchestrator] = None
        self._startup_task: Optional[asyncio.Task[Any]] = None

    @property
    def ctx(self) -> ServerCtx:
        return self._ctx

    def prepare(self) -> RenderJobOrchestrator:
        """Resolve inputs and build the orchestrator; raises if the view script is missing."""

        pipeline = self._ctx.cfg.pipeline
        self.store.ensure_root()
        if self._view_script is None:
            self._view_script = load_view_script(pipeline.view_script_path)
        self.detector.prime()
        self.orchestrator = RenderJobOrchestrator(
            store=self.store,
            dispatcher=self.dispatcher,
            waiter=self.waiter,
            detector=self.detector,
            view_script=self._view_script,
            camera_params_path=pipeline.camera_params_path,
            models_dir=pipeline.models_dir,
            notify_settle_s=pipeline.notify_settle_s,
            metrics=self.metrics,
        )
        return self.orchestrator

    # --- Collaborator surface ---------------------------------------------------

    def submit(self, params: CameraParams, reference: Optional[bytes] = None) -> RenderJob:
        return self._require_orchestrator().submit(params, reference)

    async def load_model(self, name: str) -> DispatchResult:
        return await self._require_orchestrator().load_model(name)

    def job_status(self) -> Optional[dict[str, object]]:
        orch = self._require_orchestrator()
        job = orch.current_job or orch.last_job
        return None if job is None else job.status()

    def _require_orchestrator(self) -> RenderJobOrchestrator:
        if self.orchestrator is None:
            raise RuntimeError("server not prepared; call prepare() first")
        return self.orchestrator

    # --- Viewer channel -----------------------------------------------------------

    async def handle_viewer(self, ws: Any) -> None:
        """Keep ``ws`` subscribed until it closes; inbound messages are ignored."""

        self.notifier.subscribe(ws)
        logger.info("viewer connected: %s", peer_label(ws))
        try:
            async for _message in ws:
                pass
        except websockets.ConnectionClosed:
            logger.debug("viewer %s connection closed", peer_label(ws), exc_info=True)
        finally:
            self.notifier.unsubscribe(ws)
            logger.info("viewer disconnected: %s", peer_label(ws))

    async def _load_default_model(self) -> None:
        name = self._ctx.cfg.pipeline.default_model
        try:
            result = await self.load_model(name)
        except ValueError as exc:
            logger.warning("default model %r not loaded: %s", name, exc)
            return
        if not result.ok:
            logger.warning("default model %s not loaded: %s", name, result.error)

    async def start(self) -> None:
        logging.basicConfig(level=logging.INFO,
                            format='[%(asctime)s] %(name)s - %(levelname)s - %(message)s')
        apply_debug_policy(self._ctx.debug_policy)
        logger.debug("Resolved ServerConfig: %s", self._ctx.cfg)
        orchestrator = self.prepare()

        notify_server = await websockets.serve(
            self.handle_viewer,
            self.host,
            self.notify_port,
            compression=None,
        )
        logger.info(
            "Viewer WS listening on %s:%d | engine %s:%d | artifacts in %s",
            self.host,
            self.notify_port,
            self.dispatcher.host,
            self.dispatcher.port,
            self.store.root,
        )
        self._startup_task = asyncio.create_task(self._load_default_model())
        try:
            await notify_server.wait_closed()
        finally:
            if self._startup_task is not None and not self._startup_task.done():
                self._startup_task.cancel()
            await orchestrator.shutdown()
            notify_server.close()


def main() -> None:
    import argparse
    parser = argparse.ArgumentParser(description='futureview render server')
    parser.add_argument('--host', default=os.getenv('FUTUREVIEW_HOST', '127.0.0.1'))
    parser.add_argument('--notify-port', type=int, default=None,
                        help='Viewer notification websocket port (default: FUTUREVIEW_NOTIFY_PORT or 3001)')
    parser.add_argument('--data-dir', default=None, help='Artifact directory (default: FUTUREVIEW_DATA_DIR)')
    parser.add_argument('--view-script', default=None, help='Path to the engine custom-view script')
    parser.add_argument('--debug', action='store_true', help='Enable DEBUG for futureview loggers')
    args = parser.parse_args()

    env = dict(os.environ)
    env['FUTUREVIEW_HOST'] = args.host
    if args.notify_port is not None:
        env['FUTUREVIEW_NOTIFY_PORT'] = str(args.notify_port)
    if args.data_dir:
        env['FUTUREVIEW_DATA_DIR'] = str(Path(args.data_dir).expanduser())
    if args.view_script:
        env['FUTUREVIEW_VIEW_SCRIPT_PATH'] = str(Path(args.view_script).expanduser())
    if args.debug:
        env['FUTUREVIEW_DEBUG'] = '1'

    async def run():
        srv = FutureViewServer(load_server_ctx(env))
        await srv.start()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == '__main__':
    main()
