"""Render job orchestration.

One job walks ``preparing_inputs -> dispatching -> waiting_artifact ->
compositing -> detecting_changes -> done``. Any stage may end the job in
``failed`` with a `JobFailure`; failures are terminal and never retried.

The engine is a single shared resource with no request correlation, so jobs
(and model loads) hold ``self._lock`` from preparation through compositing.
Submissions that arrive meanwhile queue on the lock in arrival order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Union

from futureview.server.artifacts.store import (
    COMPOSITE_PLAIN,
    COMPOSITE_SKY_MASKED,
    REFERENCE,
    RENDERED_OVERLAY,
    ArtifactStore,
    atomic_write_bytes,
)
from futureview.server.artifacts.waiter import ArtifactWaiter
from futureview.server.compositing.compositor import (
    CompositeError,
    decode_image,
    encode_png,
    overlay,
    sky_mask_overlay,
)
from futureview.server.compositing.sky import SkyClassifier, sky_mask
from futureview.server.engine.dispatcher import DispatchResult, ScriptDispatcher
from futureview.server.engine.scripts import build_model_load_script, read_model_customization
from futureview.server.jobs.models import (
    CameraParams,
    FailureKind,
    JobFailure,
    JobStage,
    RenderJob,
)
from futureview.server.notify.change_detector import ChangeDetector

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from futureview.server.metrics import Metrics

logger = logging.getLogger(__name__)


class _StageFailed(Exception):
    def __init__(self, kind: FailureKind, cause: str) -> None:
        super().__init__(cause)
        self.kind = kind
        self.cause = cause


class RenderJobOrchestrator:
    def __init__(
        self,
        *,
        store: ArtifactStore,
        dispatcher: ScriptDispatcher,
        waiter: ArtifactWaiter,
        detector: ChangeDetector,
        view_script: str,
        camera_params_path: Union[str, Path],
        models_dir: Union[str, Path] = "sketchup/models",
        notify_settle_s: float = 0.5,
        sky_classifier: SkyClassifier = sky_mask,
        metrics: Optional["Metrics"] = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._waiter = waiter
        self._detector = detector
        self._view_script = view_script
        self._camera_params_path = Path(camera_params_path)
        self._models_dir = Path(models_dir)
        self._notify_settle_s = max(0.0, float(notify_settle_s))
        self._sky_classifier = sky_classifier
        self._metrics = metrics
        self._time_fn = time_fn
        self._lock = asyncio.Lock()
        self._next_job_id = 1
        self._tasks: dict[asyncio.Task[None], RenderJob] = {}
        self._stage_started: float = 0.0
        self.current_job: Optional[RenderJob] = None
        self.last_job: Optional[RenderJob] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # --- Submission ---------------------------------------------------------------

    def submit(self, params: CameraParams, reference: Optional[bytes] = None) -> RenderJob:
        """Start a job in the background and return its handle immediately.

        The caller can answer its own client with ``reference`` right away;
        the job's outcome is observable through ``job.stage``/``job.failure``
        or by awaiting ``job.task``.
        """

        job = self._new_job(params, reference)
        task = asyncio.get_running_loop().create_task(self._run(job), name=f"render-job-{job.job_id}")
        job.task = task
        self._tasks[task] = job
        task.add_done_callback(self._forget_task)
        return job

    async def run_job(self, params: CameraParams, reference: Optional[bytes] = None) -> RenderJob:
        """Run one job to a terminal stage and return it."""

        job = self._new_job(params, reference)
        await self._run(job)
        return job

    async def load_model(self, name: str) -> DispatchResult:
        """Open ``name`` in the engine, then run its customization script if one exists."""

        script = build_model_load_script(self._models_dir, name)
        async with self._lock:
            result = await self._dispatcher.dispatch(script)
            if not result.ok:
                logger.warning("loading model %s failed: %s", name, result.error)
                return result
            logger.info("model %s loaded", name)
            custom = await asyncio.to_thread(read_model_customization, self._models_dir, name)
            if custom is None:
                return result
            custom_result = await self._dispatcher.dispatch(custom)
            if custom_result.ok:
                logger.info("customization script for model %s executed", name)
            else:
                logger.warning("customization script for model %s failed: %s", name, custom_result.error)
            return custom_result

    async def shutdown(self) -> None:
        """Cancel background jobs, queued ones included, and wait for them to unwind."""

        pending = dict(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # a task cancelled before its first step never reached _run
        for job in pending.values():
            if not job.terminal:
                self._fail(job, "cancelled", "job abandoned before it started")
                self._finish(job, 0.0)

    def _forget_task(self, task: asyncio.Task[None]) -> None:
        self._tasks.pop(task, None)

    # --- Pipeline -----------------------------------------------------------------

    def _new_job(self, params: CameraParams, reference: Optional[bytes]) -> RenderJob:
        job = RenderJob(
            job_id=self._next_job_id,
            params=params,
            started_at=self._time_fn(),
            reference=reference,
        )
        self._next_job_id += 1
        if self._metrics is not None:
            self._metrics.inc("futureview_jobs_total")
        if self.busy:
            logger.info("job %d queued behind an in-flight job", job.job_id)
        return job

    async def _run(self, job: RenderJob) -> None:
        t0 = time.perf_counter()
        try:
            async with self._lock:
                self.current_job = job
                t0 = time.perf_counter()
                try:
                    await self._pipeline(job)
                finally:
                    self.current_job = None
        except _StageFailed as exc:
            self._fail(job, exc.kind, exc.cause)
        except asyncio.CancelledError:
            # queued jobs are cancelled at "idle", running ones at their stage
            self._fail(job, "cancelled", "job abandoned")
            raise
        finally:
            self._finish(job, (time.perf_counter() - t0) * 1000.0)

    def _finish(self, job: RenderJob, elapsed_ms: float) -> None:
        job.finished_at = self._time_fn()
        self.last_job = job
        if self._metrics is not None:
            self._metrics.observe_ms("futureview_job_ms", elapsed_ms)
            self._metrics.inc(
                "futureview_jobs_done_total" if job.succeeded else "futureview_jobs_failed_total"
            )

    async def _pipeline(self, job: RenderJob) -> None:
        self._advance(job, "preparing_inputs")
        await self._prepare_inputs(job)

        self._advance(job, "dispatching")
        await self._persist_camera_params(job.params)
        result = await self._dispatcher.dispatch(self._view_script)
        if not result.ok:
            raise _StageFailed("dispatch", result.error or "dispatch failed")

        self._advance(job, "waiting_artifact")
        waited = await self._waiter.wait(RENDERED_OVERLAY)
        if not waited.ready:
            raise _StageFailed(
                "artifact_timeout",
                f"{RENDERED_OVERLAY} did not appear within {waited.elapsed_s:.1f}s",
            )

        self._advance(job, "compositing")
        try:
            await asyncio.to_thread(self._composite)
        except CompositeError as exc:
            raise _StageFailed("composite", str(exc)) from exc
        except OSError as exc:
            raise _StageFailed("io", f"compositing I/O failed: {exc}") from exc

        if self._notify_settle_s > 0:
            await asyncio.sleep(self._notify_settle_s)

        self._advance(job, "detecting_changes")
        try:
            job.changed = await self._detector.check_and_broadcast()
        except OSError:
            logger.warning("job %d: change detection failed", job.job_id, exc_info=True)

        self._advance(job, "done")

    async def _prepare_inputs(self, job: RenderJob) -> None:
        try:
            if job.reference is not None:
                await asyncio.to_thread(self._store.write_bytes, REFERENCE, job.reference)
            elif not self._store.exists(REFERENCE, require_nonempty=True):
                raise _StageFailed("io", f"no {REFERENCE} image available")
            # "exists" after dispatch must mean "freshly rendered"
            await asyncio.to_thread(self._store.delete, RENDERED_OVERLAY)
        except OSError as exc:
            raise _StageFailed("io", f"preparing inputs failed: {exc}") from exc

    async def _persist_camera_params(self, params: CameraParams) -> None:
        data = json.dumps(params.to_dict(), indent=2).encode("utf-8")
        try:
            await asyncio.to_thread(atomic_write_bytes, self._camera_params_path, data)
        except OSError as exc:
            raise _StageFailed("io", f"writing camera parameters failed: {exc}") from exc
        logger.debug("camera parameters written to %s: %s", self._camera_params_path, params.to_dict())

    def _composite(self) -> None:
        base = decode_image(self._store.read_bytes(REFERENCE))
        top = decode_image(self._store.read_bytes(RENDERED_OVERLAY))
        plain = encode_png(overlay(base, top))
        masked = encode_png(sky_mask_overlay(base, top, classifier=self._sky_classifier))
        # both variants exist in memory before either is published
        self._store.write_bytes(COMPOSITE_PLAIN, plain)
        self._store.write_bytes(COMPOSITE_SKY_MASKED, masked)

    # --- Bookkeeping --------------------------------------------------------------

    def _advance(self, job: RenderJob, stage: JobStage) -> None:
        now = time.perf_counter()
        if self._metrics is not None and job.stage not in ("idle", "done", "failed"):
            self._metrics.observe_ms(f"futureview_stage_{job.stage}_ms", (now - self._stage_started) * 1000.0)
        self._stage_started = now
        job.stage = stage
        job.stage_history.append(stage)
        logger.info("job %d: %s", job.job_id, stage)

    def _fail(self, job: RenderJob, kind: FailureKind, cause: str) -> None:
        job.failure = JobFailure(kind=kind, stage=job.stage, cause=cause)
        logger.warning("job %d failed at %s (%s): %s", job.job_id, job.stage, kind, cause)
        if self._metrics is not None:
            self._metrics.inc(f"futureview_jobs_failed_{kind}_total")
        job.stage = "failed"
        job.stage_history.append("failed")


__all__ = ["RenderJobOrchestrator"]
