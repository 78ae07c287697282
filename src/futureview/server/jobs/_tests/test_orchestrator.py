from __future__ import annotations

import asyncio
import io
import json
from typing import Callable, Optional

import numpy as np
import pytest
from PIL import Image

from futureview.server.artifacts.store import (
    COMPOSITE_PLAIN,
    COMPOSITE_SKY_MASKED,
    REFERENCE,
    RENDERED_OVERLAY,
    ArtifactStore,
)
from futureview.server.artifacts.waiter import ArtifactWaiter
from futureview.server.compositing.compositor import decode_image, encode_png
from futureview.server.engine.dispatcher import DispatchResult, ScriptDispatcher
from futureview.server.jobs.models import CameraParams
from futureview.server.jobs.orchestrator import RenderJobOrchestrator
from futureview.server.metrics import Metrics
from futureview.server.notify.change_detector import ChangeDetector
from futureview.server.notify.notifier import Notifier

VIEW_SCRIPT = "view.write_image(filename: 'image_new.png', transparent: true)"
PARAMS = CameraParams(latitude=47.3205, longitude=-0.9274, elevation=80, heading=34, pitch=10, fov=75)
WIDTH, HEIGHT = 32, 24


def _reference_jpeg(width: int = WIDTH, height: int = HEIGHT) -> bytes:
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    pixels[: height // 2] = (90, 140, 220)
    pixels[height // 2:] = (60, 120, 40)
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="JPEG", quality=95)
    return buf.getvalue()


def _overlay_png(width: int = WIDTH, height: int = HEIGHT) -> bytes:
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[:, width // 4: 3 * width // 4] = (200, 200, 210, 255)
    return encode_png(pixels)


class RecordingWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        pass


class StubDispatcher:
    """Accepts every script; optionally 'renders' the overlay after a delay."""

    def __init__(
        self,
        store: ArtifactStore,
        *,
        overlay: Optional[bytes] = None,
        render_delay_s: float = 0.02,
        result: Optional[DispatchResult] = None,
        on_dispatch: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self.overlay = overlay
        self.render_delay_s = render_delay_s
        self.result = result or DispatchResult(ok=True, message="Script executed")
        self.on_dispatch = on_dispatch
        self.scripts: list[str] = []
        self.timeline: list[str] = []

    async def dispatch(self, script: str) -> DispatchResult:
        self.scripts.append(script)
        self.timeline.append("dispatch")
        if self.on_dispatch is not None:
            self.on_dispatch(script)
        if self.result.ok and self.overlay is not None and script == VIEW_SCRIPT:
            asyncio.get_running_loop().call_later(self.render_delay_s, self._render)
        return self.result

    def _render(self) -> None:
        self.store.write_bytes(RENDERED_OVERLAY, self.overlay)
        self.timeline.append("render")


class Harness:
    def __init__(self, tmp_path, *, timeout_s: float = 2.0) -> None:
        self.tmp_path = tmp_path
        self.store = ArtifactStore(tmp_path / "data")
        self.store.ensure_root()
        self.params_path = tmp_path / "state" / "camera_params.json"
        self.models_dir = tmp_path / "models"
        self.models_dir.mkdir()
        self.viewer = RecordingWebSocket()
        self.notifier = Notifier()
        self.notifier.subscribe(self.viewer)
        self.detector = ChangeDetector(self.store, self.notifier)
        self.waiter = ArtifactWaiter(self.store, timeout_s=timeout_s, poll_interval_s=0.01)
        self.metrics = Metrics()

    def build(self, dispatcher) -> RenderJobOrchestrator:
        self.detector.prime()
        return RenderJobOrchestrator(
            store=self.store,
            dispatcher=dispatcher,
            waiter=self.waiter,
            detector=self.detector,
            view_script=VIEW_SCRIPT,
            camera_params_path=self.params_path,
            models_dir=self.models_dir,
            notify_settle_s=0.0,
            metrics=self.metrics,
        )


async def _unused_port() -> int:
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return port


def test_successful_job_produces_both_composites_and_notifies(tmp_path) -> None:
    h = Harness(tmp_path)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    seen_params: list[dict] = []
    dispatcher = StubDispatcher(
        h.store,
        overlay=_overlay_png(),
        on_dispatch=lambda _script: seen_params.append(json.loads(h.params_path.read_text())),
    )
    orchestrator = h.build(dispatcher)

    job = asyncio.run(orchestrator.run_job(PARAMS))

    assert job.stage == "done", job.failure
    assert job.failure is None
    assert job.stage_history == [
        "preparing_inputs",
        "dispatching",
        "waiting_artifact",
        "compositing",
        "detecting_changes",
        "done",
    ]
    assert seen_params == [
        {"latitude": 47.3205, "longitude": -0.9274, "elevation": 80.0, "heading": 34.0, "pitch": 10.0, "fov": 75.0}
    ]
    reference = decode_image(h.store.read_bytes(REFERENCE))
    for name in (COMPOSITE_PLAIN, COMPOSITE_SKY_MASKED):
        composite = decode_image(h.store.read_bytes(name))
        assert composite.shape == reference.shape
    expected = {REFERENCE: False, COMPOSITE_PLAIN: True, COMPOSITE_SKY_MASKED: True}
    assert job.changed == expected
    assert h.viewer.sent == [expected]
    assert orchestrator.last_job is job
    assert h.metrics.counter("futureview_jobs_done_total") == 1.0


def test_sky_masked_composite_only_replaces_sky(tmp_path) -> None:
    h = Harness(tmp_path)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    orchestrator = h.build(StubDispatcher(h.store, overlay=_overlay_png()))

    asyncio.run(orchestrator.run_job(PARAMS))

    reference = decode_image(h.store.read_bytes(REFERENCE))
    masked = decode_image(h.store.read_bytes(COMPOSITE_SKY_MASKED))
    plain = decode_image(h.store.read_bytes(COMPOSITE_PLAIN))
    col = WIDTH // 2
    assert tuple(masked[1, col]) == (200, 200, 210, 255)      # sky under opaque overlay
    assert np.array_equal(masked[HEIGHT - 2, col], reference[HEIGHT - 2, col])  # ground kept
    assert np.array_equal(masked[1, 0], reference[1, 0])      # sky, overlay transparent
    assert tuple(plain[HEIGHT - 2, col]) == (200, 200, 210, 255)


def test_supplied_reference_is_published_and_reported(tmp_path) -> None:
    h = Harness(tmp_path)
    orchestrator = h.build(StubDispatcher(h.store, overlay=_overlay_png()))
    reference = _reference_jpeg()

    job = asyncio.run(orchestrator.run_job(PARAMS, reference))

    assert job.succeeded
    assert h.store.read_bytes(REFERENCE) == reference
    assert job.changed[REFERENCE] is True


def test_refused_engine_fails_dispatch_without_touching_artifacts(tmp_path) -> None:
    h = Harness(tmp_path)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    h.store.write_bytes(COMPOSITE_PLAIN, b"old-plain")
    h.store.write_bytes(COMPOSITE_SKY_MASKED, b"old-masked")
    before = {name: h.store.mtime_ns(name) for name in (REFERENCE, COMPOSITE_PLAIN, COMPOSITE_SKY_MASKED)}

    async def _run():
        port = await _unused_port()
        orchestrator = h.build(ScriptDispatcher("127.0.0.1", port, timeout_s=2.0))
        return await orchestrator.run_job(PARAMS)

    job = asyncio.run(_run())

    assert job.stage == "failed"
    assert job.failure.kind == "dispatch"
    assert job.failure.stage == "dispatching"
    after = {name: h.store.mtime_ns(name) for name in before}
    assert after == before
    assert h.store.read_bytes(COMPOSITE_PLAIN) == b"old-plain"
    assert h.viewer.sent == []
    assert h.metrics.counter("futureview_jobs_failed_dispatch_total") == 1.0


def test_engine_script_error_fails_dispatch(tmp_path) -> None:
    h = Harness(tmp_path)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    failing = StubDispatcher(h.store, result=DispatchResult.failure("engine reported script failure: boom"))
    orchestrator = h.build(failing)

    job = asyncio.run(orchestrator.run_job(PARAMS))

    assert job.failure.kind == "dispatch"
    assert "boom" in job.failure.cause


def test_missing_render_times_out_and_stale_overlay_is_not_used(tmp_path) -> None:
    h = Harness(tmp_path, timeout_s=0.2)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    h.store.write_bytes(RENDERED_OVERLAY, _overlay_png())  # left over from a previous job
    orchestrator = h.build(StubDispatcher(h.store, overlay=None))

    job = asyncio.run(orchestrator.run_job(PARAMS))

    assert job.stage == "failed"
    assert job.failure.kind == "artifact_timeout"
    assert job.failure.stage == "waiting_artifact"
    assert not h.store.exists(RENDERED_OVERLAY)
    assert not h.store.exists(COMPOSITE_PLAIN)
    assert not h.store.exists(COMPOSITE_SKY_MASKED)
    assert h.viewer.sent == []


def test_mismatched_render_fails_compositing(tmp_path) -> None:
    h = Harness(tmp_path)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    orchestrator = h.build(StubDispatcher(h.store, overlay=_overlay_png(WIDTH + 4, HEIGHT)))

    job = asyncio.run(orchestrator.run_job(PARAMS))

    assert job.failure.kind == "composite"
    assert job.failure.stage == "compositing"
    assert "dimensions" in job.failure.cause
    assert not h.store.exists(COMPOSITE_PLAIN)
    assert not h.store.exists(COMPOSITE_SKY_MASKED)
    assert h.viewer.sent == []


def test_truncated_render_fails_compositing(tmp_path) -> None:
    h = Harness(tmp_path)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    rng = np.random.default_rng(3)
    noisy = encode_png(rng.integers(0, 256, size=(HEIGHT, WIDTH, 4), dtype=np.uint8))
    orchestrator = h.build(StubDispatcher(h.store, overlay=noisy[: len(noisy) // 2]))

    job = asyncio.run(orchestrator.run_job(PARAMS))

    assert job.failure.kind == "composite"
    assert job.failure.stage == "compositing"
    assert not h.store.exists(COMPOSITE_PLAIN)
    assert h.viewer.sent == []


def test_missing_reference_fails_before_dispatch(tmp_path) -> None:
    h = Harness(tmp_path)
    dispatcher = StubDispatcher(h.store, overlay=_overlay_png())
    orchestrator = h.build(dispatcher)

    job = asyncio.run(orchestrator.run_job(PARAMS))

    assert job.failure.kind == "io"
    assert job.failure.stage == "preparing_inputs"
    assert dispatcher.scripts == []


def test_submit_returns_before_pipeline_runs(tmp_path) -> None:
    h = Harness(tmp_path)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    orchestrator = h.build(StubDispatcher(h.store, overlay=_overlay_png()))

    async def _run():
        job = orchestrator.submit(PARAMS)
        stage_at_return = job.stage
        await job.task
        return stage_at_return, job

    stage_at_return, job = asyncio.run(_run())

    assert stage_at_return == "idle"
    assert job.stage == "done"
    assert job.status()["failure"] is None


def test_overlapping_submissions_never_interleave(tmp_path) -> None:
    h = Harness(tmp_path)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    dispatcher = StubDispatcher(h.store, overlay=_overlay_png(), render_delay_s=0.05)
    orchestrator = h.build(dispatcher)

    async def _run():
        first = orchestrator.submit(PARAMS)
        second = orchestrator.submit(PARAMS)
        await asyncio.sleep(0.01)
        busy = orchestrator.busy
        await asyncio.gather(first.task, second.task)
        return first, second, busy

    first, second, busy = asyncio.run(_run())

    assert busy is True
    assert (first.job_id, second.job_id) == (1, 2)
    assert first.succeeded and second.succeeded
    assert dispatcher.timeline == ["dispatch", "render", "dispatch", "render"]
    assert first.finished_at <= second.finished_at


def test_shutdown_abandons_in_flight_job(tmp_path) -> None:
    h = Harness(tmp_path, timeout_s=30.0)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    orchestrator = h.build(StubDispatcher(h.store, overlay=None))

    async def _run():
        job = orchestrator.submit(PARAMS)
        await asyncio.sleep(0.05)
        await orchestrator.shutdown()
        return job

    job = asyncio.run(_run())

    assert job.stage == "failed"
    assert job.failure.kind == "cancelled"
    assert job.failure.stage == "waiting_artifact"


def test_shutdown_finalizes_queued_jobs(tmp_path) -> None:
    h = Harness(tmp_path, timeout_s=30.0)
    h.store.write_bytes(REFERENCE, _reference_jpeg())
    orchestrator = h.build(StubDispatcher(h.store, overlay=None))

    async def _run():
        running = orchestrator.submit(PARAMS)
        queued = orchestrator.submit(PARAMS)
        await asyncio.sleep(0.05)
        await orchestrator.shutdown()
        return running, queued

    running, queued = asyncio.run(_run())

    assert running.terminal and queued.terminal
    assert running.failure.stage == "waiting_artifact"
    assert queued.failure.kind == "cancelled"
    assert queued.failure.stage == "idle"
    assert queued.finished_at is not None
    assert orchestrator.last_job in (running, queued)
    assert h.metrics.counter("futureview_jobs_failed_cancelled_total") == 2.0


def test_shutdown_right_after_submit_still_finalizes(tmp_path) -> None:
    h = Harness(tmp_path)
    orchestrator = h.build(StubDispatcher(h.store, overlay=None))

    async def _run():
        job = orchestrator.submit(PARAMS)
        await orchestrator.shutdown()
        return job

    job = asyncio.run(_run())

    assert job.stage == "failed"
    assert job.failure.kind == "cancelled"
    assert job.finished_at is not None


def test_load_model_runs_optional_customization(tmp_path) -> None:
    h = Harness(tmp_path)
    dispatcher = StubDispatcher(h.store)
    orchestrator = h.build(dispatcher)
    (h.models_dir / "turbines.txt").write_text("puts 'custom'", encoding="utf-8")

    async def _run():
        plain = await orchestrator.load_model("empty")
        custom = await orchestrator.load_model("turbines")
        return plain, custom

    plain, custom = asyncio.run(_run())

    assert plain.ok and custom.ok
    assert len(dispatcher.scripts) == 3
    assert "empty.skp" in dispatcher.scripts[0]
    assert "turbines.skp" in dispatcher.scripts[1]
    assert dispatcher.scripts[2] == "puts 'custom'"


def test_load_model_stops_after_failed_open(tmp_path) -> None:
    h = Harness(tmp_path)
    dispatcher = StubDispatcher(h.store, result=DispatchResult.failure("engine unreachable"))
    orchestrator = h.build(dispatcher)
    (h.models_dir / "turbines.txt").write_text("puts 'custom'", encoding="utf-8")

    result = asyncio.run(orchestrator.load_model("turbines"))

    assert result.ok is False
    assert len(dispatcher.scripts) == 1


def test_load_model_rejects_path_names(tmp_path) -> None:
    h = Harness(tmp_path)
    orchestrator = h.build(StubDispatcher(h.store))

    with pytest.raises(ValueError):
        asyncio.run(orchestrator.load_model("../etc/passwd"))
