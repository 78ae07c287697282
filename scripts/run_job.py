#!/usr/bin/env python
"""Run one render job in-process and print its terminal status as JSON."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from futureview.server.app.render_server import FutureViewServer
from futureview.server.config import load_server_ctx
from futureview.server.jobs.models import CameraParams

_LOG = logging.getLogger("run_job")


async def _run(args: argparse.Namespace) -> int:
    srv = FutureViewServer(load_server_ctx())
    orchestrator = srv.prepare()
    params = CameraParams(
        latitude=args.lat,
        longitude=args.lng,
        elevation=args.elevation,
        heading=args.heading,
        pitch=args.pitch,
        fov=args.fov,
    )
    reference = Path(args.reference).read_bytes() if args.reference else None
    job = await orchestrator.run_job(params, reference)
    print(json.dumps(job.status(), indent=2))
    print(json.dumps(srv.metrics.snapshot()["counters"], indent=2))
    return 0 if job.succeeded else 1


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--lat", type=float, required=True)
    parser.add_argument("--lng", type=float, required=True)
    parser.add_argument("--elevation", type=float, default=0.0)
    parser.add_argument("--heading", type=float, default=0.0)
    parser.add_argument("--pitch", type=float, default=0.0)
    parser.add_argument("--fov", type=float, default=75.0)
    parser.add_argument("--reference", help="Reference JPEG; defaults to the existing reference artifact")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(name)s - %(levelname)s - %(message)s")
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
