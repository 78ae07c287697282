#!/usr/bin/env python
"""Stand-in for the rendering engine's script server.

Speaks the engine wire protocol (one JSON line in, one JSON line out). For
every script that writes an image, it drops a transparent overlay PNG the size of the
reference image with an opaque block in its lower half. Use it to exercise
the full pipeline without a CAD application.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

import numpy as np

from futureview.server.artifacts.store import REFERENCE, RENDERED_OVERLAY, ArtifactStore
from futureview.server.compositing.compositor import decode_image, encode_png

_LOG = logging.getLogger("fake_render_engine")


def _render(store: ArtifactStore) -> None:
    if store.exists(REFERENCE):
        height, width = decode_image(store.read_bytes(REFERENCE)).shape[:2]
    else:
        width, height = 640, 640
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[height // 2:, width // 4: 3 * width // 4] = (180, 180, 190, 255)
    store.write_bytes(RENDERED_OVERLAY, encode_png(pixels))


async def _handle(store: ArtifactStore, delay_s: float, fail: bool,
                  reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        line = await reader.readline()
        try:
            script = json.loads(line)["script"]
        except (ValueError, KeyError, TypeError) as exc:
            reply = {"status": "error", "message": f"bad request: {exc}"}
        else:
            _LOG.info("received script (%d chars)", len(script))
            if fail:
                reply = {"status": "error", "message": "script raised"}
            else:
                reply = {"status": "success", "message": "Script executed"}
                if "write_image" in script or "image_new" in script:
                    asyncio.get_running_loop().call_later(delay_s, _render, store)
        writer.write((json.dumps(reply) + "\n").encode("utf-8"))
        await writer.drain()
    finally:
        writer.close()


async def _serve(args: argparse.Namespace) -> None:
    store = ArtifactStore(args.data_dir)
    server = await asyncio.start_server(
        lambda r, w: _handle(store, args.delay, args.fail, r, w),
        "127.0.0.1",
        args.port,
    )
    _LOG.info("fake engine listening on 127.0.0.1:%d, artifacts in %s", args.port, store.root)
    async with server:
        await server.serve_forever()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--port", type=int, default=4567)
    parser.add_argument("--data-dir", default="public/data")
    parser.add_argument("--delay", type=float, default=0.5, help="Seconds before the overlay appears")
    parser.add_argument("--fail", action="store_true", help="Report every script as failed")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(name)s - %(levelname)s - %(message)s")
    try:
        asyncio.run(_serve(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
