"""Image decoding and the two before/after composites.

Images travel as ``(H, W, 4)`` uint8 RGBA numpy arrays. Decoding and PNG
encoding go through Pillow; the sky-masked overlay is a hard per-pixel
selection done in numpy.
"""

from __future__ import annotations

import io
import logging
from typing import Optional, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from futureview.server.compositing.sky import SkyClassifier, sky_mask

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = frozenset({"JPEG", "PNG", "WEBP"})
OPAQUE = 255


class CompositeError(RuntimeError):
    """Raised when a composite cannot be produced from its inputs."""


class DimensionMismatch(CompositeError):
    def __init__(self, base_shape: tuple[int, ...], top_shape: tuple[int, ...]) -> None:
        super().__init__(
            f"image dimensions differ: base {base_shape[1]}x{base_shape[0]}, "
            f"top {top_shape[1]}x{top_shape[0]}"
        )
        self.base_shape = base_shape
        self.top_shape = top_shape


class UnsupportedFormat(CompositeError):
    def __init__(self, fmt: Optional[str]) -> None:
        super().__init__(f"unsupported image format: {fmt or 'unknown'}")
        self.format = fmt


class DecodeError(CompositeError):
    def __init__(self, fmt: Optional[str], reason: str) -> None:
        super().__init__(f"cannot decode {fmt or 'image'} data: {reason}")
        self.format = fmt


def decode_image(data: Union[bytes, bytearray, memoryview]) -> np.ndarray:
    """Decode JPEG/PNG/WEBP bytes into an RGBA array."""

    try:
        img = Image.open(io.BytesIO(bytes(data)))
    except UnidentifiedImageError:
        raise UnsupportedFormat(None) from None
    with img:
        if img.format not in SUPPORTED_FORMATS:
            raise UnsupportedFormat(img.format)
        # pixel data is read lazily; a truncated file only fails here
        try:
            img.load()
            rgba = img.convert("RGBA")
        except (OSError, SyntaxError, ValueError) as exc:
            raise DecodeError(img.format, str(exc)) from exc
        return np.asarray(rgba, dtype=np.uint8).copy()


def encode_png(pixels: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(_as_rgba(pixels)).save(buf, format="PNG")
    return buf.getvalue()


def _as_rgba(pixels: np.ndarray) -> np.ndarray:
    if pixels.dtype != np.uint8 or pixels.ndim != 3 or pixels.shape[2] != 4:
        raise ValueError(f"expected (H, W, 4) uint8 RGBA, got {pixels.dtype} {pixels.shape}")
    return pixels


def _check_dimensions(base: np.ndarray, top: np.ndarray) -> None:
    if base.shape[:2] != top.shape[:2]:
        raise DimensionMismatch(base.shape, top.shape)


def overlay(base: np.ndarray, top: np.ndarray) -> np.ndarray:
    """Source-over composite of ``top`` onto ``base``; same size, RGBA."""

    base = _as_rgba(base)
    top = _as_rgba(top)
    _check_dimensions(base, top)
    out = Image.alpha_composite(
        Image.fromarray(base),
        Image.fromarray(top),
    )
    return np.asarray(out, dtype=np.uint8).copy()


def sky_mask_overlay(
    base: np.ndarray,
    top: np.ndarray,
    *,
    classifier: SkyClassifier = sky_mask,
) -> np.ndarray:
    """Replace sky pixels of ``base`` with fully opaque pixels of ``top``.

    Every other pixel (not sky, or ``top`` not fully opaque there) is the
    base pixel unchanged. There is no blending at the mask edge.
    """

    base = _as_rgba(base)
    top = _as_rgba(top)
    _check_dimensions(base, top)
    take_top = classifier(base[..., :3]) & (top[..., 3] == OPAQUE)
    out = np.where(take_top[..., np.newaxis], top, base)
    logger.debug(
        "sky mask replaced %d of %d pixels",
        int(np.count_nonzero(take_top)),
        int(take_top.size),
    )
    return out


__all__ = [
    "CompositeError",
    "DecodeError",
    "DimensionMismatch",
    "SUPPORTED_FORMATS",
    "UnsupportedFormat",
    "decode_image",
    "encode_png",
    "overlay",
    "sky_mask_overlay",
]
