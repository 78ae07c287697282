"""Before/after compositing of the reference photo and the engine render."""

from .compositor import (
    CompositeError,
    DecodeError,
    DimensionMismatch,
    UnsupportedFormat,
    decode_image,
    encode_png,
    overlay,
    sky_mask_overlay,
)
from .sky import SkyClassifier, is_sky, sky_mask

__all__ = [
    "CompositeError",
    "DecodeError",
    "DimensionMismatch",
    "SkyClassifier",
    "UnsupportedFormat",
    "decode_image",
    "encode_png",
    "is_sky",
    "overlay",
    "sky_mask",
    "sky_mask_overlay",
]
