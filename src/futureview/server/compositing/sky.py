"""Sky classification for the sky-masked composite.

A coarse per-pixel colour threshold, not a segmentation model: a pixel is sky
when it is bright enough in blue and either blue dominates red and green, or
all three channels sit close together (pale grey/white overcast). The
classifier is a pure function so it can be swapped without touching the
compositing plumbing.
"""

from __future__ import annotations

from typing import Callable

import numpy as np

BLUE_FLOOR = 100
GREY_TOLERANCE = 20

# (H, W, 3) uint8 RGB -> (H, W) bool
SkyClassifier = Callable[[np.ndarray], np.ndarray]


def is_sky(red: int, green: int, blue: int) -> bool:
    if blue <= BLUE_FLOOR:
        return False
    if red < blue and green < blue:
        return True
    return abs(red - blue) < GREY_TOLERANCE and abs(green - blue) < GREY_TOLERANCE


def sky_mask(rgb: np.ndarray) -> np.ndarray:
    """Vectorised `is_sky` over an ``(H, W, 3)`` array."""

    if rgb.ndim != 3 or rgb.shape[2] < 3:
        raise ValueError(f"expected (H, W, 3) pixels, got shape {rgb.shape}")
    # int16 so differences below zero do not wrap
    px = rgb[..., :3].astype(np.int16, copy=False)
    red, green, blue = px[..., 0], px[..., 1], px[..., 2]
    bright = blue > BLUE_FLOOR
    blue_dominant = (red < blue) & (green < blue)
    near_grey = (np.abs(red - blue) < GREY_TOLERANCE) & (np.abs(green - blue) < GREY_TOLERANCE)
    return bright & (blue_dominant | near_grey)


__all__ = ["BLUE_FLOOR", "GREY_TOLERANCE", "SkyClassifier", "is_sky", "sky_mask"]
