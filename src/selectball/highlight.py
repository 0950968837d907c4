from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageFilter

from selectball.config import Config, Crop
from selectball.core.pixel import LUMA_RGB, pixel_type

LOGGER = logging.getLogger(__name__)

# Visualization colors of the pixels ignored by the centroid.
BELOW_THRESHOLD_RGB = (50, 50, 50)
OUTSIDE_MASK_RGB = (255, 255, 255)


class CropOutsideImage(ValueError):
    pass


@dataclass(frozen=True)
class SphereRegion:
    """
    Circle around one calibration sphere and the square crop containing it.

    The circle is centered on the crop rectangle and its radius is half the
    rectangle diagonal. `left/top/right/bottom` bound the square around that
    circle, clipped to the image.
    """

    center_x: float
    center_y: float
    radius: float
    left: int
    top: int
    right: int
    bottom: int

    @property
    def center_in_crop(self) -> tuple[float, float]:
        return self.center_x - self.left, self.center_y - self.top

    @property
    def top_left(self) -> tuple[int, int]:
        return self.left, self.top


@dataclass(frozen=True)
class HighlightPoint:
    """Intensity-weighted centroid, in pixel coordinates of the square crop."""

    x: int
    y: int
    weight: float


@dataclass(frozen=True)
class HighlightResult:
    region: SphereRegion
    point: HighlightPoint | None
    view: np.ndarray  # (h,w,3) uint8 masked visualization


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


def sphere_region(crop: Crop, shape: tuple[int, ...]) -> SphereRegion:
    h, w = shape[:2]
    cx = (crop.right + crop.left) / 2.0
    cy = (crop.bottom + crop.top) / 2.0
    radius = 0.5 * math.hypot(crop.right - crop.left, crop.bottom - crop.top)
    if not radius > 0.0:
        raise ValueError(f"degenerate crop: {crop}")
    left = max(0, _round_half_up(cx - radius))
    top = max(0, _round_half_up(cy - radius))
    right = min(w, _round_half_up(cx + radius))
    bottom = min(h, _round_half_up(cy + radius))
    if right <= left or bottom <= top:
        raise CropOutsideImage(f"crop {crop.as_list()} does not overlap the {w}x{h} image")
    return SphereRegion(center_x=cx, center_y=cy, radius=radius, left=left, top=top, right=right, bottom=bottom)


def blur_rgb8(rgb: np.ndarray, sigma: float) -> np.ndarray:
    """Gaussian blur of an (H,W,3) uint8 image, `sigma` in pixels."""
    im = Image.fromarray(np.ascontiguousarray(rgb, dtype=np.uint8))
    return np.asarray(im.filter(ImageFilter.GaussianBlur(radius=float(sigma))))


def locate_highlight(
    image: np.ndarray,
    crop: Crop,
    config: Config,
    *,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> HighlightResult:
    """
    Find the specular highlight of the sphere delimited by `crop`.

    Pixels inside `mask_ray * radius` of the sphere center whose blurred luma
    exceeds `255 * threshold` vote for the highlight position with their
    luma as weight. `point` is None when no pixel qualifies.
    """
    log = log or LOGGER
    region = sphere_region(crop, image.shape)
    cropped = np.asarray(image)[region.top : region.bottom, region.left : region.right]
    blurred = blur_rgb8(pixel_type(cropped).to_rgb8(cropped), config.sigma)
    luma = np.minimum(blurred.astype(np.float64) @ LUMA_RGB, 255.0)

    hh, ww = luma.shape
    yy, xx = np.mgrid[0:hh, 0:ww]
    dx = (xx + region.left) - region.center_x
    dy = (yy + region.top) - region.center_y
    in_mask = dx * dx + dy * dy <= (region.radius * config.mask_ray) ** 2
    selected = in_mask & (luma > 255.0 * config.threshold)

    view = np.empty_like(blurred)
    view[...] = OUTSIDE_MASK_RGB
    view[in_mask] = BELOW_THRESHOLD_RGB
    view[selected] = blurred[selected]

    weights = luma[selected]
    total = float(weights.sum())
    if not total > 0.0:
        log.info("no pixel above threshold %.3f in crop %s", config.threshold, crop.as_list())
        return HighlightResult(region=region, point=None, view=view)

    mean_x = float((xx[selected] * weights).sum()) / total
    mean_y = float((yy[selected] * weights).sum()) / total
    point = HighlightPoint(x=_round_half_up(mean_x), y=_round_half_up(mean_y), weight=total)
    log.debug("highlight at (%d, %d) in crop %s, weight %.1f", point.x, point.y, crop.as_list(), total)
    return HighlightResult(region=region, point=point, view=view)
