"""
Light source position from specular highlights on calibration spheres.

Computations happen in pixel units. A sphere lives in the frame of its crop
(origin at the crop top-left, z towards the viewer); results are shifted to
the frame of the full image. The viewer is assumed to be right above the
sphere (orthographic approximation), so the view vector is (0, 0, 1).
"""

from __future__ import annotations

import logging
import warnings
from typing import Sequence, TypeVar

import numpy as np
from scipy.linalg import LinAlgWarning, lu_factor, lu_solve

LOGGER = logging.getLogger(__name__)

VIEW = np.array([0.0, 0.0, 1.0], dtype=np.float64)

# Relative pivot size under which the ray system is considered singular.
SINGULAR_RTOL = 1e-9

T = TypeVar("T")


class HighlightOutsideSphere(ValueError):
    def __init__(self, offset: tuple[float, float], radius: float) -> None:
        super().__init__(f"highlight offset {offset} lies outside the sphere silhouette of radius {radius}")
        self.offset = offset
        self.radius = radius


def light_dir(
    radius: float,
    highlight: Sequence[float],
    center: Sequence[float],
    sphere_pos: Sequence[float],
    *,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Reflected light ray for a highlight seen on a sphere.

    - `radius`: sphere radius (px)
    - `highlight`, `center`: highlight and sphere center, in crop coordinates
    - `sphere_pos`: crop top-left in the full image

    Returns `(ray, point)`: the unit direction towards the light and the 3D
    reflection point in full-image coordinates, sphere center at z = 0.
    Raises `HighlightOutsideSphere` when the highlight is farther than
    `radius` from the center.
    """
    log = log or LOGGER
    xy = np.asarray(highlight, dtype=np.float64)[:2] - np.asarray(center, dtype=np.float64)[:2]
    r2 = float(radius) ** 2
    d2 = float(xy @ xy)
    if d2 > r2:
        raise HighlightOutsideSphere((float(xy[0]), float(xy[1])), float(radius))
    spot = np.array([xy[0], xy[1], np.sqrt(r2 - d2)], dtype=np.float64)
    normal = spot / float(radius)
    ray = 2.0 * float(normal @ VIEW) * normal - VIEW
    ray /= np.linalg.norm(ray)
    origin = np.asarray(center, dtype=np.float64)[:2] + np.asarray(sphere_pos, dtype=np.float64)[:2]
    point = spot + np.array([origin[0], origin[1], 0.0], dtype=np.float64)
    log.debug("xy=%s spot=%s ray=%s", xy.tolist(), spot.tolist(), ray.tolist())
    return ray, point


def intersection(points: Sequence[np.ndarray], rays: Sequence[np.ndarray]) -> np.ndarray | None:
    """
    Least-squares intersection of rays `point + t * ray` (unit `ray`).

    Solves `S x = C` with `S = sum(d d^T - I)` and `C = sum((d d^T - I) p)` by
    LU decomposition. Returns None when the system is singular (no rays, a
    single ray, or parallel rays).
    """
    if len(points) != len(rays):
        raise ValueError(f"got {len(points)} points for {len(rays)} rays")
    s = np.zeros((3, 3), dtype=np.float64)
    c = np.zeros(3, dtype=np.float64)
    for ray, point in zip(rays, points):
        d = np.asarray(ray, dtype=np.float64).reshape(3)
        delta = np.outer(d, d) - np.eye(3)
        s += delta
        c += delta @ np.asarray(point, dtype=np.float64).reshape(3)

    scale = float(np.max(np.abs(s)))
    if not scale > 0.0:
        return None
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", LinAlgWarning)
        lu, piv = lu_factor(s, check_finite=False)
    if float(np.min(np.abs(np.diag(lu)))) <= SINGULAR_RTOL * scale:
        return None
    return lu_solve((lu, piv), c, check_finite=False)


def mean_direction(rays: Sequence[np.ndarray]) -> np.ndarray | None:
    """Normalized sum of unit directions, None if empty or cancelling out."""
    if not rays:
        return None
    total = np.sum(np.asarray(rays, dtype=np.float64).reshape(-1, 3), axis=0)
    norm = float(np.linalg.norm(total))
    if not norm > 0.0:
        return None
    return total / norm


def transpose_records(records: Sequence[Sequence[T]], size: int) -> list[list[T]]:
    """
    Turn N records of up to M items into M records of up to N items.

    Item `j` of every record lands, in record order, in output record `j`.
    """
    transposed: list[list[T]] = [[] for _ in range(size)]
    for record in records:
        for index, element in enumerate(record):
            transposed[index].append(element)
    return transposed
