from __future__ import annotations

from typing import Sequence

import numpy as np

from selectball.config import Crop
from selectball.core.interpolation import BorderPolicy, sample
from selectball.core.pixel import pixel_type


class SingularMotion(ValueError):
    pass


# Determinant below which an affine matrix is considered not invertible.
SINGULAR_DET = 1e-9


def identity() -> np.ndarray:
    """
    Motion vectors are 6 parameters `p` of the affine map

        | 1 + p0   p2    p4 |
        |   p1   1 + p3  p5 |

    taking reference coordinates to target coordinates.
    """
    return np.zeros(6, dtype=np.float64)


def to_matrix(motion: np.ndarray) -> np.ndarray:
    p = np.asarray(motion, dtype=np.float64).reshape(6)
    return np.array(
        [[1.0 + p[0], p[2], p[4]], [p[1], 1.0 + p[3], p[5]], [0.0, 0.0, 1.0]],
        dtype=np.float64,
    )


def from_matrix(mat: np.ndarray) -> np.ndarray:
    m = np.asarray(mat, dtype=np.float64)
    return np.array([m[0, 0] - 1.0, m[1, 0], m[0, 1], m[1, 1] - 1.0, m[0, 2], m[1, 2]], dtype=np.float64)


def compose(outer: np.ndarray, inner: np.ndarray) -> np.ndarray:
    """Motion applying `inner` first, then `outer`."""
    return from_matrix(to_matrix(outer) @ to_matrix(inner))


def inverse(motion: np.ndarray) -> np.ndarray:
    mat = to_matrix(motion)
    det = float(np.linalg.det(mat[:2, :2]))
    if not np.isfinite(det) or abs(det) < SINGULAR_DET:
        raise SingularMotion(f"affine motion is not invertible (det={det:.3g}): {np.asarray(motion).tolist()}")
    lin_inv = np.linalg.inv(mat[:2, :2])
    out = np.eye(3, dtype=np.float64)
    out[:2, :2] = lin_inv
    out[:2, 2] = -lin_inv @ mat[:2, 2]
    return from_matrix(out)


def rescale(motion: np.ndarray, factor: float) -> np.ndarray:
    """Express a motion at a resolution `factor` times finer (linear part unchanged)."""
    p = np.array(motion, dtype=np.float64).reshape(6)
    p[4:] *= factor
    return p


def apply(motion: np.ndarray, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    p = np.asarray(motion, dtype=np.float64).reshape(6)
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    return (1.0 + p[0]) * x + p[2] * y + p[4], p[1] * x + (1.0 + p[3]) * y + p[5]


def warp(image: np.ndarray, motion: np.ndarray, *, border: BorderPolicy = "invalid") -> tuple[np.ndarray, np.ndarray]:
    """
    Resample `image` (a target frame) into the reference frame of `motion`.

    `out[y, x] = image(M (x, y))`. Returns the warped image in the same dtype
    and the validity mask (False where the source point left the image).
    """
    image = np.asarray(image)
    h, w = image.shape[:2]
    yy, xx = np.mgrid[0:h, 0:w].astype(np.float64)
    xs, ys = apply(motion, xx, yy)
    values, valid = sample(image, xs, ys, border=border)
    return pixel_type(image).narrow(values), valid


def recover_original_motion(crop: Crop, motions: Sequence[np.ndarray]) -> list[np.ndarray]:
    """Convert motions estimated inside `crop` to the full-image frame."""
    offset = np.eye(3, dtype=np.float64)
    offset[:2, 2] = [crop.left, crop.top]
    back = np.eye(3, dtype=np.float64)
    back[:2, 2] = [-crop.left, -crop.top]
    return [from_matrix(offset @ to_matrix(m) @ back) for m in motions]
