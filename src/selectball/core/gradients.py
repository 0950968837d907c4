from __future__ import annotations

import numpy as np

from selectball.core.pixel import pixel_type


def centered_gradients(image: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Centered finite differences (gx, gy) in float64, shaped like `image`.

    Border rows/columns have no centered neighbor and are set to 0; use
    `interior_mask` to exclude them.
    """
    img = np.asarray(image, dtype=np.float64)
    gx = np.zeros_like(img)
    gy = np.zeros_like(img)
    gx[:, 1:-1] = 0.5 * (img[:, 2:] - img[:, :-2])
    gy[1:-1, :] = 0.5 * (img[2:, :] - img[:-2, :])
    return gx, gy


def interior_mask(shape: tuple[int, ...]) -> np.ndarray:
    h, w = shape[:2]
    mask = np.zeros((h, w), dtype=bool)
    mask[1:-1, 1:-1] = True
    return mask


def _half_abs_diff(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return (np.maximum(a, b) - np.minimum(a, b)) // 2


def squared_norm(image: np.ndarray) -> np.ndarray:
    """
    Squared gradient norm `(|dx|/2)^2 + (|dy|/2)^2` computed in the widened
    integer type of the image (uint16 for uint8, uint32 for uint16).

    The widened type holds the worst case, so no intermediate value wraps.
    Border pixels are 0.
    """
    ptype = pixel_type(image)
    img = ptype.widen(image)
    out = np.zeros(img.shape, dtype=ptype.wide)
    dx = _half_abs_diff(img[1:-1, 2:], img[1:-1, :-2])
    dy = _half_abs_diff(img[2:, 1:-1], img[:-2, 1:-1])
    out[1:-1, 1:-1] = dx * dx + dy * dy
    return out
