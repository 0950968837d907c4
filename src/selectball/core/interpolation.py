from __future__ import annotations

from typing import Literal

import numpy as np

from selectball.core.pixel import PixelType, pixel_type


BorderPolicy = Literal["invalid", "clamp"]


def _lerp_float(a: np.ndarray, b: np.ndarray, t: np.ndarray) -> np.ndarray:
    a = np.asarray(a, dtype=np.float64)
    return a + t * (np.asarray(b, dtype=np.float64) - a)


def _neighbors(coord: np.ndarray, size: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    c0 = np.clip(np.floor(coord), 0, max(size - 2, 0)).astype(np.intp)
    c1 = np.minimum(c0 + 1, size - 1)
    t = coord - c0
    return c0, c1, t


def inside(shape: tuple[int, ...], x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """True where (x,y) lies in [0,w-1] x [0,h-1]."""
    h, w = shape[:2]
    return (x >= 0.0) & (x <= w - 1) & (y >= 0.0) & (y <= h - 1)


def sample(
    image: np.ndarray,
    x: np.ndarray,
    y: np.ndarray,
    *,
    border: BorderPolicy = "invalid",
    ptype: PixelType | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Bilinear sampling of `image` at fractional coordinates (x,y).

    Returns `(values, valid)` with `values` in float64 (same trailing channel
    axis as `image`). With `border="invalid"`, samples outside the image are 0
    and flagged invalid. With `border="clamp"`, coordinates are clamped to the
    border and every sample is valid.
    """
    image = np.asarray(image)
    h, w = image.shape[:2]
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if ptype is None and image.dtype.kind == "u":
        ptype = pixel_type(image)
    lerp = ptype.lerp if ptype is not None else _lerp_float

    valid = inside(image.shape, x, y)
    xs = np.clip(x, 0.0, w - 1)
    ys = np.clip(y, 0.0, h - 1)

    x0, x1, tx = _neighbors(xs, w)
    y0, y1, ty = _neighbors(ys, h)
    if image.ndim == 3:
        tx = tx[..., None]
        ty = ty[..., None]

    top = lerp(image[y0, x0], image[y0, x1], tx)
    bottom = lerp(image[y1, x0], image[y1, x1], tx)
    values = top + ty * (bottom - top)

    if border == "clamp":
        return values, np.ones_like(valid)
    if border != "invalid":
        raise ValueError(f"unknown border policy: {border}")
    if image.ndim == 3:
        values = np.where(valid[..., None], values, 0.0)
    else:
        values = np.where(valid, values, 0.0)
    return values, valid


def sample_mask(mask: np.ndarray, x: np.ndarray, y: np.ndarray, *, border: BorderPolicy = "invalid") -> np.ndarray:
    """
    Validity of a boolean mask at fractional coordinates.

    A fractional sample is valid only when every integer neighbor with a
    non-zero bilinear weight is.
    """
    mask = np.asarray(mask, dtype=bool)
    h, w = mask.shape
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    ok = np.ones(x.shape, dtype=bool) if border == "clamp" else inside(mask.shape, x, y)
    x0, x1, tx = _neighbors(np.clip(x, 0.0, w - 1), w)
    y0, y1, ty = _neighbors(np.clip(y, 0.0, h - 1), h)
    # neighbors with a zero bilinear weight do not matter
    ok &= mask[y0, x0] | ((tx == 1.0) | (ty == 1.0))
    ok &= mask[y0, x1] | ((tx == 0.0) | (ty == 1.0))
    ok &= mask[y1, x0] | ((tx == 1.0) | (ty == 0.0))
    ok &= mask[y1, x1] | ((tx == 0.0) | (ty == 0.0))
    return ok
