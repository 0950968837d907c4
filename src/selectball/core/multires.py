from __future__ import annotations

import numpy as np

from selectball.core.pixel import pixel_type


class InsufficientResolution(ValueError):
    def __init__(self, shape: tuple[int, ...], levels: int, factor: int) -> None:
        super().__init__(f"image of shape {tuple(shape[:2])} is too small for {levels} levels with downscale factor {factor}")
        self.shape = tuple(shape[:2])
        self.levels = levels
        self.factor = factor


def max_levels(shape: tuple[int, ...], factor: int = 2, min_size: int = 1) -> int:
    """Largest number of pyramid levels (level 0 included) an image of `shape` supports."""
    h, w = shape[:2]
    n = 0
    while min(h, w) >= min_size:
        n += 1
        h, w = h // factor, w // factor
    return n


def _block_view(arr: np.ndarray, factor: int) -> np.ndarray:
    h, w = arr.shape[:2]
    hh, ww = h // factor, w // factor
    arr = arr[: hh * factor, : ww * factor]
    return arr.reshape((hh, factor, ww, factor) + arr.shape[2:])


def downsample(image: np.ndarray, factor: int = 2) -> np.ndarray:
    """
    Area-average `factor x factor` blocks.

    Block sums are accumulated in the widened pixel type, then divided with
    rounding back into the original type. Trailing rows/columns that do not
    fill a block are dropped.
    """
    ptype = pixel_type(image)
    blocks = _block_view(ptype.widen(image), factor)
    n = factor * factor
    sums = blocks.sum(axis=(1, 3), dtype=ptype.wide)
    return ((sums + n // 2) // n).astype(ptype.dtype)


def downsample_mask(mask: np.ndarray, factor: int = 2) -> np.ndarray:
    """A coarse pixel is valid only when every pixel of its block is valid."""
    blocks = _block_view(np.asarray(mask, dtype=bool), factor)
    return blocks.all(axis=(1, 3))


def build_pyramid(image: np.ndarray, levels: int, factor: int = 2, min_size: int = 1) -> list[np.ndarray]:
    """
    Multi-resolution pyramid, finest (level 0, `image` itself) to coarsest.

    Raises `InsufficientResolution` when a level would be smaller than
    `min_size` pixels on its shortest side.
    """
    if levels < 1:
        raise ValueError("levels must be >= 1")
    image = np.asarray(image)
    if levels > max_levels(image.shape, factor, min_size):
        raise InsufficientResolution(image.shape, levels, factor)
    pyramid = [image]
    for _ in range(levels - 1):
        pyramid.append(downsample(pyramid[-1], factor))
    return pyramid


def build_mask_pyramid(mask: np.ndarray, levels: int, factor: int = 2, min_size: int = 1) -> list[np.ndarray]:
    mask = np.asarray(mask, dtype=bool)
    if levels > max_levels(mask.shape, factor, min_size):
        raise InsufficientResolution(mask.shape, levels, factor)
    pyramid = [mask]
    for _ in range(levels - 1):
        pyramid.append(downsample_mask(pyramid[-1], factor))
    return pyramid
