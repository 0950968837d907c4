from __future__ import annotations

from dataclasses import dataclass

import numpy as np


class UnsupportedPixelType(TypeError):
    pass


# Rec.709 luma coefficients.
LUMA_RGB = np.array([0.2126, 0.7152, 0.0722], dtype=np.float64)


@dataclass(frozen=True)
class PixelType:
    """
    Operations a pixel numeric type must support to be registered.

    - `wide`: accumulator dtype used for sums/differences of raw pixels.
    - `shift`: right shift bringing a value into the 8-bit display range.
    """

    dtype: np.dtype
    wide: np.dtype
    shift: int

    @property
    def max_value(self) -> int:
        return int(np.iinfo(self.dtype).max)

    def widen(self, arr: np.ndarray) -> np.ndarray:
        return np.asarray(arr).astype(self.wide)

    def narrow(self, values: np.ndarray) -> np.ndarray:
        """Round and clip floating point values back to this pixel type."""
        values = np.rint(np.asarray(values, dtype=np.float64))
        return np.clip(values, 0, self.max_value).astype(self.dtype)

    def lerp(self, a: np.ndarray, b: np.ndarray, t: np.ndarray) -> np.ndarray:
        """Linear interpolation `a + t (b - a)` evaluated in float64."""
        a = np.asarray(a, dtype=np.float64)
        b = np.asarray(b, dtype=np.float64)
        return a + np.asarray(t, dtype=np.float64) * (b - a)

    def to_gray(self, arr: np.ndarray) -> np.ndarray:
        arr = np.asarray(arr)
        if arr.ndim == 2:
            return arr
        if arr.ndim == 3 and arr.shape[2] == 3:
            return self.narrow(arr.astype(np.float64) @ LUMA_RGB)
        raise ValueError(f"expected (H,W) or (H,W,3) image, got shape {arr.shape}")

    def to_rgb8(self, arr: np.ndarray) -> np.ndarray:
        """Display conversion: (H,W) or (H,W,3) of this type -> (H,W,3) uint8."""
        arr = np.asarray(arr)
        out = (arr >> self.shift).astype(np.uint8) if self.shift else arr.astype(np.uint8)
        if out.ndim == 2:
            out = np.repeat(out[:, :, None], 3, axis=2)
        return out


U8 = PixelType(dtype=np.dtype(np.uint8), wide=np.dtype(np.uint16), shift=0)
U16 = PixelType(dtype=np.dtype(np.uint16), wide=np.dtype(np.uint32), shift=8)

_BY_DTYPE = {U8.dtype: U8, U16.dtype: U16}


def pixel_type(arr_or_dtype: np.ndarray | np.dtype | type) -> PixelType:
    dtype = arr_or_dtype.dtype if isinstance(arr_or_dtype, np.ndarray) else np.dtype(arr_or_dtype)
    try:
        return _BY_DTYPE[dtype]
    except KeyError:
        raise UnsupportedPixelType(f"unsupported pixel type {dtype} (expected uint8 or uint16)") from None
