from __future__ import annotations

import io
from pathlib import Path

import numpy as np
from PIL import Image, UnidentifiedImageError

from selectball.core.pixel import U16, pixel_type


class ImageLoadError(ValueError):
    pass


_ALPHA_MODES = {"RGBA", "RGBa", "LA", "La", "PA"}
_BGR_MODES = {"BGR;15", "BGR;16", "BGR;24", "BGR;32"}
_U16_MODES = {"I;16", "I;16L", "I;16B", "I;16N"}


def _decode_rgb16(raw: bytes) -> np.ndarray | None:
    """
    Pillow has no 16-bit RGB mode and silently reduces such files to 8 bits.
    OpenCV (if installed) keeps the full depth.
    """
    try:
        import cv2  # type: ignore
    except ImportError:
        return None
    img = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if img is None or img.dtype != np.uint16 or img.ndim != 3 or img.shape[2] != 3:
        return None
    return np.ascontiguousarray(img[:, :, ::-1])


def decode_image(raw: bytes) -> np.ndarray:
    """
    Decode compressed image bytes into an array.

    Supported layouts: gray or RGB, 8 or 16 bits, returned as (H,W) or
    (H,W,3) uint8/uint16. Images with an alpha channel or BGR channel order
    are rejected with `ImageLoadError` rather than converted.
    """
    try:
        with Image.open(io.BytesIO(raw)) as im:
            im.load()
            mode = im.mode
            if mode in _ALPHA_MODES or (mode == "P" and "transparency" in im.info):
                raise ImageLoadError("Alpha channel not supported")
            if mode in _BGR_MODES:
                raise ImageLoadError("BGR order not supported")
            if mode == "1":
                im = im.convert("L")
            elif mode == "P":
                im = im.convert("RGB")
            arr = np.asarray(im)
            mode = im.mode
    except (UnidentifiedImageError, OSError) as e:
        raise ImageLoadError(f"cannot decode image: {e}") from e

    if mode == "L":
        return arr.astype(np.uint8, copy=False)
    if mode in _U16_MODES:
        return arr.astype(np.uint16)
    if mode == "I":
        if arr.size and (arr.min() < 0 or arr.max() > U16.max_value):
            raise ImageLoadError("32-bit integer images are not supported")
        return arr.astype(np.uint16)
    if mode == "RGB":
        rgb16 = _decode_rgb16(raw)
        return rgb16 if rgb16 is not None else arr.astype(np.uint8, copy=False)
    raise ImageLoadError(f"unsupported image mode: {mode}")


def load_image(path: str | Path) -> np.ndarray:
    p = Path(path)
    try:
        raw = p.read_bytes()
    except OSError as e:
        raise ImageLoadError(f"cannot read {p}: {e}") from e
    return decode_image(raw)


def encode_png(image: np.ndarray) -> bytes:
    """Lossless PNG encoding of a (H,W) or (H,W,3) uint8/uint16 array."""
    image = np.ascontiguousarray(image)
    ptype = pixel_type(image)
    if ptype is U16 and image.ndim == 3:
        try:
            import cv2  # type: ignore
        except ImportError:
            image = ptype.to_rgb8(image)
        else:
            ok, buf = cv2.imencode(".png", np.ascontiguousarray(image[:, :, ::-1]))
            if not ok:
                raise ValueError("PNG encoding failed")
            return buf.tobytes()
    im = Image.fromarray(image)
    out = io.BytesIO()
    im.save(out, format="PNG")
    return out.getvalue()
