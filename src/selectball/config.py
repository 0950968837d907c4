from __future__ import annotations

import numbers
from dataclasses import dataclass, field
from typing import Any, Literal, Sequence


class ConfigValidationError(ValueError):
    pass


RegistrationMode = Literal["reference", "sequential"]

CORNER_KEYS = ("crop_t_l", "crop_t_r", "crop_b_l", "crop_b_r")


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def _is_int(value: Any) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def _is_real(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _as_int(value: Any, name: str) -> int:
    """Integer from a host value; JSON numbers like `3.0` are accepted, strings and bools are not."""
    _require(_is_real(value) and float(value).is_integer(), f"{name} must be an integer, got {value!r}")
    return int(value)


def _as_float(value: Any, name: str) -> float:
    _require(_is_real(value), f"{name} must be a number, got {value!r}")
    return float(value)


@dataclass(frozen=True)
class Config:
    """
    Parameters of the highlight detection.

    - `sigma`: Gaussian blur radius applied to a crop before thresholding.
    - `threshold`: luma cutoff in [0,1], compared against `255 * threshold`.
    - `mask_ray`: fraction of the crop radius considered part of the sphere.
    - `verbosity`: log level selector (0 error .. 3 debug), no algorithmic effect.
    """

    sigma: float
    threshold: float
    mask_ray: float
    verbosity: int = 0

    def __post_init__(self) -> None:
        for name in ("sigma", "threshold", "mask_ray"):
            _require(_is_real(getattr(self, name)), f"{name} must be a number")
        _require(self.sigma > 0.0, "sigma must be > 0")
        _require(0.0 <= self.threshold <= 1.0, "threshold must be in [0,1]")
        _require(0.0 < self.mask_ray <= 1.0, "mask_ray must be in (0,1]")
        _require(_is_int(self.verbosity) and self.verbosity >= 0, "verbosity must be an unsigned integer")


@dataclass(frozen=True)
class Crop:
    """Axis-aligned rectangle around one calibration sphere, in source-image pixels."""

    left: int
    top: int
    right: int
    bottom: int

    def __post_init__(self) -> None:
        _require(all(_is_int(v) for v in self.as_list()), f"crop coordinates must be integers: {self.as_list()}")
        _require(min(self.left, self.top, self.right, self.bottom) >= 0, "crop coordinates must be >= 0")
        _require(self.right > self.left, "crop right must be > left")
        _require(self.bottom > self.top, "crop bottom must be > top")

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def as_list(self) -> list[int]:
        return [self.left, self.top, self.right, self.bottom]


@dataclass(frozen=True)
class RegistrationParams:
    levels: int = 4
    downscale: int = 2
    max_iterations: int = 40
    tolerance: float = 1e-3
    min_points: int = 6
    gradient_threshold: int = 1
    mode: RegistrationMode = "reference"
    reference: int = 0

    def __post_init__(self) -> None:
        for name in ("levels", "downscale", "max_iterations", "min_points", "gradient_threshold", "reference"):
            _require(_is_int(getattr(self, name)), f"{name} must be an integer")
        _require(_is_real(self.tolerance), "tolerance must be a number")
        _require(self.levels >= 1, "levels must be >= 1")
        _require(self.downscale >= 2, "downscale must be >= 2")
        _require(self.max_iterations >= 1, "max_iterations must be >= 1")
        _require(self.tolerance > 0.0, "tolerance must be > 0")
        _require(self.min_points >= 6, "min_points must be >= 6 (one per affine parameter)")
        _require(self.gradient_threshold >= 0, "gradient_threshold must be >= 0")
        _require(self.mode in ("reference", "sequential"), "mode must be 'reference' or 'sequential'")
        _require(self.reference >= 0, "reference must be >= 0")


@dataclass(frozen=True)
class RunArgs:
    config: Config
    crops: tuple[Crop | None, ...] = field(default_factory=tuple)
    registration: RegistrationParams | None = None
    registration_crop: Crop | None = None


def parse_config(data: dict[str, Any]) -> Config:
    for key in ("sigma", "threshold", "mask_ray"):
        _require(data.get(key) is not None, f"config.{key} is required")
    return Config(
        sigma=_as_float(data["sigma"], "config.sigma"),
        threshold=_as_float(data["threshold"], "config.threshold"),
        mask_ray=_as_float(data["mask_ray"], "config.mask_ray"),
        verbosity=_as_int(data.get("verbosity", 0), "config.verbosity"),
    )


def parse_crop(data: dict[str, Any] | Sequence[int] | None) -> Crop | None:
    if data is None:
        return None
    if isinstance(data, dict):
        missing = [k for k in ("left", "top", "right", "bottom") if k not in data]
        _require(not missing, f"crop missing keys: {missing}")
        values = [data["left"], data["top"], data["right"], data["bottom"]]
    else:
        _require(isinstance(data, (list, tuple)) and len(data) == 4, "crop must be [left,top,right,bottom]")
        values = list(data)
    left, top, right, bottom = (_as_int(v, "crop coordinate") for v in values)
    return Crop(left=left, top=top, right=right, bottom=bottom)


def parse_registration(data: dict[str, Any] | None) -> RegistrationParams | None:
    if data is None:
        return None
    known = set(RegistrationParams.__dataclass_fields__)
    unknown = sorted(set(data) - known)
    _require(not unknown, f"unknown registration keys: {unknown}")
    kwargs: dict[str, Any] = {}
    for name, value in data.items():
        if name == "mode":
            _require(isinstance(value, str), f"registration.mode must be a string, got {value!r}")
            kwargs[name] = value
        elif name == "tolerance":
            kwargs[name] = _as_float(value, "registration.tolerance")
        else:
            kwargs[name] = _as_int(value, f"registration.{name}")
    return RegistrationParams(**kwargs)


def parse_run_args(data: dict[str, Any]) -> RunArgs:
    """
    Parse run arguments sent by a host application.

    Channels come either from a `crops` list or, for older callers, from the
    four corner keys `crop_t_l`, `crop_t_r`, `crop_b_l`, `crop_b_r`.
    """
    _require(isinstance(data.get("config"), dict), "config is required")
    config = parse_config(data["config"])

    if "crops" in data:
        raw_crops = data["crops"]
        _require(isinstance(raw_crops, (list, tuple)), "crops must be a list")
        crops = tuple(parse_crop(c) for c in raw_crops)
    else:
        crops = tuple(parse_crop(data.get(k)) for k in CORNER_KEYS)

    return RunArgs(
        config=config,
        crops=crops,
        registration=parse_registration(data.get("registration")),
        registration_crop=parse_crop(data.get("registration_crop")),
    )
