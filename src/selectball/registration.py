"""
Direct (dense) registration of a burst of slightly misaligned images.

Each frame is aligned to a reference with a 6-parameter affine motion,
estimated coarse to fine on an image pyramid with inverse-compositional
Gauss-Newton steps: steepest-descent images are computed once per level on
the reference, and every increment is composed (inverted) into the running
motion instead of being added to it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from selectball.config import RegistrationParams
from selectball.core import motion as mo
from selectball.core.gradients import centered_gradients, interior_mask, squared_norm
from selectball.core.interpolation import BorderPolicy, sample, sample_mask
from selectball.core.multires import build_mask_pyramid, build_pyramid
from selectball.core.pixel import pixel_type

LOGGER = logging.getLogger(__name__)

ShouldStop = Callable[[str, "int | None"], bool]

# Same policy for warping the target and for the pixels entering the Jacobian.
BORDER: BorderPolicy = "invalid"

# Smallest side, in pixels, of the coarsest pyramid level.
MIN_LEVEL_SIZE = 4

# Allowed range of the area ratio (linear part determinant) of a motion.
MIN_AREA_RATIO = 0.1
MAX_AREA_RATIO = 10.0


class RegistrationError(Exception):
    pass


class StoppedByCaller(RegistrationError):
    def __init__(self, partial: np.ndarray | None = None) -> None:
        super().__init__("The algorithm was stopped by the caller")
        self.partial = partial


class InverseRefMotion(RegistrationError):
    def __init__(self, motion: np.ndarray) -> None:
        self.motion = np.asarray(motion, dtype=np.float64)
        super().__init__(f"Error while trying to inverse the motion of the reference image: {self.motion.tolist()}")


class NotEnoughPoints(RegistrationError):
    def __init__(self, count: int) -> None:
        self.count = int(count)
        super().__init__(f"Not enough pixels to perform a direct image alignment estimation: {self.count}")


class NonDefinitePositiveHessian(RegistrationError):
    def __init__(self, hessian: np.ndarray) -> None:
        self.hessian = np.asarray(hessian, dtype=np.float64)
        super().__init__(
            "The Hessian matrix computed for the direct alignment is not definite positive "
            f"so its Choleski decomposition failed: {self.hessian.tolist()}"
        )


class SingularMotionUpdate(RegistrationError):
    def __init__(self, increment: np.ndarray) -> None:
        self.increment = np.asarray(increment, dtype=np.float64)
        super().__init__(f"The motion increment is not invertible: {self.increment.tolist()}")


class DegenerateMotion(RegistrationError):
    def __init__(self, motion: np.ndarray, area_ratio: float) -> None:
        self.motion = np.asarray(motion, dtype=np.float64)
        self.area_ratio = float(area_ratio)
        super().__init__(
            f"The estimated motion scales areas by {self.area_ratio:.3g}, outside "
            f"[{MIN_AREA_RATIO}, {MAX_AREA_RATIO}]: {self.motion.tolist()}"
        )


@dataclass(frozen=True)
class LevelStats:
    level: int
    iterations: int
    points: int
    converged: bool


@dataclass(frozen=True)
class RegistrationResult:
    motion: np.ndarray  # (6,) reference -> target, level-0 pixels
    levels: tuple[LevelStats, ...]


@dataclass
class BurstRegistration:
    """
    One motion per frame (reference -> frame).

    `failures` maps the frames that fell back to identity to their error,
    `unconverged` lists the frames whose finest level hit `max_iterations`.
    """

    motions: list[np.ndarray]
    failures: dict[int, RegistrationError] = field(default_factory=dict)
    unconverged: list[int] = field(default_factory=list)


def _never_stop(step: str, progress: int | None) -> bool:
    return False


@dataclass(frozen=True)
class _ReferenceLevel:
    template: np.ndarray  # (N,) normalized intensities
    xs: np.ndarray  # (N,)
    ys: np.ndarray  # (N,)
    sd: np.ndarray  # (N,6) steepest-descent images

    @property
    def size(self) -> int:
        return int(self.xs.size)


def _prepare_level(
    reference: np.ndarray,
    mask: np.ndarray | None,
    gradient_threshold: int,
) -> _ReferenceLevel:
    scale = float(pixel_type(reference).max_value)
    keep = interior_mask(reference.shape) & (squared_norm(reference) >= gradient_threshold)
    if mask is not None:
        keep &= mask
    ys, xs = np.nonzero(keep)
    gx, gy = centered_gradients(reference)
    gx = gx[ys, xs] / scale
    gy = gy[ys, xs] / scale
    x = xs.astype(np.float64)
    y = ys.astype(np.float64)
    # d(warp)/dp at p=0: [[x, 0, y, 0, 1, 0], [0, x, 0, y, 0, 1]]
    sd = np.stack([gx * x, gy * x, gx * y, gy * y, gx, gy], axis=1)
    return _ReferenceLevel(template=reference[ys, xs].astype(np.float64) / scale, xs=x, ys=y, sd=sd)


def _max_displacement(increment: np.ndarray, shape: tuple[int, ...]) -> float:
    h, w = shape[:2]
    cx = np.array([0.0, w - 1, 0.0, w - 1])
    cy = np.array([0.0, 0.0, h - 1, h - 1])
    x2, y2 = mo.apply(increment, cx, cy)
    return float(np.max(np.hypot(x2 - cx, y2 - cy)))


def _solve_step(sd: np.ndarray, residuals: np.ndarray) -> np.ndarray:
    hessian = sd.T @ sd
    if not np.all(np.isfinite(hessian)):
        raise NonDefinitePositiveHessian(hessian)
    try:
        factor = cho_factor(hessian, lower=True, check_finite=False)
    except LinAlgError:
        raise NonDefinitePositiveHessian(hessian) from None
    return cho_solve(factor, sd.T @ residuals, check_finite=False)


def _refine_level(
    ref: _ReferenceLevel,
    target: np.ndarray,
    target_mask: np.ndarray | None,
    motion: np.ndarray,
    params: RegistrationParams,
    should_stop: ShouldStop,
    level: int,
    partial: Callable[[np.ndarray], np.ndarray],
) -> tuple[np.ndarray, LevelStats]:
    if ref.size < params.min_points:
        raise NotEnoughPoints(ref.size)
    scale = float(pixel_type(target).max_value)
    points = 0
    for it in range(params.max_iterations):
        if should_stop("iteration", it):
            raise StoppedByCaller(partial(motion))
        xt, yt = mo.apply(motion, ref.xs, ref.ys)
        warped, valid = sample(target, xt, yt, border=BORDER)
        if target_mask is not None:
            valid &= sample_mask(target_mask, xt, yt, border=BORDER)
        points = int(np.count_nonzero(valid))
        if points < params.min_points:
            raise NotEnoughPoints(points)
        residuals = warped[valid] / scale - ref.template[valid]
        increment = _solve_step(ref.sd[valid], residuals)
        try:
            motion = mo.compose(motion, mo.inverse(increment))
        except mo.SingularMotion:
            raise SingularMotionUpdate(increment) from None
        area_ratio = float(np.linalg.det(mo.to_matrix(motion)[:2, :2]))
        if not MIN_AREA_RATIO <= area_ratio <= MAX_AREA_RATIO:
            raise DegenerateMotion(motion, area_ratio)
        if _max_displacement(increment, target.shape) < params.tolerance:
            return motion, LevelStats(level=level, iterations=it + 1, points=points, converged=True)
    return motion, LevelStats(level=level, iterations=params.max_iterations, points=points, converged=False)


def register(
    reference: np.ndarray,
    target: np.ndarray,
    params: RegistrationParams | None = None,
    *,
    init: np.ndarray | None = None,
    reference_mask: np.ndarray | None = None,
    target_mask: np.ndarray | None = None,
    should_stop: ShouldStop | None = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> RegistrationResult:
    """
    Estimate the affine motion mapping `reference` pixel coordinates to
    `target` pixel coordinates.

    Both images are gray uint8/uint16 arrays of the same shape. `init` is a
    level-0 starting motion. Masks restrict which pixels take part.

    `should_stop(step, progress)` is polled before every iteration and
    between pyramid levels; when it returns True, `StoppedByCaller` is raised
    carrying the best level-0 estimate reached so far.
    """
    params = params or RegistrationParams()
    should_stop = should_stop or _never_stop
    log = log or LOGGER
    reference = np.asarray(reference)
    target = np.asarray(target)
    if reference.shape != target.shape or reference.ndim != 2:
        raise ValueError(f"expected two gray images of the same shape, got {reference.shape} and {target.shape}")

    n_levels = params.levels
    factor = params.downscale
    ref_pyr = build_pyramid(reference, n_levels, factor, MIN_LEVEL_SIZE)
    tgt_pyr = build_pyramid(target, n_levels, factor, MIN_LEVEL_SIZE)
    ref_masks = build_mask_pyramid(reference_mask, n_levels, factor, MIN_LEVEL_SIZE) if reference_mask is not None else [None] * n_levels
    tgt_masks = build_mask_pyramid(target_mask, n_levels, factor, MIN_LEVEL_SIZE) if target_mask is not None else [None] * n_levels

    motion = mo.identity() if init is None else np.asarray(init, dtype=np.float64).reshape(6)
    motion = mo.rescale(motion, 1.0 / factor ** (n_levels - 1))
    stats: list[LevelStats] = []
    for level in reversed(range(n_levels)):
        to_level0 = float(factor**level)

        def partial(m: np.ndarray, s: float = to_level0) -> np.ndarray:
            return mo.rescale(m, s)

        if should_stop("level", level):
            raise StoppedByCaller(partial(motion))
        ref_level = _prepare_level(ref_pyr[level], ref_masks[level], params.gradient_threshold)
        motion, level_stats = _refine_level(
            ref_level, tgt_pyr[level], tgt_masks[level], motion, params, should_stop, level, partial
        )
        stats.append(level_stats)
        log.debug(
            "level %d: %d iterations, %d points, converged=%s, motion=%s",
            level,
            level_stats.iterations,
            level_stats.points,
            level_stats.converged,
            np.round(motion, 5).tolist(),
        )
        if level > 0:
            motion = mo.rescale(motion, factor)
    return RegistrationResult(motion=motion, levels=tuple(stats))


def _register_or_identity(
    index: int,
    reference: np.ndarray,
    target: np.ndarray,
    params: RegistrationParams,
    out: BurstRegistration,
    mask: np.ndarray | None,
    should_stop: ShouldStop,
    log: logging.Logger | logging.LoggerAdapter,
) -> np.ndarray:
    try:
        result = register(
            reference,
            target,
            params,
            reference_mask=mask,
            target_mask=mask,
            should_stop=should_stop,
            log=log,
        )
    except (NotEnoughPoints, NonDefinitePositiveHessian, SingularMotionUpdate, DegenerateMotion) as e:
        log.warning("frame %d: registration failed, using identity motion: %s", index, e)
        out.failures[index] = e
        return mo.identity()
    if not result.levels[-1].converged:
        log.warning("frame %d: no convergence after %d iterations at full resolution", index, params.max_iterations)
        out.unconverged.append(index)
    return result.motion


def register_burst(
    frames: Sequence[np.ndarray],
    params: RegistrationParams | None = None,
    *,
    mask: np.ndarray | None = None,
    should_stop: ShouldStop | None = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> BurstRegistration:
    """
    Motions of every frame relative to `params.reference`.

    - `"reference"` mode registers each frame directly against the reference.
    - `"sequential"` mode registers each frame against its predecessor, chains
      the results from frame 0, then re-expresses them relative to the
      reference frame (raises `InverseRefMotion` if its motion is singular).

    A frame whose registration is numerically degenerate (including a motion
    drifting to a collapsed or exploded area ratio) falls back to the
    identity and is reported in `failures`; the other frames go on.
    """
    params = params or RegistrationParams()
    should_stop = should_stop or _never_stop
    log = log or LOGGER
    if not frames:
        return BurstRegistration(motions=[])
    grays = [pixel_type(f).to_gray(f) for f in frames]
    shape = grays[0].shape
    if any(g.shape != shape for g in grays):
        raise ValueError("all frames must have the same size")
    ref = params.reference
    if not 0 <= ref < len(grays):
        raise ValueError(f"reference index {ref} out of range for {len(grays)} frames")

    out = BurstRegistration(motions=[])
    if params.mode == "reference":
        for i, gray in enumerate(grays):
            if should_stop("registration", i):
                raise StoppedByCaller()
            if i == ref:
                out.motions.append(mo.identity())
                continue
            out.motions.append(_register_or_identity(i, grays[ref], gray, params, out, mask, should_stop, log))
            log.info("frame %d registered: %s", i, np.round(out.motions[-1], 5).tolist())
        return out

    chained = [mo.identity()]
    for i in range(1, len(grays)):
        if should_stop("registration", i):
            raise StoppedByCaller()
        step = _register_or_identity(i, grays[i - 1], grays[i], params, out, mask, should_stop, log)
        chained.append(mo.compose(step, chained[-1]))
        log.info("frame %d registered to frame %d: %s", i, i - 1, np.round(step, 5).tolist())
    try:
        ref_inverse = mo.inverse(chained[ref])
    except mo.SingularMotion:
        raise InverseRefMotion(chained[ref]) from None
    out.motions = [mo.compose(m, ref_inverse) for m in chained]
    return out


def reproject(frames: Sequence[np.ndarray], motions: Sequence[np.ndarray]) -> list[tuple[np.ndarray, np.ndarray]]:
    """Warp every frame into the reference frame: `(image, valid_mask)` pairs."""
    if len(frames) != len(motions):
        raise ValueError("frames and motions must have the same length")
    return [mo.warp(f, m, border=BORDER) for f, m in zip(frames, motions)]
