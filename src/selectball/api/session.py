from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

import numpy as np

from selectball.config import Crop, RegistrationParams, RunArgs, parse_run_args
from selectball.core import motion as mo
from selectball.core.image_io import decode_image, encode_png
from selectball.core.multires import InsufficientResolution, max_levels
from selectball.core.pixel import pixel_type
from selectball.highlight import HighlightPoint, locate_highlight, sphere_region
from selectball.lightsource import HighlightOutsideSphere, intersection, light_dir, mean_direction, transpose_records
from selectball.logs import RunLogger
from selectball.registration import (
    MIN_LEVEL_SIZE,
    BurstRegistration,
    RegistrationError,
    ShouldStop,
    StoppedByCaller,
    register_burst,
    reproject,
)

LOGGER = logging.getLogger(__name__)

REPORT_SCHEMA = "selectball.report.v0"

# Sentinel light position when rays do not determine a point.
NO_LIGHT_POS = np.zeros(3, dtype=np.float64)


def _placeholder_png() -> bytes:
    img = np.zeros((2, 2, 3), dtype=np.uint8)
    img[0, 0] = (255, 255, 0)
    img[1, 1] = (255, 255, 0)
    return encode_png(img)


def _never_stop(step: str, progress: int | None) -> bool:
    return False


@dataclass(frozen=True)
class LightRay:
    direction: np.ndarray  # (3,) unit vector towards the light
    origin: np.ndarray  # (3,) reflection point, full-image frame


@dataclass
class ChannelResult:
    """Per-frame outputs of one crop (one physical sphere)."""

    crop: Crop
    highlights: list[HighlightPoint | None]
    views: list[np.ndarray]
    rays: list[LightRay | None]


class BurstSession:
    """
    In-memory state of one burst: loaded images and the results of the last run.

    A host application loads every frame with `load`, calls `run` with the
    algorithm parameters, then reads results per frame (and per channel, one
    channel per crop).
    """

    def __init__(self) -> None:
        self._log: logging.Logger | logging.LoggerAdapter = LOGGER
        self._image_ids: list[str] = []
        self._dataset: list[np.ndarray] = []
        self._clear()

    def _clear(self) -> None:
        self._frames: list[np.ndarray] = []
        self._motions: list[np.ndarray] = []
        self._failures: dict[int, RegistrationError] = {}
        self._unconverged: set[int] = set()
        self._channels: list[ChannelResult | None] = []
        self._rays_by_frame: list[list[LightRay]] = []

    def load(self, image_id: str, raw: bytes) -> None:
        """Decode and keep one frame. Raises `ImageLoadError` on unsupported input."""
        image = decode_image(raw)
        self._dataset.append(image)
        self._image_ids.append(str(image_id))
        LOGGER.info("loaded %s: %s %s", image_id, image.shape, image.dtype)

    def load_array(self, image_id: str, image: np.ndarray) -> None:
        image = np.asarray(image)
        pixel_type(image)
        if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] != 3):
            raise ValueError(f"expected (H,W) or (H,W,3) image, got {image.shape}")
        self._dataset.append(image)
        self._image_ids.append(str(image_id))

    def run(self, args: RunArgs | dict[str, Any], should_stop: ShouldStop | None = None) -> list[np.ndarray]:
        """
        Run the pipeline over every loaded frame, dropping previous results.

        Returns the per-frame motion vectors (empty when registration is
        disabled). Raises `StoppedByCaller` when `should_stop` asks for it.
        """
        self._clear()
        if isinstance(args, dict):
            args = parse_run_args(args)
        should_stop = should_stop or _never_stop
        log = self._log = RunLogger(LOGGER, args.config.verbosity)
        if not self._dataset:
            log.warning("no image loaded, nothing to do")
            return []

        regions = [sphere_region(c, self._dataset[0].shape) if c is not None else None for c in args.crops]
        log.debug("sphere regions: %s", regions)

        frames = list(self._dataset)
        if args.registration is not None:
            registration = self._register(frames, args, should_stop, log)
            self._motions = registration.motions
            self._failures = registration.failures
            self._unconverged = set(registration.unconverged)
            frames = [img for img, _valid in reproject(frames, self._motions)]
        self._frames = frames

        for channel, crop in enumerate(args.crops):
            if crop is None:
                log.info("channel %d: no crop", channel)
                self._channels.append(None)
                continue
            log.info("channel %d: crop %s", channel, crop.as_list())
            self._channels.append(self._run_channel(channel, crop, args, should_stop, log))

        per_channel = [
            ch.rays if ch is not None else [None] * len(frames) for ch in self._channels
        ]
        self._rays_by_frame = [
            [ray for ray in rays if ray is not None] for rays in transpose_records(per_channel, len(frames))
        ]
        return list(self._motions)

    def _register(
        self,
        frames: list[np.ndarray],
        args: RunArgs,
        should_stop: ShouldStop,
        log: logging.LoggerAdapter,
    ) -> BurstRegistration:
        params: RegistrationParams = args.registration  # type: ignore[assignment]
        crop = args.registration_crop
        if crop is not None:
            frames = [f[crop.top : crop.bottom, crop.left : crop.right] for f in frames]
        available = max_levels(frames[0].shape, params.downscale, MIN_LEVEL_SIZE)
        if available < 1:
            raise InsufficientResolution(frames[0].shape, params.levels, params.downscale)
        if available < params.levels:
            log.info("reducing pyramid from %d to %d levels", params.levels, available)
            params = replace(params, levels=available)
        registration = register_burst(frames, params, should_stop=should_stop, log=log)
        if crop is not None:
            registration.motions = mo.recover_original_motion(crop, registration.motions)
        return registration

    def _run_channel(
        self,
        channel: int,
        crop: Crop,
        args: RunArgs,
        should_stop: ShouldStop,
        log: logging.LoggerAdapter,
    ) -> ChannelResult:
        result = ChannelResult(crop=crop, highlights=[], views=[], rays=[])
        for i, frame in enumerate(self._frames):
            if should_stop("highlight", i):
                raise StoppedByCaller()
            found = locate_highlight(frame, crop, args.config, log=log)
            result.highlights.append(found.point)
            result.views.append(found.view)
            ray = None
            if found.point is None:
                log.warning("channel %d, frame %d: no highlight found", channel, i)
            else:
                try:
                    direction, origin = light_dir(
                        found.region.radius,
                        (found.point.x, found.point.y),
                        found.region.center_in_crop,
                        found.region.top_left,
                        log=log,
                    )
                except HighlightOutsideSphere as e:
                    log.warning("channel %d, frame %d: %s", channel, i, e)
                else:
                    ray = LightRay(direction=direction, origin=origin)
            result.rays.append(ray)
        return result

    def image_ids(self) -> list[str]:
        return list(self._image_ids)

    def motion(self, i: int) -> np.ndarray | None:
        return self._motions[i].copy() if self._motions else None

    def cropped_img_file(self, i: int, channel: int) -> bytes:
        """PNG of the masked crop; a 2x2 placeholder when the channel has no crop."""
        ch = self._channels[channel] if channel < len(self._channels) else None
        if ch is None:
            return _placeholder_png()
        return encode_png(ch.views[i])

    def lobes(self, i: int, channel: int) -> tuple[int, int] | None:
        """Highlight pixel of frame `i` in crop coordinates, None if absent."""
        ch = self._channels[channel] if channel < len(self._channels) else None
        if ch is None or ch.highlights[i] is None:
            return None
        point = ch.highlights[i]
        return point.x, point.y

    def light_ray(self, i: int, channel: int) -> LightRay | None:
        ch = self._channels[channel] if channel < len(self._channels) else None
        return None if ch is None else ch.rays[i]

    def register_and_save(self, i: int) -> bytes:
        """PNG of frame `i`, warped into the reference frame when registration ran."""
        frames = self._frames or self._dataset
        self._log.info("encoding registered image %d", i)
        return encode_png(frames[i])

    def light_vector(self, i: int) -> np.ndarray | None:
        """Mean light direction over the rays of frame `i`."""
        return mean_direction([r.direction for r in self._rays_by_frame[i]])

    def light_pos(self, i: int) -> np.ndarray:
        """Light position triangulated from the rays of frame `i`, the origin if undetermined."""
        rays = self._rays_by_frame[i]
        pos = intersection([r.origin for r in rays], [r.direction for r in rays])
        if pos is None:
            self._log.warning("frame %d: %d ray(s) do not determine a light position", i, len(rays))
            return NO_LIGHT_POS.copy()
        self._log.info("frame %d: light point %s", i, np.round(pos, 3).tolist())
        return pos

    def report(self) -> dict[str, Any]:
        """JSON-friendly summary of the last run."""

        def vec(v: np.ndarray | None) -> list[float] | None:
            return None if v is None else [float(x) for x in np.asarray(v).reshape(-1)]

        channels: list[dict[str, Any] | None] = []
        for ch in self._channels:
            if ch is None:
                channels.append(None)
                continue
            channels.append(
                {
                    "crop": ch.crop.as_list(),
                    "highlights": [None if p is None else {"x": p.x, "y": p.y, "weight": p.weight} for p in ch.highlights],
                    "rays": [None if r is None else {"direction": vec(r.direction), "origin": vec(r.origin)} for r in ch.rays],
                }
            )
        frames = []
        for i, image_id in enumerate(self._image_ids[: len(self._rays_by_frame)]):
            frames.append(
                {
                    "id": image_id,
                    "motion": vec(self._motions[i]) if self._motions else None,
                    "registration_error": str(self._failures[i]) if i in self._failures else None,
                    "registration_converged": (i not in self._unconverged) if self._motions else None,
                    "light_vector": vec(self.light_vector(i)),
                    "light_pos": vec(self.light_pos(i)),
                }
            )
        return {"schema_version": REPORT_SCHEMA, "frames": frames, "channels": channels}
