import io
import logging

import numpy as np
import pytest
from PIL import Image

from selectball.api import BurstSession
from selectball.config import Config, Crop, RegistrationParams, RunArgs
from selectball.core.image_io import ImageLoadError, encode_png
from selectball.lightsource import intersection, light_dir
from selectball.registration import StoppedByCaller

from _synthetic import highlight_on_sphere, render

pytestmark = pytest.mark.integration

SHAPE = (120, 240)
CROPS = (Crop(36, 28, 84, 92), Crop(156, 28, 204, 92))
# Both crops give a circle of radius 40 and a square region starting 20 px
# before the sphere center.
CENTERS = (np.array([60.0, 60.0]), np.array([180.0, 60.0]))
REGION_TOP_LEFT = ((20, 20), (140, 20))
RADIUS = 40.0
LIGHTS = (np.array([120.0, 40.0, 120.0]), np.array([90.0, 80.0, 150.0]))
CONFIG = Config(sigma=1.0, threshold=0.6, mask_ray=0.9)


def _frame(light: np.ndarray) -> tuple[np.ndarray, list[tuple[int, int]]]:
    """Two flat spheres, each with a small saturated disk at its highlight pixel."""
    yy, xx = np.mgrid[0 : SHAPE[0], 0 : SHAPE[1]]
    img = np.full(SHAPE, 40, dtype=np.uint8)
    pixels = []
    for center in CENTERS:
        img[(xx - center[0]) ** 2 + (yy - center[1]) ** 2 <= 35**2] = 100
    for center in CENTERS:
        hx, hy = np.rint(highlight_on_sphere(light, center, RADIUS)).astype(int)
        img[(xx - hx) ** 2 + (yy - hy) ** 2 <= 9] = 255
        pixels.append((int(hx), int(hy)))
    return img, pixels


def _expected_light_pos(pixels: list[tuple[int, int]]) -> np.ndarray:
    points, rays = [], []
    for (hx, hy), (left, top), center in zip(pixels, REGION_TOP_LEFT, CENTERS):
        ray, point = light_dir(RADIUS, (hx - left, hy - top), (center[0] - left, center[1] - top), (left, top))
        points.append(point)
        rays.append(ray)
    return intersection(points, rays)


@pytest.fixture
def burst():
    session = BurstSession()
    planted = []
    for i, light in enumerate(LIGHTS):
        img, pixels = _frame(light)
        session.load(f"frame{i}.png", encode_png(img))
        planted.append(pixels)
    return session, planted


def test_highlights_and_light_positions(burst) -> None:
    session, planted = burst
    motions = session.run(RunArgs(config=CONFIG, crops=CROPS))
    assert motions == []
    assert session.image_ids() == ["frame0.png", "frame1.png"]

    for i, pixels in enumerate(planted):
        for channel, ((hx, hy), (left, top)) in enumerate(zip(pixels, REGION_TOP_LEFT)):
            assert session.lobes(i, channel) == (hx - left, hy - top)
            assert session.light_ray(i, channel) is not None

        expected = _expected_light_pos(pixels)
        pos = session.light_pos(i)
        assert np.allclose(pos, expected, atol=1e-6)
        # Highlights are rounded to whole pixels, so the planted light is
        # only recovered approximately.
        assert np.linalg.norm(pos - LIGHTS[i]) < 25.0

        vector = session.light_vector(i)
        assert vector is not None
        assert np.isclose(np.linalg.norm(vector), 1.0)
        assert vector[2] > 0.0


def test_empty_channel_gives_placeholder(burst) -> None:
    session, _planted = burst
    session.run(RunArgs(config=CONFIG, crops=(CROPS[0], None, CROPS[1])))
    assert session.lobes(0, 1) is None
    assert session.light_ray(0, 1) is None

    placeholder = np.asarray(Image.open(io.BytesIO(session.cropped_img_file(0, 1))))
    assert placeholder.shape == (2, 2, 3)
    assert tuple(placeholder[0, 0]) == (255, 255, 0)
    assert tuple(placeholder[0, 1]) == (0, 0, 0)

    view = np.asarray(Image.open(io.BytesIO(session.cropped_img_file(0, 0))))
    assert view.shape == (80, 80, 3)
    assert not np.allclose(session.light_pos(0), 0.0)


def test_no_highlight_gives_sentinel_position(burst) -> None:
    session, _planted = burst
    session.run(RunArgs(config=Config(sigma=1.0, threshold=1.0, mask_ray=0.9), crops=CROPS))
    assert session.lobes(0, 0) is None
    assert session.light_vector(0) is None
    assert np.array_equal(session.light_pos(0), np.zeros(3))

    report = session.report()
    assert report["frames"][0]["light_vector"] is None
    assert report["frames"][0]["light_pos"] == [0.0, 0.0, 0.0]
    assert report["channels"][0]["highlights"] == [None, None]


def test_single_sphere_does_not_determine_a_position(burst) -> None:
    session, _planted = burst
    session.run(RunArgs(config=CONFIG, crops=CROPS[:1]))
    assert session.lobes(1, 0) is not None
    assert np.array_equal(session.light_pos(1), np.zeros(3))


def test_run_accepts_host_dict_and_clears_previous_results(burst) -> None:
    session, planted = burst
    session.run(RunArgs(config=CONFIG, crops=CROPS))
    session.run(
        {
            "config": {"sigma": 1.0, "threshold": 0.6, "mask_ray": 0.9, "verbosity": 0},
            "crop_t_l": [36, 28, 84, 92],
            "crop_t_r": None,
            "crop_b_l": None,
            "crop_b_r": None,
        }
    )
    (hx, hy), (left, top) = planted[0][0], REGION_TOP_LEFT[0]
    assert session.lobes(0, 0) == (hx - left, hy - top)
    assert session.lobes(0, 1) is None

    report = session.report()
    assert report["schema_version"] == "selectball.report.v0"
    assert [f["id"] for f in report["frames"]] == ["frame0.png", "frame1.png"]
    assert report["channels"][1:] == [None, None, None]


def test_registration_aligns_frames() -> None:
    shift = np.array([0.0, 0.0, 0.0, 0.0, 1.6, -2.2])
    session = BurstSession()
    session.load_array("ref", render((96, 96)))
    session.load_array("moved", render((96, 96), shift))
    args = RunArgs(
        config=CONFIG,
        crops=(),
        registration=RegistrationParams(levels=3),
        registration_crop=Crop(8, 8, 88, 88),
    )
    motions = session.run(args)
    assert len(motions) == 2
    assert np.allclose(motions[0], 0.0)
    assert np.allclose(session.motion(1), shift, atol=0.1)

    aligned = np.asarray(Image.open(io.BytesIO(session.register_and_save(1))))
    reference = render((96, 96))
    inner = (slice(10, 80), slice(10, 80))
    assert np.max(np.abs(aligned[inner].astype(int) - reference[inner].astype(int))) <= 3
    assert session.report()["frames"][1]["registration_error"] is None


def test_run_stops_when_asked(burst) -> None:
    session, _planted = burst
    with pytest.raises(StoppedByCaller):
        session.run(RunArgs(config=CONFIG, crops=CROPS), should_stop=lambda step, i: step == "highlight" and i == 1)


def test_load_rejects_unsupported_images() -> None:
    session = BurstSession()
    out = io.BytesIO()
    Image.new("RGBA", (4, 4)).save(out, format="PNG")
    with pytest.raises(ImageLoadError, match="Alpha"):
        session.load("alpha.png", out.getvalue())
    with pytest.raises(TypeError):
        session.load_array("float", np.zeros((4, 4), dtype=np.float32))
    assert session.image_ids() == []
    assert session.run(RunArgs(config=CONFIG, crops=CROPS)) == []


def test_accessor_logs_follow_run_verbosity(burst, caplog) -> None:
    session, _planted = burst
    with caplog.at_level(logging.DEBUG, logger="selectball"):
        session.run(RunArgs(config=Config(sigma=1.0, threshold=0.6, mask_ray=0.9, verbosity=0), crops=CROPS[:1]))
        caplog.clear()
        session.light_pos(0)
        assert not caplog.records

        session.run(RunArgs(config=Config(sigma=1.0, threshold=0.6, mask_ray=0.9, verbosity=1), crops=CROPS[:1]))
        caplog.clear()
        session.light_pos(0)
        assert [r.levelno for r in caplog.records] == [logging.WARNING]


def test_report_flags_frames_without_registration_signal() -> None:
    session = BurstSession()
    session.load_array("ref", render((96, 96)))
    session.load_array("flat", np.full((96, 96), 90, dtype=np.uint8))
    session.run(RunArgs(config=CONFIG, crops=(), registration=RegistrationParams(levels=4)))
    frames = session.report()["frames"]
    assert frames[0]["registration_error"] is None
    assert frames[0]["registration_converged"] is True
    assert "area" in frames[1]["registration_error"]
    assert np.allclose(session.motion(1), 0.0)
