import numpy as np
import pytest

from selectball.core.multires import (
    InsufficientResolution,
    build_mask_pyramid,
    build_pyramid,
    downsample,
    max_levels,
)


def test_downsample_averages_blocks():
    img = (np.arange(64, dtype=np.uint8).reshape(8, 8) * 3)
    out = downsample(img)
    expected = np.floor(img.astype(np.float64).reshape(4, 2, 4, 2).mean(axis=(1, 3)) + 0.5)
    assert out.dtype == np.uint8
    assert out.shape == (4, 4)
    assert np.array_equal(out, expected.astype(np.uint8))


def test_downsample_does_not_overflow():
    assert np.all(downsample(np.full((4, 4), 255, dtype=np.uint8)) == 255)
    assert np.all(downsample(np.full((4, 4), 65535, dtype=np.uint16), factor=4) == 65535)


def test_downsample_drops_incomplete_blocks():
    assert downsample(np.zeros((9, 7), dtype=np.uint8)).shape == (4, 3)
    assert downsample(np.zeros((9, 9, 3), dtype=np.uint16), factor=3).shape == (3, 3, 3)


def test_build_pyramid_levels_and_determinism():
    rng = np.random.default_rng(0)
    img = rng.integers(0, 256, size=(16, 16), dtype=np.uint8)
    pyr = build_pyramid(img, 3)
    assert [p.shape for p in pyr] == [(16, 16), (8, 8), (4, 4)]
    assert pyr[0] is img
    again = build_pyramid(img, 3)
    assert all(np.array_equal(a, b) for a, b in zip(pyr, again))


def test_build_pyramid_insufficient_resolution():
    img = np.zeros((16, 16), dtype=np.uint8)
    assert max_levels(img.shape) == 5
    assert max_levels(img.shape, min_size=4) == 3
    build_pyramid(img, 5)
    with pytest.raises(InsufficientResolution):
        build_pyramid(img, 6)
    with pytest.raises(InsufficientResolution):
        build_pyramid(img, 4, min_size=4)


def test_mask_pyramid_requires_full_blocks():
    mask = np.ones((4, 4), dtype=bool)
    mask[0, 0] = False
    pyr = build_mask_pyramid(mask, 2)
    assert pyr[1].tolist() == [[False, True], [True, True]]
