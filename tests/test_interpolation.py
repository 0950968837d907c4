import numpy as np

from selectball.core.interpolation import sample, sample_mask


def test_bilinear_values_and_corners():
    img = np.array([[0, 10], [20, 30]], dtype=np.uint8)
    values, valid = sample(img, np.array([0.5, 1.0, 0.0, 0.25]), np.array([0.5, 1.0, 1.0, 0.0]))
    assert valid.all()
    assert np.allclose(values, [15.0, 30.0, 20.0, 2.5])


def test_outside_samples_are_invalid_or_clamped():
    img = np.array([[0, 10], [20, 30]], dtype=np.uint8)
    x = np.array([-0.1, 1.5])
    y = np.array([0.0, 1.0])
    values, valid = sample(img, x, y)
    assert valid.tolist() == [False, False]
    assert values.tolist() == [0.0, 0.0]

    values, valid = sample(img, x, y, border="clamp")
    assert valid.all()
    assert np.allclose(values, [0.0, 30.0])


def test_rgb_sampling_keeps_channels():
    img = np.zeros((3, 3, 3), dtype=np.uint16)
    img[:, :, 1] = 1000
    img[1, 1, 2] = 400
    values, valid = sample(img, np.array([1.0, 0.5]), np.array([1.0, 1.0]))
    assert values.shape == (2, 3)
    assert valid.all()
    assert np.allclose(values[0], [0.0, 1000.0, 400.0])
    assert np.allclose(values[1], [0.0, 1000.0, 200.0])


def test_sample_mask_needs_weighted_neighbors():
    mask = np.ones((3, 3), dtype=bool)
    mask[0, 0] = False
    ok = sample_mask(mask, np.array([0.5, 1.0, 2.0, 0.0]), np.array([0.5, 1.0, 2.0, 0.0]))
    assert ok.tolist() == [False, True, True, False]
