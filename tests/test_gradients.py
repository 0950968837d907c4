import numpy as np

from selectball.core.gradients import centered_gradients, interior_mask, squared_norm


def test_centered_gradients_on_ramp():
    img = (np.arange(10, dtype=np.uint8)[None, :] * 10).repeat(6, axis=0)
    gx, gy = centered_gradients(img)
    assert np.allclose(gx[:, 1:-1], 10.0)
    assert np.allclose(gy, 0.0)
    assert gx[0, 0] == 0.0


def test_squared_norm_uses_widened_type():
    img = (np.arange(10, dtype=np.uint8)[None, :] * 10).repeat(6, axis=0)
    sq = squared_norm(img)
    assert sq.dtype == np.uint16
    assert np.all(sq[1:-1, 1:-1] == 100)
    assert np.all(sq[0, :] == 0)


def test_squared_norm_worst_case_does_not_wrap():
    for dtype, top in ((np.uint8, 255), (np.uint16, 65535)):
        img = np.zeros((8, 8), dtype=dtype)
        img[4:, 4:] = top
        img[5:, :] = top
        img[:, 5:] = top
        sq = squared_norm(img)
        half = top // 2
        assert int(sq[4, 4]) == 2 * half * half


def test_interior_mask():
    m = interior_mask((4, 5))
    assert m.sum() == 2 * 3
    assert not m[0].any() and not m[:, -1].any()
