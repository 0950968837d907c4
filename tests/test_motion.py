import numpy as np
import pytest

from selectball.config import Crop
from selectball.core import motion as mo

from _synthetic import render


def test_matrix_roundtrip_and_identity():
    p = np.array([0.01, -0.02, 0.03, 0.04, 5.0, -6.0])
    assert np.allclose(mo.from_matrix(mo.to_matrix(p)), p)
    assert np.allclose(mo.to_matrix(mo.identity()), np.eye(3))


def test_inverse_composes_to_identity():
    p = np.array([0.05, -0.02, 0.03, -0.04, 12.0, -3.5])
    assert np.allclose(mo.compose(mo.inverse(p), p), mo.identity(), atol=1e-12)
    assert np.allclose(mo.compose(p, mo.inverse(p)), mo.identity(), atol=1e-12)


def test_inverse_rejects_singular_motion():
    with pytest.raises(mo.SingularMotion):
        mo.inverse(np.array([-1.0, 0.0, 0.0, -1.0, 3.0, 4.0]))


def test_compose_order():
    shift = np.array([0.0, 0.0, 0.0, 0.0, 1.0, 0.0])
    scale = np.array([1.0, 0.0, 0.0, 1.0, 0.0, 0.0])
    x, y = mo.apply(mo.compose(shift, scale), 2.0, 3.0)
    assert (x, y) == (5.0, 6.0)
    x, y = mo.apply(mo.compose(scale, shift), 2.0, 3.0)
    assert (x, y) == (6.0, 6.0)


def test_rescale_only_scales_translation():
    p = np.array([0.1, 0.2, 0.3, 0.4, 1.5, -2.0])
    q = mo.rescale(p, 2.0)
    assert np.allclose(q, [0.1, 0.2, 0.3, 0.4, 3.0, -4.0])
    assert p[4] == 1.5


def test_warp_identity_is_exact():
    img = render((20, 24))
    out, valid = mo.warp(img, mo.identity())
    assert valid.all()
    assert np.array_equal(out, img)


def test_warp_then_inverse_reproduces_image():
    img = render((64, 64))
    p = np.array([0.02, -0.015, 0.01, -0.01, 1.7, -2.3])
    once, valid_once = mo.warp(img, p)
    back, valid_back = mo.warp(once, mo.inverse(p))
    assert valid_once[10:-10, 10:-10].all()
    assert valid_back[10:-10, 10:-10].all()
    diff = np.abs(back.astype(np.int32) - img.astype(np.int32))[10:-10, 10:-10]
    assert diff.max() <= 4
    assert diff.mean() < 1.0


def test_warp_marks_points_leaving_the_image():
    img = render((16, 16))
    _out, valid = mo.warp(img, np.array([0.0, 0.0, 0.0, 0.0, 3.0, 0.0]))
    assert not valid[:, -3:].any()
    assert valid[:, :-3].all()


def test_recover_original_motion_from_crop():
    crop = Crop(left=10, top=20, right=60, bottom=70)
    p = np.array([0.02, 0.01, -0.01, 0.03, 1.5, -0.5])
    (full,) = mo.recover_original_motion(crop, [p])
    u = np.array([3.0, 40.0])
    v = np.array([7.0, 12.0])
    xc, yc = mo.apply(p, u, v)
    xf, yf = mo.apply(full, u + crop.left, v + crop.top)
    assert np.allclose(xf, xc + crop.left)
    assert np.allclose(yf, yc + crop.top)

    shift = np.array([0.0, 0.0, 0.0, 0.0, 2.0, 3.0])
    assert np.allclose(mo.recover_original_motion(crop, [shift])[0], shift)
