"""
Tests for image derivatives, luminance and edge diffusion.
"""

import numpy as np
import pytest

from online_calibration.diffusion import diffuse_edges, diffused_field_with_gradients
from online_calibration.exceptions import MalformedInputError
from online_calibration.gradients import (
    gradient_x,
    gradient_y,
    logic_edges,
    luminance,
    sobel_edges,
    zero_margin,
)


def test_flat_image_has_zero_gradients():
    """Test that a constant image has no gradient anywhere."""
    img = np.full((12, 15), 37.0)
    gx, gy, edges = sobel_edges(img)
    assert np.all(gx == 0)
    assert np.all(gy == 0)
    assert np.all(edges == 0)


def test_ramp_gradient_is_unit_slope():
    """Test that the normalized kernel returns the slope of a linear ramp."""
    img = np.tile(np.arange(10, dtype=np.float64) * 3, (8, 1))
    gx = gradient_x(img)
    gy = gradient_y(img)
    np.testing.assert_allclose(gx[1:-1, 1:-1], 3.0)
    np.testing.assert_allclose(gy, 0.0)


def test_outer_frame_is_zero():
    """Test that the outermost rows and columns are left at zero."""
    rng = np.random.default_rng(0)
    img = rng.uniform(0, 255, (9, 11))
    for g in (gradient_x(img), gradient_y(img)):
        assert np.all(g[0, :] == 0)
        assert np.all(g[-1, :] == 0)
        assert np.all(g[:, 0] == 0)
        assert np.all(g[:, -1] == 0)


def test_zero_margin_clears_second_ring():
    """Test margin zeroing of the second and second-to-last rows and columns."""
    g = np.ones((8, 8))
    res = zero_margin(g)
    assert np.all(res[1, :] == 0)
    assert np.all(res[-2, :] == 0)
    assert np.all(res[:, 1] == 0)
    assert np.all(res[:, -2] == 0)
    assert res[3, 3] == 1
    assert np.all(g == 1)


def test_luminance_layouts():
    """Test luminance extraction from gray and BGR frames."""
    gray = np.full((6, 7), 80, dtype=np.uint8)
    np.testing.assert_allclose(luminance(gray), 80.0)

    bgr = np.zeros((6, 7, 3), dtype=np.uint8)
    bgr[..., 1] = 100
    lum = luminance(bgr)
    assert lum.shape == (6, 7)
    assert np.all(lum > 0)


def test_luminance_rejects_unknown_layout():
    """Test that a 4-channel frame is rejected."""
    with pytest.raises(MalformedInputError):
        luminance(np.zeros((6, 7, 4), dtype=np.uint8))


def test_logic_edges_threshold():
    """Test binary edges relative to the strongest edge."""
    edges = np.array([[0.0, 0.05, 0.2, 1.0]])
    np.testing.assert_array_equal(logic_edges(edges, 0.1), [[False, False, True, True]])


def test_diffusion_gamma_zero_is_identity():
    """Test that without decay the field equals the edge map."""
    rng = np.random.default_rng(1)
    edges = rng.uniform(0, 10, (7, 9))
    np.testing.assert_allclose(diffuse_edges(edges, gamma=0.0, alpha=0.3), edges)


def test_diffusion_decays_with_l1_distance():
    """Test that a single edge spreads as gamma to the L1 distance."""
    edges = np.zeros((9, 9))
    edges[4, 4] = 1.0
    res = diffuse_edges(edges, gamma=0.5, alpha=0.0)
    assert res[4, 4] == pytest.approx(1.0)
    assert res[4, 6] == pytest.approx(0.25)
    assert res[2, 5] == pytest.approx(0.125)
    assert res[0, 0] == pytest.approx(0.5**8)


def test_diffusion_blend_keeps_edges():
    """Test that the field is never below the edge map and is maximal on edges."""
    edges = np.zeros((10, 10))
    edges[:, 5] = 2.0
    idt, gx, gy = diffused_field_with_gradients(edges, gamma=0.9, alpha=1 / 3)
    assert np.all(idt >= edges - 1e-12)
    assert np.all(idt[:, 5] == idt.max())
    assert gx.shape == idt.shape
    assert np.all(gy[1:-1, 1:-1] == pytest.approx(0.0))
