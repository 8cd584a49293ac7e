"""
Tests for projection, decomposition, back-projection and sampling.
"""

import numpy as np
import pytest

from conftest import rotation_z

from online_calibration.data_structures import CalibrationModel, EdgeFeatures, Intrinsics
from online_calibration.interpolation import bilinear_interp, is_no_data
from online_calibration.projection import decompose, deproject, is_inside_image, project, uv_coefficients
from online_calibration.vertices import back_project, build_vertices, relevant_pixels_image


def _features(xy: np.ndarray, depth: np.ndarray) -> EdgeFeatures:
    n = len(xy)
    return EdgeFeatures(
        location_rc=np.round(xy[:, ::-1]).astype(np.intp),
        direction=np.zeros(n, dtype=np.intp),
        section=np.zeros(n, dtype=np.intp),
        subpixel_xy=xy,
        closest_depth=depth,
    )


def test_back_projection_round_trip(intrinsics, true_calibration):
    """Test that projecting back-projected edges returns the sub-pixel locations."""
    xy = np.array([[10.5, 20.0], [80.0, 60.0], [150.25, 100.75]])
    features = _features(xy, np.array([4000.0, 6000.0, 8000.0]))
    vertices = back_project(features, intrinsics, max_sub_mm_z=4.0)

    np.testing.assert_allclose(vertices[:, 2], [1000.0, 1500.0, 2000.0])
    np.testing.assert_allclose(project(vertices, true_calibration), xy, atol=1e-9)


def test_deproject_principal_point_is_on_axis(intrinsics):
    """Test that the principal point back-projects onto the optical axis."""
    v = deproject(np.array([[80.0, 60.0]]), np.array([500.0]), intrinsics)
    np.testing.assert_allclose(v, [[0.0, 0.0, 500.0]])


def test_decompose_recovers_model(intrinsics):
    """Test decomposition of K @ [R | t]."""
    model = CalibrationModel(
        intrinsics=intrinsics, rotation=rotation_z(3.0), translation=np.array([12.0, -4.0, 1.5])
    )
    res = decompose(model.p_matrix(), model)
    np.testing.assert_allclose(res.rotation, model.rotation, atol=1e-10)
    np.testing.assert_allclose(res.translation, model.translation, atol=1e-9)
    assert res.intrinsics.fx == pytest.approx(100.0)
    assert res.intrinsics.ppy == pytest.approx(60.0)
    np.testing.assert_allclose(res.p_matrix(), model.p_matrix(), atol=1e-9)


def test_decompose_identity_extrinsics(intrinsics):
    """Test decomposition of K @ [I | 0], where RQ leaves zeros off the diagonal."""
    model = CalibrationModel(intrinsics=intrinsics, rotation=np.eye(3), translation=np.zeros(3))
    res = decompose(model.p_matrix(), model)
    np.testing.assert_allclose(res.rotation, np.eye(3), atol=1e-12)
    np.testing.assert_allclose(res.translation, 0.0, atol=1e-12)
    assert res.intrinsics.fx == pytest.approx(100.0)
    assert res.intrinsics.ppx == pytest.approx(80.0)
    assert res.intrinsics.ppy == pytest.approx(60.0)


def test_uv_coefficients_match_finite_differences():
    """Test analytic d(u, v)/dP against central differences, with distortion."""
    coeffs = [0.05, -0.01, 0.001, -0.002, 0.0]
    k = Intrinsics(width=160, height=120, fx=100.0, fy=110.0, ppx=80.0, ppy=60.0, coeffs=coeffs)
    model = CalibrationModel(intrinsics=k, rotation=rotation_z(2.0), translation=np.array([5.0, 1.0, 0.0]))
    vertices = np.array([[100.0, -50.0, 1000.0], [-200.0, 120.0, 1500.0]])
    p = model.p_matrix()
    du, dv = uv_coefficients(vertices, model, p)

    eps = 1e-6
    for i in range(12):
        delta = np.zeros(12)
        delta[i] = eps * max(1.0, abs(p.ravel()[i]))
        plus = project(vertices, model, p + delta.reshape(3, 4))
        minus = project(vertices, model, p - delta.reshape(3, 4))
        numeric = (plus - minus) / (2 * delta[i])
        np.testing.assert_allclose(du[:, i], numeric[:, 0], rtol=1e-4, atol=1e-6)
        np.testing.assert_allclose(dv[:, i], numeric[:, 1], rtol=1e-4, atol=1e-6)


def test_build_vertices_drops_out_of_image(intrinsics, true_calibration):
    """Test that vertices projecting outside the color image are removed."""
    xy = np.array([[10.0, 10.0], [80.0, 60.0]])
    features = _features(xy, np.array([4000.0, 4000.0]))
    shifted = CalibrationModel(intrinsics=intrinsics, translation=np.array([-150.0, 0.0, 0.0]))

    kept = build_vertices(features, intrinsics, shifted, max_sub_mm_z=4.0, constant_weights=1000.0)
    assert len(kept) == 1
    np.testing.assert_allclose(kept.uv, [[65.0, 60.0]])
    np.testing.assert_array_equal(kept.weight, [1000.0])


def test_relevant_pixels_rounding():
    """Test rounding of sub-pixel edges into the relevance image."""
    features = _features(np.array([[2.5, 1.2], [4.49, 3.5]]), np.array([1.0, 1.0]))
    img = relevant_pixels_image(features, 6, 5)
    assert img[1, 3]
    assert img[4, 4]
    assert img.sum() == 2


def test_bilinear_interp_and_no_data():
    """Test bilinear sampling inside and the sentinel outside the image."""
    img = np.array([[0.0, 10.0], [20.0, 30.0]])
    vals = bilinear_interp(img, np.array([[0.5, 0.5], [1.0, 0.0], [1.5, 0.0], [-0.1, 0.5]]))
    assert vals[0] == pytest.approx(15.0)
    assert vals[1] == pytest.approx(10.0)
    np.testing.assert_array_equal(is_no_data(vals), [False, False, True, True])


def test_is_inside_image_bounds():
    """Test inclusive image bounds."""
    uv = np.array([[0.0, 0.0], [159.0, 119.0], [159.01, 5.0], [np.nan, 3.0]])
    np.testing.assert_array_equal(is_inside_image(uv, 160, 120), [True, True, False, False])
