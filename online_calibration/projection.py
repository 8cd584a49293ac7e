"""
Projection-matrix algebra for the color camera.

Narrow interface used by the optimizer:
- ``decompose(p_matrix, original)`` splits a 3x4 projection matrix into
  intrinsics and extrinsics,
- ``project(vertices, model, p_matrix)`` maps depth-camera points to color
  pixels with Brown-Conrady forward distortion,
- ``uv_coefficients(...)`` gives d(u, v)/dP for every vertex.
"""

import numpy as np
from scipy.linalg import rq

from .data_structures import CalibrationModel, Intrinsics


def decompose(p_matrix: np.ndarray, original: CalibrationModel) -> CalibrationModel:
    """
    Decompose P = K @ [R | t] into a calibration model.

    Skew is dropped. Resolution and distortion coefficients are taken from
    ``original``.

    Args:
        p_matrix: Projection matrix (3x4 or 12 values)
        original: Calibration supplying resolution and distortion

    Returns:
        CalibrationModel whose K has unit K[2, 2] and positive focal lengths
    """
    p = np.asarray(p_matrix, dtype=np.float64).reshape(3, 4)
    k, r = rq(p[:, :3])

    # RQ is unique up to the sign of each K column / R row
    d = np.sign(np.diag(k))
    d[d == 0] = 1
    signs = np.diag(d)
    k = k @ signs
    r = signs @ r

    t = np.linalg.solve(k, p[:, 3])
    if np.linalg.det(r) < 0:
        r = -r
        t = -t
    k = k / k[2, 2]

    intrinsics = Intrinsics(
        width=original.width,
        height=original.height,
        fx=float(k[0, 0]),
        fy=float(k[1, 1]),
        ppx=float(k[0, 2]),
        ppy=float(k[1, 2]),
        coeffs=original.intrinsics.coeffs.copy(),
    )
    return CalibrationModel(intrinsics=intrinsics, rotation=r, translation=t)


def _to_homogeneous(vertices: np.ndarray) -> np.ndarray:
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    return np.hstack([vertices, np.ones((len(vertices), 1))])


def _distort(xn: np.ndarray, yn: np.ndarray, coeffs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    k1, k2, p1, p2, k3 = coeffs
    r2 = xn * xn + yn * yn
    f = 1 + k1 * r2 + k2 * r2 * r2 + k3 * r2 * r2 * r2
    xd = xn * f + 2 * p1 * xn * yn + p2 * (r2 + 2 * xn * xn)
    yd = yn * f + 2 * p2 * xn * yn + p1 * (r2 + 2 * yn * yn)
    return xd, yd


def project(vertices: np.ndarray, model: CalibrationModel, p_matrix: np.ndarray | None = None) -> np.ndarray:
    """
    Project depth-camera vertices to color image coordinates.

    Args:
        vertices: 3D points (N, 3)
        model: Calibration whose intrinsics drive the distortion
        p_matrix: Projection matrix to use instead of ``model.p_matrix()``

    Returns:
        Pixel coordinates (N, 2) as (u, v)
    """
    p = model.p_matrix() if p_matrix is None else np.asarray(p_matrix, dtype=np.float64).reshape(3, 4)
    h = _to_homogeneous(vertices) @ p.T
    x_in = h[:, 0] / h[:, 2]
    y_in = h[:, 1] / h[:, 2]

    intr = model.intrinsics
    if not intr.has_distortion():
        return np.column_stack([x_in, y_in])

    xn = (x_in - intr.ppx) / intr.fx
    yn = (y_in - intr.ppy) / intr.fy
    xd, yd = _distort(xn, yn, intr.coeffs)
    return np.column_stack([xd * intr.fx + intr.ppx, yd * intr.fy + intr.ppy])


def deproject(pixels: np.ndarray, depth: np.ndarray, intrinsics: Intrinsics) -> np.ndarray:
    """Back-project pixels with depth through K^-1 (no distortion)."""
    pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
    sub_points = np.hstack([pixels, np.ones((len(pixels), 1))])
    rays = sub_points @ np.linalg.inv(intrinsics.matrix()).T
    return rays * np.asarray(depth, dtype=np.float64).reshape(-1, 1)


def uv_coefficients(
    vertices: np.ndarray, model: CalibrationModel, p_matrix: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """
    Analytic derivatives of the projected coordinates with respect to P.

    Args:
        vertices: 3D points (N, 3)
        model: Calibration whose intrinsics drive the distortion
        p_matrix: Projection matrix (3x4)

    Returns:
        Tuple of (du/dP, dv/dP), each (N, 12) in row-major P order
    """
    p = np.asarray(p_matrix, dtype=np.float64).reshape(3, 4)
    vh = _to_homogeneous(vertices)
    h = vh @ p.T
    n = len(vh)
    x_in = h[:, 0] / h[:, 2]
    y_in = h[:, 1] / h[:, 2]
    inv_z = (1.0 / h[:, 2])[:, None]

    dx_in = np.zeros((n, 12))
    dx_in[:, 0:4] = vh * inv_z
    dx_in[:, 8:12] = -vh * (x_in[:, None] * inv_z)

    dy_in = np.zeros((n, 12))
    dy_in[:, 4:8] = vh * inv_z
    dy_in[:, 8:12] = -vh * (y_in[:, None] * inv_z)

    intr = model.intrinsics
    if not intr.has_distortion():
        return dx_in, dy_in

    k1, k2, p1, p2, k3 = intr.coeffs
    xn = (x_in - intr.ppx) / intr.fx
    yn = (y_in - intr.ppy) / intr.fy
    r2 = xn * xn + yn * yn
    f = 1 + k1 * r2 + k2 * r2 * r2 + k3 * r2 * r2 * r2
    df = k1 + 2 * k2 * r2 + 3 * k3 * r2 * r2

    dxd_dxn = f + 2 * xn * xn * df + 2 * p1 * yn + 6 * p2 * xn
    dxd_dyn = 2 * xn * yn * df + 2 * p1 * xn + 2 * p2 * yn
    dyd_dxn = 2 * xn * yn * df + 2 * p2 * yn + 2 * p1 * xn
    dyd_dyn = f + 2 * yn * yn * df + 2 * p2 * xn + 6 * p1 * yn

    ratio = intr.fx / intr.fy
    du = dxd_dxn[:, None] * dx_in + (ratio * dxd_dyn)[:, None] * dy_in
    dv = (dyd_dxn / ratio)[:, None] * dx_in + dyd_dyn[:, None] * dy_in
    return du, dv


def is_inside_image(uv: np.ndarray, width: int, height: int) -> np.ndarray:
    """Mask of coordinates within [0, width-1] x [0, height-1]."""
    uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
    with np.errstate(invalid="ignore"):
        return (uv[:, 0] >= 0) & (uv[:, 0] <= width - 1) & (uv[:, 1] >= 0) & (uv[:, 1] <= height - 1)
