"""
Alignment cost and its gradient with respect to the projection matrix.

The cost is the negated weighted mean of the diffused color edge field sampled
at the projected depth edges, so better alignment means lower cost.
"""

from dataclasses import dataclass

import numpy as np

from .data_structures import CalibrationModel, ColorFrameData, EdgeFeatures
from .exceptions import InsufficientFeaturesError
from .interpolation import bilinear_interp, is_no_data
from .projection import project, uv_coefficients


@dataclass(frozen=True, eq=False)
class CostEvaluation:
    """
    Cost and gradient at one projection matrix, with intermediates for diagnostics.

    Attributes:
        cost: Alignment cost
        gradient: Steepest-descent direction of the cost (3x4), last row zero
        uv: Projected vertices (N, 2)
        d_vals: Diffused field samples (N,)
        d_vals_x: Field x-gradient samples (N,)
        d_vals_y: Field y-gradient samples (N,)
        x_coeffs: du/dP per vertex (N, 12)
        y_coeffs: dv/dP per vertex (N, 12)
        n_valid: Vertices contributing to the gradient
    """

    cost: float
    gradient: np.ndarray
    uv: np.ndarray
    d_vals: np.ndarray
    d_vals_x: np.ndarray
    d_vals_y: np.ndarray
    x_coeffs: np.ndarray
    y_coeffs: np.ndarray
    n_valid: int


def cost_from_samples(d_vals: np.ndarray, weights: np.ndarray) -> float:
    """Negated weighted mean over valid samples; ``inf`` when none is valid."""
    valid = ~is_no_data(d_vals)
    n_valid = int(np.count_nonzero(valid))
    if n_valid == 0:
        return np.inf
    return -float(np.sum(weights[valid] * d_vals[valid])) / n_valid


def calc_cost(
    features: EdgeFeatures, color: ColorFrameData, calibration: CalibrationModel, p_matrix: np.ndarray
) -> float:
    """Cost of projecting ``features.vertex`` with ``p_matrix``."""
    uv = project(features.vertex, calibration, p_matrix)
    d_vals = bilinear_interp(color.edges_idt, uv)
    return cost_from_samples(d_vals, features.weight)


def calc_p_gradients(
    d_vals_x: np.ndarray,
    d_vals_y: np.ndarray,
    x_coeffs: np.ndarray,
    y_coeffs: np.ndarray,
    weights: np.ndarray,
) -> tuple[np.ndarray, int]:
    """
    Accumulate the 12-parameter gradient over vertices with valid field samples.

    Args:
        d_vals_x: Field x-gradient at each projected vertex (N,)
        d_vals_y: Field y-gradient at each projected vertex (N,)
        x_coeffs: du/dP per vertex (N, 12)
        y_coeffs: dv/dP per vertex (N, 12)
        weights: Per-vertex weights (N,)

    Returns:
        Tuple of (gradient as 3x4, number of contributing vertices)

    Raises:
        InsufficientFeaturesError: If no vertex has a valid sample
    """
    valid = ~(is_no_data(d_vals_x) | is_no_data(d_vals_y))
    n_valid = int(np.count_nonzero(valid))
    if n_valid == 0:
        raise InsufficientFeaturesError("No projected edge vertex falls on valid color data")

    per_vertex = d_vals_x[valid, None] * x_coeffs[valid] + d_vals_y[valid, None] * y_coeffs[valid]
    sums = np.sum(weights[valid, None] * per_vertex, axis=0)

    grad = sums / n_valid
    # the third row of P is not optimized
    grad[8:] = 0
    return grad.reshape(3, 4), n_valid


def calc_cost_and_gradient(
    features: EdgeFeatures, color: ColorFrameData, calibration: CalibrationModel, p_matrix: np.ndarray
) -> CostEvaluation:
    """
    Evaluate cost and gradient at ``p_matrix``.

    The returned gradient points to better alignment (it is the gradient of the
    sampled edge intensity), i.e. it is the descent direction of the cost.

    Raises:
        InsufficientFeaturesError: If no vertex projects onto valid color data
    """
    p_matrix = np.asarray(p_matrix, dtype=np.float64).reshape(3, 4)
    uv = project(features.vertex, calibration, p_matrix)

    d_vals = bilinear_interp(color.edges_idt, uv)
    d_vals_x = bilinear_interp(color.edges_idt_x, uv)
    d_vals_y = bilinear_interp(color.edges_idt_y, uv)
    x_coeffs, y_coeffs = uv_coefficients(features.vertex, calibration, p_matrix)

    gradient, n_valid = calc_p_gradients(d_vals_x, d_vals_y, x_coeffs, y_coeffs, features.weight)
    return CostEvaluation(
        cost=cost_from_samples(d_vals, features.weight),
        gradient=gradient,
        uv=uv,
        d_vals=d_vals,
        d_vals_x=d_vals_x,
        d_vals_y=d_vals_y,
        x_coeffs=x_coeffs,
        y_coeffs=y_coeffs,
        n_valid=n_valid,
    )
