"""
Normalized-gradient backtracking line search over the projection matrix.
"""

import logging
from collections.abc import Callable

import numpy as np

from .data_structures import LineSearchResult, OptimizationState, OptimizerParams

logger = logging.getLogger(__name__)


def back_tracking_line_search(
    state: OptimizationState,
    cost_fn: Callable[[np.ndarray], float],
    params: OptimizerParams,
) -> LineSearchResult:
    """
    Move along the normalized gradient until the cost decreases sufficiently.

    The gradient is divided by its matrix 2-norm and then element-wise by the
    normalization matrix, which evens out the different scales of the 12
    parameters. A step is accepted when
    ``cost(candidate) - cost < step * t`` with
    ``t = -control_param * <grad, unit_grad>``; otherwise the step shrinks by
    ``tau``, bounded by ``min_step_size`` and ``max_back_track_iters``.

    Args:
        state: Current state with cost and gradient evaluated
        cost_fn: Cost of a candidate projection matrix
        params: Optimizer parameters

    Returns:
        LineSearchResult; its state is the input state when no step was accepted
    """
    gradient = np.asarray(state.gradient, dtype=np.float64).reshape(3, 4)
    gradient_norm = np.linalg.norm(gradient, 2)
    if not np.isfinite(gradient_norm) or gradient_norm == 0:
        zeros = np.zeros((3, 4))
        return LineSearchResult(state, False, 0.0, 0, zeros, zeros, zeros, 0.0)

    grads_norm = gradient / gradient_norm
    grad = grads_norm / params.normalize_matrix
    grad_norm = np.linalg.norm(grad, 2)
    unit_grad = grad / grad_norm

    t = float(np.sum((grad * -params.control_param) * unit_grad))
    step_size = params.max_step_size * grad_norm / np.linalg.norm(unit_grad, 2)

    candidate = state.p_matrix + unit_grad * step_size
    new_cost = cost_fn(candidate)
    diff = new_cost - state.cost

    iterations = 0
    while (
        diff >= step_size * t
        and abs(step_size) > params.min_step_size
        and iterations < params.max_back_track_iters
    ):
        iterations += 1
        logger.debug(f"    back tracking line search cost= {new_cost:.10f}")
        step_size = params.tau * step_size
        candidate = state.p_matrix + unit_grad * step_size
        new_cost = cost_fn(candidate)
        diff = new_cost - state.cost

    accepted = bool(diff < step_size * t)
    new_state = OptimizationState(p_matrix=candidate, cost=new_cost) if accepted else state
    return LineSearchResult(
        state=new_state,
        accepted=accepted,
        step_size=float(step_size),
        iterations=iterations,
        grads_norm=grads_norm,
        normalized_grads=grad,
        unit_grad=unit_grad,
        t=t,
    )
