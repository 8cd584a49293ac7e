"""
Tests for the cost, the line search and the calibration session.
"""

from dataclasses import replace

import numpy as np
import pytest

from conftest import box_image, load_scene, rotation_angle

from online_calibration.cost import calc_cost, calc_cost_and_gradient, calc_p_gradients, cost_from_samples
from online_calibration.data_structures import (
    IterationKind,
    OptimizationState,
    OptimizerParams,
    SecondaryCalibrationModel,
)
from online_calibration.exceptions import InsufficientFeaturesError, MalformedInputError
from online_calibration.line_search import back_tracking_line_search
from online_calibration.optimizer import Optimizer, params_for_depth_resolution
from online_calibration.projection import decompose
from online_calibration.secondary_model import SecondaryConversion


def test_cost_from_samples_ignores_no_data():
    """Test the negated weighted mean over valid samples only."""
    d_vals = np.array([2.0, np.nan, 4.0])
    weights = np.array([10.0, 10.0, 10.0])
    assert cost_from_samples(d_vals, weights) == pytest.approx(-30.0)
    assert cost_from_samples(np.array([np.nan]), np.array([1.0])) == np.inf


def test_p_gradient_requires_valid_samples():
    """Test that a gradient over zero valid vertices is an error."""
    nan = np.array([np.nan, np.nan])
    with pytest.raises(InsufficientFeaturesError):
        calc_p_gradients(nan, nan, np.ones((2, 12)), np.ones((2, 12)), np.ones(2))


def test_p_gradient_last_row_is_zero():
    """Test that the third row of the projection matrix never receives gradient."""
    rng = np.random.default_rng(3)
    grad, n_valid = calc_p_gradients(
        rng.normal(size=5), rng.normal(size=5), rng.normal(size=(5, 12)), rng.normal(size=(5, 12)), np.ones(5)
    )
    assert n_valid == 5
    assert grad.shape == (3, 4)
    assert np.all(grad[2] == 0)


def test_cost_is_lower_at_true_calibration(scene, true_calibration):
    """Test that the correct calibration aligns edges better than the rolled one."""
    opt = load_scene(Optimizer(), scene)
    features = opt.depth_data.features
    rolled = calc_cost(features, opt.color_data, scene.calibration, scene.calibration.p_matrix())
    aligned = calc_cost(features, opt.color_data, true_calibration, true_calibration.p_matrix())
    assert aligned < rolled < 0


def test_line_search_never_increases_cost(scene):
    """Test that an accepted step lowers the cost and a rejected one keeps the state."""
    params = OptimizerParams()
    opt = load_scene(Optimizer(params), scene)
    features = opt.depth_data.features
    color = opt.color_data
    calib = decompose(scene.calibration.p_matrix(), scene.calibration)

    state = OptimizationState(p_matrix=calib.p_matrix())
    evaluation = calc_cost_and_gradient(features, color, calib, state.p_matrix)
    state = state.evaluated(evaluation.cost, evaluation.gradient)

    def cost_fn(p):
        return calc_cost(features, color, decompose(p, calib), p)

    result = back_tracking_line_search(state, cost_fn, params)
    assert result.state.cost <= state.cost
    if result.accepted:
        assert result.state.cost < state.cost
        assert result.t <= 0
    else:
        assert result.state is state


def test_line_search_zero_gradient_is_noop():
    """Test that a vanishing gradient returns the input state."""
    state = OptimizationState(p_matrix=np.eye(3, 4), cost=-5.0, gradient=np.zeros((3, 4)))
    result = back_tracking_line_search(state, lambda p: 0.0, OptimizerParams())
    assert not result.accepted
    assert result.state is state


def test_optimize_recovers_roll_offset(scene):
    """Test end-to-end convergence from a 1.5 degree roll towards the true calibration."""
    opt = load_scene(Optimizer(), scene)
    assert opt.is_scene_valid()

    history = []
    result = opt.optimize(callback=history.append)

    assert result.cost < result.initial_cost
    initial_error = rotation_angle(scene.calibration.rotation)
    final_error = rotation_angle(result.calibration.rotation)
    assert final_error < 0.5 * initial_error

    assert result.calibration.intrinsics.fx == pytest.approx(100.0)
    assert result.calibration.intrinsics.fy == pytest.approx(100.0)
    assert opt.get_calibration() is result.calibration
    assert opt.get_cost() == result.cost

    iterations = [h for h in history if h.kind == IterationKind.ITERATION]
    assert iterations
    assert iterations[0].cycle == 1
    assert np.isfinite(iterations[0].state.cost)


def test_secondary_model_stays_within_envelope(scene):
    """Test that the final secondary model is within the scaling step of the original."""
    original = SecondaryCalibrationModel(h_scale=1.01, v_scale=0.99)
    opt = load_scene(Optimizer(), replace(scene, secondary_model=original))
    result = opt.optimize()
    step = opt.params.max_scaling_step
    assert abs(result.secondary_model.h_scale - original.h_scale) <= step + 1e-12
    assert abs(result.secondary_model.v_scale - original.v_scale) <= step + 1e-12
    assert opt.get_secondary_model() is result.secondary_model


def test_iteration_cap(scene):
    """Test that the inner loop stops at the iteration cap."""
    params = OptimizerParams(max_optimization_iters=1, max_cycles=1)
    history = []
    result = load_scene(Optimizer(params), scene).optimize(callback=history.append)
    assert result.n_iterations <= 1
    assert len(history) <= 2


def test_cycle_cap(scene):
    """Test that a single allowed cycle keeps the original secondary model."""
    params = OptimizerParams(max_cycles=1)
    history = []
    result = load_scene(Optimizer(params), scene).optimize(callback=history.append)
    assert result.n_cycles == 1
    assert result.secondary_model == SecondaryCalibrationModel()
    assert not [h for h in history if h.kind == IterationKind.CYCLE]


def test_cycles_never_exceed_cap(scene):
    """Test the total number of cycles is bounded."""
    params = OptimizerParams(max_cycles=3)
    history = []
    result = load_scene(Optimizer(params), scene).optimize(callback=history.append)
    assert result.n_cycles <= 3
    assert all(h.cycle <= 3 for h in history)


def _fixed_conversion(candidate, vertices):
    def convert(orig_k, new_k, features):
        return SecondaryConversion(candidate=candidate, depth_intrinsics=new_k, vertices=vertices)

    return convert


def _single_step_baseline(scene):
    params = OptimizerParams(max_optimization_iters=1, max_cycles=1)
    return load_scene(Optimizer(params), scene).optimize()


def test_worse_cycle_keeps_baseline(scene, monkeypatch):
    """Test that a cycle with a higher cost leaves cost, secondary model and vertices untouched."""
    baseline = _single_step_baseline(scene)
    opt = load_scene(Optimizer(OptimizerParams(max_optimization_iters=1, max_cycles=2)), scene)
    original_vertices = opt.depth_data.features.vertex
    shifted = original_vertices + np.array([200.0, 0.0, 0.0])
    monkeypatch.setattr(opt._converter, "convert", _fixed_conversion(SecondaryCalibrationModel(h_scale=1.01), shifted))

    result = opt.optimize()

    assert result.n_cycles == 2
    assert result.cost == pytest.approx(baseline.cost)
    assert result.secondary_model == SecondaryCalibrationModel()
    np.testing.assert_allclose(result.calibration.rotation, baseline.calibration.rotation)
    np.testing.assert_array_equal(opt.depth_data.features.vertex, original_vertices)


def test_better_cycle_is_accepted(scene, monkeypatch):
    """Test that a cycle with a lower cost replaces cost, secondary model and vertices."""
    baseline = _single_step_baseline(scene)
    opt = load_scene(Optimizer(OptimizerParams(max_optimization_iters=1, max_cycles=2)), scene)

    # vertices that the baseline calibration maps exactly onto the true edges
    calib = baseline.calibration
    aligned = (opt.depth_data.features.vertex - calib.translation) @ calib.rotation
    candidate = SecondaryCalibrationModel(h_scale=1.01)
    monkeypatch.setattr(opt._converter, "convert", _fixed_conversion(candidate, aligned))

    result = opt.optimize()

    assert result.n_cycles == 2
    assert result.cost < baseline.cost
    assert result.secondary_model == candidate
    assert opt.depth_data.features.vertex is aligned


def test_cycle_without_features_ends_loop(scene, monkeypatch):
    """Test that a cycle whose vertices all leave the image is discarded."""
    baseline = _single_step_baseline(scene)
    opt = load_scene(Optimizer(OptimizerParams(max_optimization_iters=1, max_cycles=3)), scene)
    original_vertices = opt.depth_data.features.vertex
    outside = original_vertices + np.array([1e7, 0.0, 0.0])
    monkeypatch.setattr(opt._converter, "convert", _fixed_conversion(SecondaryCalibrationModel(h_scale=1.01), outside))

    result = opt.optimize()

    assert result.n_cycles == 2
    assert result.cost == pytest.approx(baseline.cost)
    assert result.secondary_model == SecondaryCalibrationModel()
    np.testing.assert_array_equal(opt.depth_data.features.vertex, original_vertices)


def test_depth_before_color_is_rejected(scene):
    """Test that depth data requires color and IR data first."""
    opt = Optimizer()
    with pytest.raises(MalformedInputError):
        opt.set_depth_data(scene.depth_frame, scene.depth_intrinsics)

    opt.set_color_data(scene.color_frame, scene.prev_color_frame, scene.calibration)
    with pytest.raises(MalformedInputError):
        opt.set_depth_data(scene.depth_frame, scene.depth_intrinsics)


def test_malformed_frames_are_rejected(scene):
    """Test empty, tiny and mismatched frames."""
    opt = Optimizer()
    with pytest.raises(MalformedInputError):
        opt.set_ir_data(np.zeros((0, 0)))
    with pytest.raises(MalformedInputError):
        opt.set_ir_data(np.zeros((3, 3)))
    with pytest.raises(MalformedInputError):
        opt.set_color_data(scene.color_frame[:-1], scene.prev_color_frame[:-1], scene.calibration)

    opt.set_color_data(scene.color_frame, scene.prev_color_frame, scene.calibration)
    opt.set_ir_data(scene.ir_frame[:, :-2])
    with pytest.raises(MalformedInputError):
        opt.set_depth_data(scene.depth_frame, scene.depth_intrinsics)


def test_optimize_before_data_is_rejected():
    """Test that optimizing an empty session fails."""
    with pytest.raises(MalformedInputError):
        Optimizer().optimize()


def test_flat_scene_has_no_features(scene):
    """Test that a scene without depth edges cannot be optimized."""
    flat_depth = np.full_like(scene.depth_frame, 6000)
    opt = load_scene(Optimizer(), replace(scene, depth_frame=flat_depth))
    assert len(opt.depth_data.features) == 0
    assert not opt.is_scene_valid()
    with pytest.raises(InsufficientFeaturesError):
        opt.optimize()


def test_movement_invalidates_scene(scene):
    """Test that a shifted previous color frame is detected as movement."""
    moved = np.roll(box_image(200, 50), 5, axis=1)
    opt = load_scene(Optimizer(), replace(scene, prev_color_frame=moved))
    assert not opt.is_scene_valid()


def test_xga_resolution_lowers_ir_threshold():
    """Test the resolution-dependent IR threshold."""
    params = OptimizerParams()
    assert params_for_depth_resolution(params, 1024, 768).grad_ir_threshold == 2.5
    assert params_for_depth_resolution(params, 640, 480) is params
