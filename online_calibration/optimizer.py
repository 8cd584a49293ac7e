"""
Online depth-to-RGB calibration session.

An ``Optimizer`` owns one depth/IR/color snapshot. ``optimize`` refines the
color projection matrix with repeated line searches until it converges, then
alternates with secondary-model cycles while the cost keeps improving.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path

import numpy as np
from tqdm.auto import tqdm

from . import io
from .cost import calc_cost, calc_cost_and_gradient
from .data_structures import (
    CalibrationModel,
    CalibrationResult,
    ColorFrameData,
    DepthFrameData,
    EdgeFeatures,
    Intrinsics,
    IterationData,
    IterationKind,
    OptimizationState,
    OptimizerParams,
    SecondaryCalibrationMetadata,
    SecondaryCalibrationModel,
)
from .diffusion import diffused_field_with_gradients
from .edges import extract_ir_candidates, section_per_pixel, validate_depth_edges
from .exceptions import InsufficientFeaturesError, MalformedInputError
from .gradients import luminance, sobel_edges
from .line_search import back_tracking_line_search
from .projection import decompose
from .secondary_model import SecondaryModelConverter, depth_intrinsics_from_calibration
from .validation import is_edge_distributed, is_movement_in_images
from .vertices import build_vertices, relevant_pixels_image

logger = logging.getLogger(__name__)

MIN_FRAME_SIZE = 5

IterationCallback = Callable[[IterationData], None]


def params_for_depth_resolution(params: OptimizerParams, width: int, height: int) -> OptimizerParams:
    """Apply resolution-dependent parameter overrides."""
    logger.debug(f"... depth resolution= {width}x{height}")
    if (width, height) == (1024, 768):
        logger.debug(f"... changing IR threshold: {params.grad_ir_threshold} -> 2.5  (because of resolution)")
        return replace(params, grad_ir_threshold=2.5)
    return params


def _check_frame(frame: np.ndarray, name: str, ndim: tuple[int, ...] = (2,)) -> np.ndarray:
    frame = np.asarray(frame)
    if frame.size == 0:
        raise MalformedInputError(f"{name} frame is empty")
    if frame.ndim not in ndim:
        raise MalformedInputError(f"{name} frame must have {' or '.join(map(str, ndim))} dimensions, got {frame.ndim}")
    if min(frame.shape[:2]) < MIN_FRAME_SIZE:
        raise MalformedInputError(f"{name} frame {frame.shape[:2]} is smaller than {MIN_FRAME_SIZE}x{MIN_FRAME_SIZE}")
    return frame


@dataclass(frozen=True, eq=False)
class _InnerResult:
    state: OptimizationState
    calibration: CalibrationModel
    depth_intrinsics: Intrinsics
    n_iterations: int


class Optimizer:
    """
    Calibration session for one depth/IR/color snapshot.

    Usage:
        opt = Optimizer(params)
        opt.set_color_data(frame, prev_frame, calibration)
        opt.set_ir_data(ir)
        opt.set_depth_data(depth, depth_intrinsics, secondary_model, metadata, depth_units)
        result = opt.optimize()

    Args:
        params: Optimizer parameters (defaults if None)
    """

    def __init__(self, params: OptimizerParams | None = None):
        self.params = params or OptimizerParams()

        self._color: ColorFrameData | None = None
        self._ir_frame: np.ndarray | None = None
        self._depth: DepthFrameData | None = None
        self._original_calibration: CalibrationModel | None = None
        self._converter: SecondaryModelConverter | None = None

        self._final_calibration: CalibrationModel | None = None
        self._final_secondary: SecondaryCalibrationModel | None = None
        self._cost = float("nan")

    # -------------------------
    # Input
    # -------------------------

    def set_color_data(self, frame: np.ndarray, prev_frame: np.ndarray, calibration: CalibrationModel) -> None:
        """
        Set the current and previous color frames and the device color calibration.

        Raises:
            MalformedInputError: On empty frames or sizes not matching the calibration
        """
        frame = _check_frame(frame, "Color", ndim=(2, 3))
        prev_frame = _check_frame(prev_frame, "Previous color", ndim=(2, 3))
        if frame.shape != prev_frame.shape:
            raise MalformedInputError(f"Color frames differ in shape: {frame.shape} vs {prev_frame.shape}")

        lum = luminance(frame)
        prev_lum = luminance(prev_frame)
        if lum.shape != (calibration.height, calibration.width):
            raise MalformedInputError(
                f"Color frame {lum.shape[1]}x{lum.shape[0]} does not match calibration "
                f"{calibration.width}x{calibration.height}"
            )
        logger.debug(f"... RGB resolution= {calibration.width}x{calibration.height}")

        _, _, edges = sobel_edges(lum)
        _, _, prev_edges = sobel_edges(prev_lum)
        idt, idt_x, idt_y = diffused_field_with_gradients(edges, self.params.gamma, self.params.alpha)

        self._color = ColorFrameData(
            frame=frame,
            prev_frame=prev_frame,
            luminance=lum,
            prev_luminance=prev_lum,
            edges=edges,
            prev_edges=prev_edges,
            edges_idt=idt,
            edges_idt_x=idt_x,
            edges_idt_y=idt_y,
        )
        self._original_calibration = calibration

    def set_ir_data(self, ir_frame: np.ndarray) -> None:
        """Set the IR frame; it must have the depth frame's resolution."""
        self._ir_frame = _check_frame(ir_frame, "IR")

    def set_depth_data(
        self,
        depth_frame: np.ndarray,
        depth_intrinsics: Intrinsics,
        secondary_model: SecondaryCalibrationModel | None = None,
        metadata: SecondaryCalibrationMetadata | None = None,
        depth_units: float = 0.001,
    ) -> None:
        """
        Set the depth frame and extract the edge vertices of the session.

        Color and IR data must be set first: IR edges seed the features and the
        color calibration decides which vertices are kept.

        Raises:
            MalformedInputError: On missing color/IR data or mismatched sizes
        """
        if self._color is None or self._original_calibration is None:
            raise MalformedInputError("Color data must be set before depth data")
        if self._ir_frame is None:
            raise MalformedInputError("IR data must be set before depth data")

        depth_frame = _check_frame(depth_frame, "Depth")
        expected = (depth_intrinsics.height, depth_intrinsics.width)
        if depth_frame.shape != expected:
            raise MalformedInputError(f"Depth frame shape {depth_frame.shape} does not match intrinsics {expected}")
        if self._ir_frame.shape != expected:
            raise MalformedInputError(f"IR frame shape {self._ir_frame.shape} does not match depth {expected}")

        self.params = params_for_depth_resolution(self.params, depth_intrinsics.width, depth_intrinsics.height)
        params = self.params

        gx, gy, edges = sobel_edges(depth_frame, margin=True)
        section_map = section_per_pixel(
            depth_intrinsics.width, depth_intrinsics.height, params.num_sections_x, params.num_sections_y
        )

        ir = extract_ir_candidates(self._ir_frame, section_map, params.grad_ir_threshold)
        features = validate_depth_edges(ir.candidates, depth_frame, gx, gy, params.grad_z_threshold)
        features = build_vertices(
            features, depth_intrinsics, self._original_calibration, params.max_sub_mm_z, params.constant_weights
        )
        logger.debug(f"Edge vertices: {len(features)}")

        self._depth = DepthFrameData(
            frame=depth_frame,
            intrinsics=depth_intrinsics,
            depth_units=float(depth_units),
            gradient_x=gx,
            gradient_y=gy,
            edges=edges,
            section_map=section_map,
            features=features,
            relevant_pixels=relevant_pixels_image(features, depth_intrinsics.width, depth_intrinsics.height),
        )
        self._converter = SecondaryModelConverter(
            secondary_model or SecondaryCalibrationModel(),
            metadata or SecondaryCalibrationMetadata(),
            params.max_scaling_step,
            params.max_sub_mm_z,
        )

    def _require_data(self) -> tuple[DepthFrameData, ColorFrameData]:
        if self._depth is None or self._color is None:
            raise MalformedInputError("Color, IR and depth data must be set first")
        return self._depth, self._color

    @property
    def depth_data(self) -> DepthFrameData:
        return self._require_data()[0]

    @property
    def color_data(self) -> ColorFrameData:
        return self._require_data()[1]

    # -------------------------
    # Scene validation
    # -------------------------

    def is_scene_valid(self) -> bool:
        """Check the snapshot for movement and for well distributed edges."""
        depth, color = self._require_data()
        movement = is_movement_in_images(color, self.params)
        if movement:
            logger.warning("Scene invalid: movement detected between color frames")
        distributed = is_edge_distributed(depth.features, self.params)
        if not distributed:
            logger.warning("Scene invalid: depth edges are not distributed over all sections")
        return not movement and distributed

    # -------------------------
    # Optimization
    # -------------------------

    def _optimize_p(
        self,
        start: OptimizationState,
        calibration: CalibrationModel,
        features: EdgeFeatures,
        original: CalibrationModel,
        cycle: int,
        callback: IterationCallback | None,
    ) -> _InnerResult:
        """Refine the projection matrix from ``start`` until one of the stop criteria holds."""
        params = self.params
        color = self._color
        depth = self._depth

        def cost_fn(p_matrix: np.ndarray) -> float:
            return calc_cost(features, color, decompose(p_matrix, original), p_matrix)

        n_iterations = 0
        curr = start
        curr_calib = calibration
        while True:
            evaluation = calc_cost_and_gradient(features, color, curr_calib, curr.p_matrix)
            curr = curr.evaluated(evaluation.cost, evaluation.gradient)
            logger.debug(f"    ------>     {n_iterations}: cost= {curr.cost:.10f}")

            search = back_tracking_line_search(curr, cost_fn, params)
            new = search.state

            if callback is not None:
                callback(
                    IterationData(
                        kind=IterationKind.ITERATION,
                        cycle=cycle,
                        iteration=n_iterations,
                        state=curr,
                        next_state=new,
                        calibration=curr_calib,
                        uv=evaluation.uv,
                        d_vals=evaluation.d_vals,
                        d_vals_x=evaluation.d_vals_x,
                        d_vals_y=evaluation.d_vals_y,
                        x_coeffs=evaluation.x_coeffs,
                        y_coeffs=evaluation.y_coeffs,
                        line_search=search,
                    )
                )

            norm = np.linalg.norm(new.p_matrix - curr.p_matrix)
            if norm < params.min_rgb_mat_delta:
                logger.debug(f"... |new - curr| = {norm:.3g} < {params.min_rgb_mat_delta}  -->  stopping")
                break

            delta = new.cost - curr.cost
            logger.debug(f"    delta= {delta:.10f}")
            if abs(delta) < params.min_cost_delta:
                logger.debug(f"... delta < {params.min_cost_delta}  -->  stopping")
                break

            n_iterations += 1
            if n_iterations >= params.max_optimization_iters:
                logger.debug("... exceeding max iterations  -->  stopping")
                break

            curr = new
            curr_calib = decompose(new.p_matrix, original)

        if not n_iterations:
            logger.info("Calibration not necessary; nothing done")
        else:
            logger.info(
                f"Calibration finished after {n_iterations} iterations; "
                f"original cost= {start.cost:.4f}  optimized cost= {new.cost:.4f}"
            )

        new_calib = decompose(new.p_matrix, original)
        start_calib = decompose(start.p_matrix, original)
        new_depth_k = depth_intrinsics_from_calibration(depth.intrinsics, new_calib, start_calib)

        restored = new_calib.with_focal_lengths(original.intrinsics.fx, original.intrinsics.fy)
        p_matrix = restored.p_matrix()
        state = OptimizationState(p_matrix=p_matrix, cost=calc_cost(features, color, restored, p_matrix))
        return _InnerResult(state=state, calibration=restored, depth_intrinsics=new_depth_k, n_iterations=n_iterations)

    def optimize(self, callback: IterationCallback | None = None, progress: bool = False) -> CalibrationResult:
        """
        Run the full calibration: projection refinement plus secondary-model cycles.

        Args:
            callback: Called synchronously once per inner iteration and once per cycle
            progress: Show a progress bar over the cycles

        Returns:
            CalibrationResult with the refined calibration and clipped secondary model

        Raises:
            MalformedInputError: If frames were not set
            InsufficientFeaturesError: If the snapshot has no usable edge vertices
        """
        depth, color = self._require_data()
        params = self.params
        if len(depth.features) == 0:
            raise InsufficientFeaturesError("No valid depth edges project into the color image")

        start_time = time.time()
        original = decompose(self._original_calibration.p_matrix(), self._original_calibration)
        features = depth.features

        p_orig = original.p_matrix()
        initial = OptimizationState(p_matrix=p_orig, cost=calc_cost(features, color, original, p_orig))

        cycle = 1
        best = self._optimize_p(initial, original, features, original, cycle, callback)
        n_iterations = best.n_iterations
        logger.debug(f"{n_iterations}: Cost = {best.state.cost:.10f}")

        best_features = features
        best_secondary = self._converter.original

        with tqdm(total=params.max_cycles, desc="Calibration cycles", disable=not progress) as bar:
            bar.update(1)
            while cycle < params.max_cycles:
                cycle += 1
                conversion = self._converter.convert(depth.intrinsics, best.depth_intrinsics, features)
                if callback is not None:
                    callback(
                        IterationData(
                            kind=IterationKind.CYCLE,
                            cycle=cycle,
                            state=best.state,
                            calibration=best.calibration,
                            secondary_candidate=conversion.candidate,
                            vertices=conversion.vertices,
                        )
                    )
                bar.update(1)

                cycle_features = features.with_fields(vertex=conversion.vertices)
                try:
                    candidate = self._optimize_p(
                        best.state, best.calibration, cycle_features, original, cycle, callback
                    )
                except InsufficientFeaturesError as err:
                    logger.warning(f"Cycle {cycle} discarded: {err}")
                    break

                if candidate.state.cost >= best.state.cost:
                    logger.info(
                        f"Cycle {cycle} did not improve cost ({candidate.state.cost:.4f} >= "
                        f"{best.state.cost:.4f}); keeping previous result"
                    )
                    break

                logger.info(f"Cycle {cycle} accepted; cost= {candidate.state.cost:.4f}")
                best = candidate
                best_features = cycle_features
                best_secondary = conversion.candidate

        logger.info(f"Calibration converged; cost= {best.state.cost:.4f}")

        depth.features = best_features
        self._final_secondary = self._converter.clip(best_secondary)
        self._final_calibration = best.calibration
        self._cost = best.state.cost

        return CalibrationResult(
            calibration=self._final_calibration,
            secondary_model=self._final_secondary,
            depth_intrinsics=best.depth_intrinsics,
            initial_cost=initial.cost,
            cost=self._cost,
            n_iterations=n_iterations,
            n_cycles=cycle,
            runtime_sec=time.time() - start_time,
        )

    # -------------------------
    # Output
    # -------------------------

    def get_calibration(self) -> CalibrationModel | None:
        return self._final_calibration

    def get_secondary_model(self) -> SecondaryCalibrationModel | None:
        return self._final_secondary

    def get_cost(self) -> float:
        return self._cost

    def write_data_to(self, directory: Path | str) -> bool:
        """
        Dump the session inputs for offline analysis.

        Failures are logged and never raised.

        Returns:
            True if every file was written
        """
        depth, color = self._require_data()
        logger.debug(f"... writing data to: {directory}")
        return io.write_data_to(
            directory,
            io.RecordedScene(
                color_frame=color.frame,
                prev_color_frame=color.prev_frame,
                ir_frame=self._ir_frame,
                depth_frame=depth.frame,
                calibration=self._original_calibration,
                depth_intrinsics=depth.intrinsics,
                depth_units=depth.depth_units,
                secondary_model=self._converter.original,
                metadata=self._converter.metadata,
            ),
        )
