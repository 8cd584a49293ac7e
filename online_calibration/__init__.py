"""
Online depth-to-RGB calibration package.

This package provides modular tools for:
- Edge extraction from depth, IR and color frames
- Edge-alignment cost and projection-matrix optimization
- Secondary depth-model refinement and scene validation
- Visualization and result persistence
"""

from .cost import calc_cost, calc_cost_and_gradient
from .data_structures import (
    CalibrationConfig,
    CalibrationModel,
    CalibrationResult,
    Direction,
    EdgeFeatures,
    Intrinsics,
    IterationData,
    IterationKind,
    OptimizationState,
    OptimizerParams,
    SecondaryCalibrationMetadata,
    SecondaryCalibrationModel,
)
from .diffusion import diffuse_edges
from .edges import extract_ir_candidates, quantize_direction, validate_depth_edges
from .exceptions import InsufficientFeaturesError, MalformedInputError, OnlineCalibrationError
from .gradients import sobel_edges
from .io import (
    RecordedScene,
    load_calibration_result,
    load_data_from,
    save_calibration_result,
    write_data_to,
)
from .line_search import back_tracking_line_search
from .optimizer import Optimizer
from .projection import decompose, deproject, project
from .secondary_model import SecondaryModelConverter, clip_scaling
from .validation import is_edge_distributed, is_movement_in_images
from .visualization import plot_cost_history, plot_projected_edges

__all__ = [
    # Enums and data structures
    "CalibrationConfig",
    "CalibrationModel",
    "CalibrationResult",
    "Direction",
    "EdgeFeatures",
    "Intrinsics",
    "IterationData",
    "IterationKind",
    "OptimizationState",
    "OptimizerParams",
    "SecondaryCalibrationMetadata",
    "SecondaryCalibrationModel",
    # Errors
    "InsufficientFeaturesError",
    "MalformedInputError",
    "OnlineCalibrationError",
    # Edges
    "diffuse_edges",
    "extract_ir_candidates",
    "quantize_direction",
    "sobel_edges",
    "validate_depth_edges",
    # Geometry
    "decompose",
    "deproject",
    "project",
    # Optimization
    "Optimizer",
    "back_tracking_line_search",
    "calc_cost",
    "calc_cost_and_gradient",
    "SecondaryModelConverter",
    "clip_scaling",
    # Scene validation
    "is_edge_distributed",
    "is_movement_in_images",
    # Visualization
    "plot_cost_history",
    "plot_projected_edges",
    # I/O
    "RecordedScene",
    "load_calibration_result",
    "load_data_from",
    "save_calibration_result",
    "write_data_to",
]
