"""
Back-projection of validated sub-pixel edges into depth-camera vertices.
"""

import logging

import numpy as np

from .data_structures import CalibrationModel, EdgeFeatures, Intrinsics
from .projection import deproject, is_inside_image, project

logger = logging.getLogger(__name__)


def back_project(features: EdgeFeatures, depth_intrinsics: Intrinsics, max_sub_mm_z: float) -> np.ndarray:
    """
    Convert sub-pixel edges and their closest depth into 3D points.

    Computes ``K_depth^-1 @ (x, y, 1) * closest_depth / max_sub_mm_z`` with
    0-based pixel coordinates.

    Returns:
        Vertices (N, 3)
    """
    return deproject(features.subpixel_xy, features.closest_depth / max_sub_mm_z, depth_intrinsics)


def build_vertices(
    features: EdgeFeatures,
    depth_intrinsics: Intrinsics,
    calibration: CalibrationModel,
    max_sub_mm_z: float,
    constant_weights: float,
) -> EdgeFeatures:
    """
    Attach vertices, projections and weights, keeping edges that land inside the color image.

    Args:
        features: Depth-validated edge features
        depth_intrinsics: Depth camera intrinsics
        calibration: Current color calibration
        max_sub_mm_z: Depth units per millimeter of the raw depth samples
        constant_weights: Weight given to every vertex

    Returns:
        Features with ``vertex``, ``uv`` and ``weight`` set, filtered to in-bounds projections
    """
    vertices = back_project(features, depth_intrinsics, max_sub_mm_z)
    uv = project(vertices, calibration)
    inside = is_inside_image(uv, calibration.width, calibration.height)
    weights = np.full(len(features), float(constant_weights))

    res = features.with_fields(vertex=vertices, uv=uv, weight=weights).filter(inside)
    logger.debug(f"Vertices inside the color image: {len(res)} of {len(features)}")
    return res


def relevant_pixels_image(features: EdgeFeatures, width: int, height: int) -> np.ndarray:
    """Rasterize the sub-pixel edge locations, rounded to the nearest pixel, into a boolean image."""
    res = np.zeros((height, width), dtype=bool)
    if len(features) == 0:
        return res
    cols = np.clip(np.floor(features.subpixel_xy[:, 0] + 0.5).astype(np.intp), 0, width - 1)
    rows = np.clip(np.floor(features.subpixel_xy[:, 1] + 0.5).astype(np.intp), 0, height - 1)
    res[rows, cols] = True
    return res
