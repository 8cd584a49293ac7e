"""
Scene validity checks run before trusting a calibration snapshot.

- Movement between the two color frames invalidates the edge correspondence.
- Edges concentrated in a few image sections constrain the model poorly.
"""

import logging

import cv2
import numpy as np

from .data_structures import ColorFrameData, EdgeFeatures, OptimizerParams
from .gradients import logic_edges

logger = logging.getLogger(__name__)


def is_movement_in_images(color: ColorFrameData, params: OptimizerParams) -> bool:
    """
    Detect movement between the previous and current color frames.

    Current edges that are not near any previous edge are suspects; a suspect
    moved if the blurred luminance changed by more than ``move_thresh_pix_val``.

    Args:
        color: Color frame data with both frames
        params: Optimizer parameters

    Returns:
        True if more than ``move_threshold_pix_ratio`` of the image moved
    """
    curr_logic = logic_edges(color.edges, params.edge_thresh4_logic_lum)
    prev_logic = logic_edges(color.prev_edges, params.edge_thresh4_logic_lum)

    size = 2 * params.dilation_size + 1
    kernel = np.ones((size, size), np.uint8)
    dilated_prev = cv2.dilate(prev_logic.astype(np.uint8), kernel) > 0
    suspects = curr_logic & ~dilated_prev

    ksize = (params.gauss_kernel_size, params.gauss_kernel_size)
    curr_blur = cv2.GaussianBlur(color.luminance, ksize, params.gauss_sigma)
    prev_blur = cv2.GaussianBlur(color.prev_luminance, ksize, params.gauss_sigma)
    diff = np.abs(curr_blur - prev_blur)

    n_moved = int(np.count_nonzero(diff[suspects] > params.move_thresh_pix_val))
    limit = params.move_threshold_pix_ratio * color.width * color.height
    logger.debug(f"Movement suspects: {int(np.count_nonzero(suspects))}, moved: {n_moved}, limit: {limit:.1f}")
    return n_moved > limit


def sum_per_section(section: np.ndarray, weights: np.ndarray, num_sections: int) -> np.ndarray:
    """Sum of weights falling into each section id."""
    return np.bincount(np.asarray(section, dtype=np.intp), weights=weights, minlength=num_sections)[:num_sections]


def is_edge_distributed(features: EdgeFeatures, params: OptimizerParams) -> bool:
    """
    Check that weighted edges are spread over all image sections.

    Returns:
        True if every section carries at least ``min_weighted_edge_per_section_depth``
        and the min/max ratio reaches ``edge_distribution_min_max_ratio``
    """
    num_sections = params.num_sections_x * params.num_sections_y
    sums = sum_per_section(features.section, features.weight, num_sections)
    max_sum = float(sums.max()) if len(sums) else 0.0
    min_sum = float(sums.min()) if len(sums) else 0.0
    if max_sum <= 0:
        return False
    ratio = min_sum / max_sum
    logger.debug(f"Weighted edges per section: {np.array2string(sums, precision=1)} (min/max {ratio:.4f})")
    return min_sum > params.min_weighted_edge_per_section_depth and ratio >= params.edge_distribution_min_max_ratio
