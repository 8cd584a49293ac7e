"""
Sub-pixel edge extraction and validation.

Pipeline (strictly ordered):
1. threshold the IR edge magnitude and gather the passing pixels,
2. quantize their gradient direction to 8 bins,
3. sample a 4-tap IR edge profile along the direction,
4. flag local maxima along the direction,
5. refine the location with a parabolic fit,
6. validate against the depth gradient and depth values,
7. compact every attribute with the combined mask.
"""

import logging

import numpy as np

from .data_structures import EdgeFeatures, IRFrameData
from .gradients import sobel_edges

logger = logging.getLogger(__name__)


def _frozen(values, dtype) -> np.ndarray:
    arr = np.array(values, dtype=dtype)
    arr.setflags(write=False)
    return arr


# Bin centers in degrees; index is the Direction value
DIRECTION_ANGLES = _frozen(np.arange(0, 360, 45), np.float64)

# (drow, dcol) pixel step of each direction; y grows downwards
DIRECTION_VECTORS = _frozen(
    [[0, 1], [1, 1], [1, 0], [1, -1], [0, -1], [-1, -1], [-1, 0], [-1, 1]],
    np.intp,
)

# Profile taps along the direction: two pixels against it, one along it
PROFILE_OFFSETS = _frozen([-2, -1, 0, 1], np.intp)


def direction_degrees(grad_x: np.ndarray, grad_y: np.ndarray) -> np.ndarray:
    """Gradient direction in degrees, mapped to [0, 360)."""
    angle = np.degrees(np.arctan2(grad_y, grad_x))
    angle = np.where(angle < 0, angle + 360, angle)
    return np.mod(angle, 360)


def quantize_direction(grad_x: np.ndarray, grad_y: np.ndarray) -> np.ndarray:
    """
    Quantize gradient directions to the nearest of the 8 bin angles.

    The nearest bin is found by plain absolute difference over 0..315; on a tie
    the lower bin wins.
    """
    angle = np.atleast_1d(direction_degrees(grad_x, grad_y))
    return np.argmin(np.abs(angle[:, None] - DIRECTION_ANGLES[None, :]), axis=1)


def sample_at(image: np.ndarray, rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
    """
    Read ``image[rows, cols]`` at integer grid points.

    Indices outside [0, H-1] x [0, W-1] are clamped to the nearest border pixel.
    """
    height, width = image.shape
    rows = np.clip(rows, 0, height - 1)
    cols = np.clip(cols, 0, width - 1)
    return image[rows, cols]


def local_profiles(
    image: np.ndarray,
    location_rc: np.ndarray,
    direction: np.ndarray,
    offsets: np.ndarray = PROFILE_OFFSETS,
) -> np.ndarray:
    """
    Sample ``image`` at ``location + k * step(direction)`` for every tap k.

    Returns:
        Array (N, len(offsets))
    """
    step = DIRECTION_VECTORS[direction]
    rows = location_rc[:, 0:1] + step[:, 0:1] * offsets[None, :]
    cols = location_rc[:, 1:2] + step[:, 1:2] * offsets[None, :]
    return sample_at(image, rows, cols)


def is_local_maximum(profiles: np.ndarray) -> np.ndarray:
    """Center tap is not smaller than its two neighbors."""
    return (profiles[:, 2] >= profiles[:, 1]) & (profiles[:, 2] >= profiles[:, 3])


def parabolic_offsets(profiles: np.ndarray) -> np.ndarray:
    """
    Sub-pixel offset of the parabola through taps -1, 0, +1.

    The offset is 0 where the three taps are collinear.
    """
    denom = profiles[:, 3] + profiles[:, 1] - 2 * profiles[:, 2]
    num = -0.5 * (profiles[:, 3] - profiles[:, 1])
    safe = np.where(denom == 0, 1.0, denom)
    return np.where(denom == 0, 0.0, num / safe)


def section_per_pixel(width: int, height: int, sections_x: int, sections_y: int) -> np.ndarray:
    """Map every pixel to a coarse section id, numbered column-major across sections."""
    col_section = (np.arange(width) * sections_x) // width
    row_section = (np.arange(height) * sections_y) // height
    return (col_section[None, :] * sections_y + row_section[:, None]).astype(np.intp)


def extract_ir_candidates(ir_frame: np.ndarray, section_map: np.ndarray, grad_ir_threshold: float) -> IRFrameData:
    """
    Find IR edge pixels and analyze their local profile.

    Args:
        ir_frame: IR samples (H, W)
        section_map: Section id per pixel (H, W)
        grad_ir_threshold: Minimum IR edge magnitude

    Returns:
        IRFrameData whose candidates carry direction, profile and suppression flag
    """
    gx, gy, edges = sobel_edges(ir_frame, margin=True)
    valid_mask = edges > grad_ir_threshold

    rows, cols = np.nonzero(valid_mask)
    location_rc = np.column_stack([rows, cols]).astype(np.intp)
    direction = quantize_direction(gx[rows, cols], gy[rows, cols])
    profiles = local_profiles(edges, location_rc, direction)

    candidates = EdgeFeatures(
        location_rc=location_rc,
        direction=direction,
        section=section_map[rows, cols],
        local_edges=profiles,
        is_suppressed=is_local_maximum(profiles),
    )
    logger.debug(f"IR edge candidates: {len(candidates)} of {valid_mask.size} pixels")
    return IRFrameData(
        frame=np.asarray(ir_frame),
        gradient_x=gx,
        gradient_y=gy,
        edges=edges,
        valid_mask=valid_mask,
        candidates=candidates,
    )


def gradient_in_direction(
    depth_gx: np.ndarray, depth_gy: np.ndarray, location_rc: np.ndarray, direction: np.ndarray
) -> np.ndarray:
    """Absolute depth gradient, averaged over taps -1 and 0, projected on the unit direction."""
    center_taps = PROFILE_OFFSETS[1:3]
    mean_gx = local_profiles(depth_gx, location_rc, direction, center_taps).mean(axis=1)
    mean_gy = local_profiles(depth_gy, location_rc, direction, center_taps).mean(axis=1)
    step = DIRECTION_VECTORS[direction].astype(np.float64)
    step /= np.linalg.norm(step, axis=1, keepdims=True)
    return np.abs(mean_gy * step[:, 0] + mean_gx * step[:, 1])


def validate_depth_edges(
    candidates: EdgeFeatures,
    depth_frame: np.ndarray,
    depth_gx: np.ndarray,
    depth_gy: np.ndarray,
    grad_z_threshold: float,
) -> EdgeFeatures:
    """
    Refine IR candidates to sub-pixel edges and keep those confirmed by depth.

    Args:
        candidates: Output of ``extract_ir_candidates``
        depth_frame: Depth samples (H, W)
        depth_gx: Margin-zeroed depth x gradient
        depth_gy: Margin-zeroed depth y gradient
        grad_z_threshold: Minimum depth gradient along the edge direction

    Returns:
        Filtered features with ``subpixel_xy``, ``grad_in_direction`` and
        ``closest_depth`` set
    """
    location_rc = candidates.location_rc
    direction = candidates.direction

    frac_step = parabolic_offsets(candidates.local_edges)
    subpixel_rc = location_rc + frac_step[:, None] * DIRECTION_VECTORS[direction]
    subpixel_xy = subpixel_rc[:, ::-1].astype(np.float64)

    grad_in_dir = gradient_in_direction(depth_gx, depth_gy, location_rc, direction)
    depth_values = local_profiles(np.asarray(depth_frame, dtype=np.float64), location_rc, direction)
    closest = depth_values.min(axis=1)

    valid = (grad_in_dir > grad_z_threshold) & candidates.is_suppressed & (closest > 0)
    features = candidates.with_fields(
        subpixel_xy=subpixel_xy,
        grad_in_direction=grad_in_dir,
        closest_depth=closest,
    ).filter(valid)
    logger.debug(f"Depth-validated edges: {len(features)} of {len(candidates)} candidates")
    return features
