"""
Image derivative kernels and luminance helpers.

Sobel-style gradients are computed by direct correlation; the outermost row and
column of every output are left at zero because the 3x3 window does not fit
there.
"""

import cv2
import numpy as np

from .exceptions import MalformedInputError

SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64) / 8.0
SOBEL_Y = np.array([[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=np.float64) / 8.0


def _correlate(image: np.ndarray, kernel: np.ndarray) -> np.ndarray:
    res = cv2.filter2D(np.asarray(image, dtype=np.float64), cv2.CV_64F, kernel, borderType=cv2.BORDER_CONSTANT)
    res[0, :] = 0
    res[-1, :] = 0
    res[:, 0] = 0
    res[:, -1] = 0
    return res


def gradient_x(image: np.ndarray) -> np.ndarray:
    """Horizontal derivative (responds to vertical edges)."""
    return _correlate(image, SOBEL_X)


def gradient_y(image: np.ndarray) -> np.ndarray:
    """Vertical derivative (responds to horizontal edges)."""
    return _correlate(image, SOBEL_Y)


def zero_margin(gradient: np.ndarray) -> np.ndarray:
    """Return a copy with the second and second-to-last rows and columns set to zero."""
    res = np.array(gradient, dtype=np.float64, copy=True)
    res[1, :] = 0
    res[-2, :] = 0
    res[:, 1] = 0
    res[:, -2] = 0
    return res


def edge_magnitude(grad_x: np.ndarray, grad_y: np.ndarray) -> np.ndarray:
    return np.sqrt(grad_x**2 + grad_y**2)


def sobel_edges(image: np.ndarray, margin: bool = False) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Compute gradients and edge magnitude of an image.

    Args:
        image: 2D sample array of any numeric type
        margin: Zero the second and second-to-last rows/columns of the gradients
            before taking the magnitude

    Returns:
        Tuple of (gradient_x, gradient_y, edges)
    """
    gx = gradient_x(image)
    gy = gradient_y(image)
    if margin:
        gx = zero_margin(gx)
        gy = zero_margin(gy)
    return gx, gy, edge_magnitude(gx, gy)


def luminance(frame: np.ndarray) -> np.ndarray:
    """
    Extract luminance from a color frame.

    Supports 2D luminance frames, YUY2 frames laid out as (H, W, 2) uint8 and
    BGR frames (H, W, 3).
    """
    frame = np.asarray(frame)
    if frame.ndim == 2:
        return frame.astype(np.float64)
    if frame.ndim == 3 and frame.shape[2] == 2:
        return cv2.cvtColor(frame.astype(np.uint8), cv2.COLOR_YUV2GRAY_YUY2).astype(np.float64)
    if frame.ndim == 3 and frame.shape[2] == 3:
        return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY).astype(np.float64)
    raise MalformedInputError(f"Unsupported color frame layout: shape {frame.shape}")


def logic_edges(edges: np.ndarray, threshold_ratio: float) -> np.ndarray:
    """Binary edge map: magnitudes above ``threshold_ratio`` of the maximum."""
    thresh = np.max(edges) * threshold_ratio
    return np.abs(edges) > thresh
