"""
Bilinear image sampling with a "no data" sentinel.
"""

import numpy as np

NO_DATA = np.nan


def bilinear_interp(image: np.ndarray, uv: np.ndarray) -> np.ndarray:
    """
    Sample an image at sub-pixel coordinates.

    Args:
        image: 2D field (H, W)
        uv: Coordinates (N, 2) as (x, y)

    Returns:
        Sampled values (N,); ``NO_DATA`` where the coordinate falls outside
        [0, W-1] x [0, H-1] or is not finite
    """
    image = np.asarray(image, dtype=np.float64)
    height, width = image.shape
    uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
    x = uv[:, 0]
    y = uv[:, 1]

    with np.errstate(invalid="ignore"):
        inside = (x >= 0) & (x <= width - 1) & (y >= 0) & (y <= height - 1)

    res = np.full(len(uv), NO_DATA)
    if not np.any(inside):
        return res

    xi = x[inside]
    yi = y[inside]
    x0 = np.floor(xi).astype(np.intp)
    y0 = np.floor(yi).astype(np.intp)
    x1 = np.minimum(x0 + 1, width - 1)
    y1 = np.minimum(y0 + 1, height - 1)
    dx = xi - x0
    dy = yi - y0

    top = image[y0, x0] * (1 - dx) + image[y0, x1] * dx
    bottom = image[y1, x0] * (1 - dx) + image[y1, x1] * dx
    res[inside] = top * (1 - dy) + bottom * dy
    return res


def is_no_data(values: np.ndarray) -> np.ndarray:
    return np.isnan(values)
