"""
Shared synthetic scenes for the calibration tests.

A box at 1000 mm in front of a background at 2000 mm, seen by a depth/IR
camera and a color camera with identical intrinsics and identity extrinsics.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

from online_calibration.data_structures import CalibrationModel, Intrinsics
from online_calibration.io import RecordedScene

WIDTH = 160
HEIGHT = 120
BOX = (30, 90, 40, 120)  # row0, row1, col0, col1


def rotation_z(degrees: float) -> np.ndarray:
    a = np.radians(degrees)
    return np.array([[np.cos(a), -np.sin(a), 0.0], [np.sin(a), np.cos(a), 0.0], [0.0, 0.0, 1.0]])


def rotation_angle(rotation: np.ndarray) -> float:
    """Rotation angle of a 3x3 rotation matrix in degrees."""
    c = np.clip((np.trace(rotation) - 1) / 2, -1.0, 1.0)
    return float(np.degrees(np.arccos(c)))


def box_image(inside: float, outside: float, dtype=np.uint8) -> np.ndarray:
    img = np.full((HEIGHT, WIDTH), outside, dtype=np.float64)
    r0, r1, c0, c1 = BOX
    img[r0:r1, c0:c1] = inside
    return img.astype(dtype)


@pytest.fixture
def intrinsics():
    return Intrinsics(width=WIDTH, height=HEIGHT, fx=100.0, fy=100.0, ppx=80.0, ppy=60.0)


@pytest.fixture
def true_calibration(intrinsics):
    return CalibrationModel(intrinsics=intrinsics)


@pytest.fixture
def rolled_calibration(intrinsics):
    """Color calibration off by a 1.5 degree roll about the optical axis."""
    return CalibrationModel(intrinsics=intrinsics, rotation=rotation_z(1.5))


@pytest.fixture
def scene(intrinsics, rolled_calibration):
    color = box_image(200, 50)
    return RecordedScene(
        color_frame=color,
        prev_color_frame=color.copy(),
        ir_frame=box_image(200, 50),
        depth_frame=box_image(4000, 8000, dtype=np.uint16),
        calibration=rolled_calibration,
        depth_intrinsics=intrinsics,
        depth_units=0.00025,
    )


def load_scene(optimizer, scene):
    """Feed a recorded scene into an optimizer session."""
    optimizer.set_color_data(scene.color_frame, scene.prev_color_frame, scene.calibration)
    optimizer.set_ir_data(scene.ir_frame)
    optimizer.set_depth_data(
        scene.depth_frame, scene.depth_intrinsics, scene.secondary_model, scene.metadata, scene.depth_units
    )
    return optimizer
