"""
Secondary depth-correction model refinement.

A change of the depth focal lengths found by the projection optimization is
expressed as a change of the depth sensor's AC scaling. Candidates never move
further than ``max_scaling_step`` from the device-asserted model.
"""

import logging
from dataclasses import dataclass, replace

import numpy as np

from .data_structures import (
    CalibrationModel,
    EdgeFeatures,
    Intrinsics,
    SecondaryCalibrationMetadata,
    SecondaryCalibrationModel,
)
from .vertices import back_project

logger = logging.getLogger(__name__)


def _clip_value(original: float, new: float, max_step: float) -> float:
    if abs(new - original) > max_step:
        return float(original + np.sign(new - original) * max_step)
    return float(new)


def clip_scaling(
    original: SecondaryCalibrationModel, candidate: SecondaryCalibrationModel, max_scaling_step: float
) -> SecondaryCalibrationModel:
    """Limit the candidate's h/v scaling to ``original ± max_scaling_step``."""
    return replace(
        candidate,
        h_scale=_clip_value(original.h_scale, candidate.h_scale, max_scaling_step),
        v_scale=_clip_value(original.v_scale, candidate.v_scale, max_scaling_step),
    )


def depth_intrinsics_from_calibration(
    depth_intrinsics: Intrinsics, new_calibration: CalibrationModel, orig_calibration: CalibrationModel
) -> Intrinsics:
    """
    Move a color focal-length change onto the depth intrinsics.

    The color focal lengths are restored after optimization; the relative change
    is attributed to the depth sensor instead.
    """
    new_k = new_calibration.intrinsics
    orig_k = orig_calibration.intrinsics
    return replace(
        depth_intrinsics,
        fx=depth_intrinsics.fx / new_k.fx * orig_k.fx,
        fy=depth_intrinsics.fy / new_k.fy * orig_k.fy,
        coeffs=depth_intrinsics.coeffs.copy(),
    )


@dataclass(frozen=True, eq=False)
class SecondaryConversion:
    """
    One secondary-model candidate and the vertices it implies.

    Attributes:
        candidate: Clipped secondary model
        depth_intrinsics: Depth intrinsics effective under the candidate
        vertices: Recomputed vertices (N, 3)
    """

    candidate: SecondaryCalibrationModel
    depth_intrinsics: Intrinsics
    vertices: np.ndarray


class SecondaryModelConverter:
    """
    Converts refined depth intrinsics into secondary-model candidates.

    Args:
        original: Device-asserted secondary model
        metadata: Calibration info and registers accompanying the model
        max_scaling_step: Maximum deviation of a scale from the original
        max_sub_mm_z: Depth units per millimeter, for vertex recomputation
    """

    def __init__(
        self,
        original: SecondaryCalibrationModel,
        metadata: SecondaryCalibrationMetadata,
        max_scaling_step: float,
        max_sub_mm_z: float,
    ):
        self.original = original
        self.metadata = metadata
        self.max_scaling_step = max_scaling_step
        self.max_sub_mm_z = max_sub_mm_z

    def convert(self, orig_k: Intrinsics, new_k: Intrinsics, features: EdgeFeatures) -> SecondaryConversion:
        """
        Build a candidate from the depth intrinsics change and recompute vertices.

        Args:
            orig_k: Depth intrinsics the device reports
            new_k: Depth intrinsics implied by the optimized calibration
            features: Edge features whose vertices are recomputed

        Returns:
            SecondaryConversion with the clipped candidate and its vertices
        """
        unclipped = replace(
            self.original,
            h_scale=self.original.h_scale * orig_k.fx / new_k.fx,
            v_scale=self.original.v_scale * orig_k.fy / new_k.fy,
        )
        candidate = self.clip(unclipped)
        effective_k = replace(
            orig_k,
            fx=orig_k.fx * self.original.h_scale / candidate.h_scale,
            fy=orig_k.fy * self.original.v_scale / candidate.v_scale,
            coeffs=orig_k.coeffs.copy(),
        )
        logger.debug(
            f"AC scaling candidate: h {unclipped.h_scale:.6f} -> {candidate.h_scale:.6f}, "
            f"v {unclipped.v_scale:.6f} -> {candidate.v_scale:.6f}"
        )
        vertices = back_project(features, effective_k, self.max_sub_mm_z)
        return SecondaryConversion(candidate=candidate, depth_intrinsics=effective_k, vertices=vertices)

    def clip(self, candidate: SecondaryCalibrationModel) -> SecondaryCalibrationModel:
        return clip_scaling(self.original, candidate, self.max_scaling_step)
