"""
Data structures for online depth-to-RGB calibration.

Provides type-safe containers for frame data, edge features, calibration models,
optimizer state and configuration.
"""

import math
from dataclasses import dataclass, field, fields, replace
from enum import IntEnum
from pathlib import Path
from typing import Any

import numpy as np


class Direction(IntEnum):
    """Quantized gradient direction, in 45 degree steps."""

    DEG_0 = 0
    DEG_45 = 1
    DEG_90 = 2
    DEG_135 = 3
    DEG_180 = 4
    DEG_225 = 5
    DEG_270 = 6
    DEG_315 = 7


class IterationKind(IntEnum):
    """Kind of diagnostic snapshot delivered to the optimizer callback."""

    ITERATION = 0
    CYCLE = 1


@dataclass
class Intrinsics:
    """
    Pinhole intrinsics with Brown-Conrady distortion.

    Attributes:
        width: Image width in pixels
        height: Image height in pixels
        fx: Horizontal focal length (pixels)
        fy: Vertical focal length (pixels)
        ppx: Principal point x (pixels)
        ppy: Principal point y (pixels)
        coeffs: Distortion coefficients (k1, k2, p1, p2, k3)
    """

    width: int
    height: int
    fx: float
    fy: float
    ppx: float
    ppy: float
    coeffs: np.ndarray = field(default_factory=lambda: np.zeros(5))

    def __post_init__(self):
        self.coeffs = np.asarray(self.coeffs, dtype=np.float64).reshape(5)

    def matrix(self) -> np.ndarray:
        """Return the 3x3 camera matrix K."""
        return np.array(
            [[self.fx, 0.0, self.ppx], [0.0, self.fy, self.ppy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def has_distortion(self) -> bool:
        return bool(np.any(self.coeffs != 0))


@dataclass
class CalibrationModel:
    """
    Color camera calibration relative to the depth camera.

    Attributes:
        intrinsics: Color camera intrinsics
        rotation: Depth-to-color rotation matrix (3x3)
        translation: Depth-to-color translation vector (3,), same units as vertices
    """

    intrinsics: Intrinsics
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=np.float64).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(3)

    @property
    def width(self) -> int:
        return self.intrinsics.width

    @property
    def height(self) -> int:
        return self.intrinsics.height

    def p_matrix(self) -> np.ndarray:
        """Return the 3x4 projection matrix K @ [R | t]."""
        rt = np.hstack([self.rotation, self.translation.reshape(3, 1)])
        return self.intrinsics.matrix() @ rt

    def with_focal_lengths(self, fx: float, fy: float) -> "CalibrationModel":
        """Return a copy with the given focal lengths and everything else unchanged."""
        return CalibrationModel(
            intrinsics=replace(self.intrinsics, fx=fx, fy=fy, coeffs=self.intrinsics.coeffs.copy()),
            rotation=self.rotation.copy(),
            translation=self.translation.copy(),
        )


@dataclass(frozen=True)
class SecondaryCalibrationModel:
    """
    Bounded non-linear depth correction (AC scaling and offsets).

    Attributes:
        h_scale: Horizontal field-of-view scaling
        v_scale: Vertical field-of-view scaling
        h_offset: Horizontal angular offset
        v_offset: Vertical angular offset
        rtd_offset: Round-trip-distance offset
        model: Correction model identifier
    """

    h_scale: float = 1.0
    v_scale: float = 1.0
    h_offset: float = 0.0
    v_offset: float = 0.0
    rtd_offset: float = 0.0
    model: int = 0

    def as_array(self) -> np.ndarray:
        return np.array(
            [self.h_scale, self.v_scale, self.h_offset, self.v_offset, self.rtd_offset, self.model],
            dtype=np.float64,
        )


@dataclass
class SecondaryCalibrationMetadata:
    """Calibration info and register values that accompany the device's secondary model."""

    info: np.ndarray = field(default_factory=lambda: np.zeros(0))
    registers: np.ndarray = field(default_factory=lambda: np.zeros(0))


@dataclass(frozen=True, eq=False)
class EdgeFeatures:
    """
    Per-edge-pixel attributes kept index-aligned as one record.

    Every set field has the same length; ``filter`` compacts all of them with a
    single mask so they can never drift out of alignment.

    Attributes:
        location_rc: Integer (row, col) of the edge pixel (N, 2)
        direction: Quantized gradient direction 0..7 (N,)
        section: Section-map id of the pixel (N,)
        local_edges: IR edge profile at taps -2..+1 along the direction (N, 4)
        is_suppressed: Local-maximum flag along the direction (N,)
        subpixel_xy: Sub-pixel (x, y) location (N, 2)
        grad_in_direction: Depth gradient projected on the direction (N,)
        closest_depth: Minimum depth value over the profile taps (N,)
        weight: Per-vertex weight (N,)
        vertex: Depth-camera 3D point (N, 3)
        uv: Projected color image coordinates (N, 2)
    """

    location_rc: np.ndarray
    direction: np.ndarray
    section: np.ndarray
    local_edges: np.ndarray | None = None
    is_suppressed: np.ndarray | None = None
    subpixel_xy: np.ndarray | None = None
    grad_in_direction: np.ndarray | None = None
    closest_depth: np.ndarray | None = None
    weight: np.ndarray | None = None
    vertex: np.ndarray | None = None
    uv: np.ndarray | None = None

    def __post_init__(self):
        lengths = {name: len(value) for name, value in self._set_fields()}
        if len(set(lengths.values())) > 1:
            raise ValueError(f"Edge feature fields are not aligned: {lengths}")

    def _set_fields(self) -> list[tuple[str, np.ndarray]]:
        return [(f.name, getattr(self, f.name)) for f in fields(self) if getattr(self, f.name) is not None]

    def __len__(self) -> int:
        return len(self.location_rc)

    @property
    def orientation(self) -> np.ndarray:
        """Direction folded onto 4 orientations (0 and 180 degrees are the same edge)."""
        return np.mod(self.direction, 4)

    def filter(self, mask: np.ndarray) -> "EdgeFeatures":
        """Return a new record keeping only the entries where ``mask`` is True."""
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (len(self),):
            raise ValueError(f"Mask shape {mask.shape} does not match {len(self)} features")
        return replace(self, **{name: value[mask] for name, value in self._set_fields()})

    def with_fields(self, **values: np.ndarray) -> "EdgeFeatures":
        """Return a new record with additional or replaced fields."""
        return replace(self, **values)


@dataclass(frozen=True, eq=False)
class IRFrameData:
    """
    IR frame and its edge analysis; only lives during feature extraction.

    Attributes:
        frame: Raw IR samples (H, W)
        gradient_x: Margin-zeroed x gradient
        gradient_y: Margin-zeroed y gradient
        edges: Gradient magnitude
        valid_mask: Pixels whose edge magnitude passes the IR threshold
        candidates: IR-valid pixels with direction and local edge profile
    """

    frame: np.ndarray
    gradient_x: np.ndarray
    gradient_y: np.ndarray
    edges: np.ndarray
    valid_mask: np.ndarray
    candidates: EdgeFeatures


@dataclass(eq=False)
class DepthFrameData:
    """
    Depth frame, its edges and the validated edge features of one session.

    Attributes:
        frame: Raw depth samples (H, W)
        intrinsics: Depth camera intrinsics
        depth_units: Depth unit scale of the raw samples
        gradient_x: Margin-zeroed x gradient
        gradient_y: Margin-zeroed y gradient
        edges: Gradient magnitude
        section_map: Section id per pixel
        features: Valid, in-bounds edge features with vertices
        relevant_pixels: Boolean image of pixels carrying a feature
    """

    frame: np.ndarray
    intrinsics: Intrinsics
    depth_units: float
    gradient_x: np.ndarray
    gradient_y: np.ndarray
    edges: np.ndarray
    section_map: np.ndarray
    features: EdgeFeatures
    relevant_pixels: np.ndarray

    @property
    def width(self) -> int:
        return self.frame.shape[1]

    @property
    def height(self) -> int:
        return self.frame.shape[0]


@dataclass(frozen=True, eq=False)
class ColorFrameData:
    """
    Current and previous color frames with the optimization target field.

    Attributes:
        frame: Current raw color frame
        prev_frame: Previous raw color frame
        luminance: Current luminance (H, W)
        prev_luminance: Previous luminance (H, W)
        edges: Current luminance edge magnitude
        prev_edges: Previous luminance edge magnitude
        edges_idt: Diffused edge-intensity field
        edges_idt_x: x gradient of the diffused field
        edges_idt_y: y gradient of the diffused field
    """

    frame: np.ndarray
    prev_frame: np.ndarray
    luminance: np.ndarray
    prev_luminance: np.ndarray
    edges: np.ndarray
    prev_edges: np.ndarray
    edges_idt: np.ndarray
    edges_idt_x: np.ndarray
    edges_idt_y: np.ndarray

    @property
    def width(self) -> int:
        return self.luminance.shape[1]

    @property
    def height(self) -> int:
        return self.luminance.shape[0]


@dataclass(frozen=True, eq=False)
class OptimizationState:
    """
    One point of the projection-matrix optimization.

    Attributes:
        p_matrix: Projection matrix parameters (3x4)
        cost: Alignment cost at ``p_matrix`` (lower is better)
        gradient: Steepest-descent direction of the cost at ``p_matrix`` (3x4), if evaluated
    """

    p_matrix: np.ndarray
    cost: float = math.nan
    gradient: np.ndarray | None = None

    def evaluated(self, cost: float, gradient: np.ndarray | None) -> "OptimizationState":
        return replace(self, cost=float(cost), gradient=gradient)


@dataclass(frozen=True, eq=False)
class LineSearchResult:
    """
    Outcome of one backtracking line search.

    Attributes:
        state: Accepted state, or the input state when no step was accepted
        accepted: Whether a step satisfied the sufficient-decrease condition
        step_size: Final step size tried
        iterations: Number of backtracking iterations
        grads_norm: Gradient divided by its matrix norm
        normalized_grads: ``grads_norm`` divided by the normalization matrix
        unit_grad: Unit search direction
        t: Directional derivative estimate used by the acceptance test
    """

    state: OptimizationState
    accepted: bool
    step_size: float
    iterations: int
    grads_norm: np.ndarray
    normalized_grads: np.ndarray
    unit_grad: np.ndarray
    t: float


@dataclass(eq=False)
class IterationData:
    """Diagnostic snapshot passed to the optimizer callback."""

    kind: IterationKind
    cycle: int
    iteration: int = 0
    state: OptimizationState | None = None
    next_state: OptimizationState | None = None
    calibration: CalibrationModel | None = None
    uv: np.ndarray | None = None
    d_vals: np.ndarray | None = None
    d_vals_x: np.ndarray | None = None
    d_vals_y: np.ndarray | None = None
    x_coeffs: np.ndarray | None = None
    y_coeffs: np.ndarray | None = None
    line_search: LineSearchResult | None = None
    secondary_candidate: SecondaryCalibrationModel | None = None
    vertices: np.ndarray | None = None


@dataclass
class CalibrationResult:
    """
    Final output of a calibration session.

    Attributes:
        calibration: Refined color calibration (original focal lengths)
        secondary_model: Secondary model clipped to the original's scaling envelope
        depth_intrinsics: Depth intrinsics implied by the accepted cycle
        initial_cost: Cost of the device calibration
        cost: Cost of the refined calibration
        n_iterations: Inner-loop iterations of the first cycle
        n_cycles: Outer cycles run, including the rejected one
        runtime_sec: Wall-clock optimization time
    """

    calibration: CalibrationModel
    secondary_model: SecondaryCalibrationModel
    depth_intrinsics: Intrinsics
    initial_cost: float
    cost: float
    n_iterations: int
    n_cycles: int
    runtime_sec: float = 0.0

    def summary(self) -> str:
        """Generate human-readable summary."""
        k = self.calibration.intrinsics
        return (
            f"Online Calibration Summary:\n"
            f"  Initial cost     : {self.initial_cost:.4f}\n"
            f"  Final cost       : {self.cost:.4f}\n"
            f"  Improvement      : {self.initial_cost - self.cost:.4f}\n"
            f"  Iterations       : {self.n_iterations}\n"
            f"  Cycles           : {self.n_cycles}\n"
            f"  Principal point  : ({k.ppx:.3f}, {k.ppy:.3f})\n"
            f"  Translation      : {np.array2string(self.calibration.translation, precision=4)}\n"
            f"  AC scaling (h, v): ({self.secondary_model.h_scale:.5f}, {self.secondary_model.v_scale:.5f})\n"
            f"  Runtime          : {self.runtime_sec:.2f} s\n"
        )


# Expected per-parameter gradient scale of the 3x4 projection matrix.
DEFAULT_NORMALIZE_MAT = (
    0.35369244,
    0.26619774,
    1.0092601,
    0.00067320449,
    0.35508525,
    0.26627505,
    1.011458,
    0.00067501375,
    414.20557,
    313.34106,
    1187.3459,
    0.79157025,
)


@dataclass(frozen=True)
class OptimizerParams:
    """Tunable parameters of feature extraction, optimization and scene validation."""

    # edge diffusion
    gamma: float = 0.9
    alpha: float = 1.0 / 3.0

    # edge validity
    grad_ir_threshold: float = 3.5
    grad_z_threshold: float = 25.0
    edge_thresh4_logic_lum: float = 0.1

    # vertices
    max_sub_mm_z: float = 4.0
    constant_weights: float = 1000.0

    # line search
    max_step_size: float = 1.0
    min_step_size: float = 0.00001
    control_param: float = 0.5
    max_back_track_iters: int = 50
    tau: float = 0.5
    normalize_mat: tuple[float, ...] = DEFAULT_NORMALIZE_MAT

    # inner / outer loop
    min_rgb_mat_delta: float = 0.00001
    min_cost_delta: float = 1.0
    max_optimization_iters: int = 50
    max_cycles: int = 10
    max_scaling_step: float = 0.02

    # edge distribution
    num_sections_x: int = 2
    num_sections_y: int = 2
    min_weighted_edge_per_section_depth: float = 50.0
    edge_distribution_min_max_ratio: float = 0.005

    # movement
    dilation_size: int = 1
    gauss_sigma: float = 1.0
    gauss_kernel_size: int = 5
    move_thresh_pix_val: float = 20.0
    move_threshold_pix_ratio: float = 3e-5

    @property
    def normalize_matrix(self) -> np.ndarray:
        return np.asarray(self.normalize_mat, dtype=np.float64).reshape(3, 4)


@dataclass
class CalibrationConfig:
    """
    Configuration container loaded from YAML.

    Wraps configuration dictionary with type hints for common access patterns.
    """

    config: dict[str, Any]

    @classmethod
    def from_yaml(cls, path: Path | str) -> "CalibrationConfig":
        """Load configuration from YAML file."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with path.open() as f:
            config = yaml.safe_load(f) or {}
        return cls(config=config)

    def get(self, key: str, default: Any = None) -> Any:
        """Get nested config value using dot notation (e.g., 'optimizer.gamma')."""
        keys = key.split(".")
        value = self.config
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k, default)
            else:
                return default
        return value

    def optimizer_params(self) -> OptimizerParams:
        """Build optimizer parameters from the 'optimizer' section, defaults for missing keys."""
        section = self.get("optimizer", {}) or {}
        known = {f.name for f in fields(OptimizerParams)}
        unknown = sorted(set(section) - known)
        if unknown:
            raise ValueError(f"Unknown optimizer parameters: {', '.join(unknown)}")
        values = dict(section)
        if "normalize_mat" in values:
            values["normalize_mat"] = tuple(float(v) for v in np.ravel(values["normalize_mat"]))
            if len(values["normalize_mat"]) != 12:
                raise ValueError("normalize_mat must have 12 values")
        return OptimizerParams(**values)

    @property
    def visualization_mode(self) -> str:
        """Get visualization mode ('show', 'save', or 'both')."""
        return self.get("visualization.mode", "save")
