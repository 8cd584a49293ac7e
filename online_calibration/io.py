"""
I/O utilities for calibration sessions.

- Diagnostic dump of a session's inputs as raw buffers and float64 records,
  and loading such a dump back for offline runs.
- Saving and loading calibration results in YAML or JSON.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import yaml

from .data_structures import (
    CalibrationModel,
    CalibrationResult,
    Intrinsics,
    SecondaryCalibrationMetadata,
    SecondaryCalibrationModel,
)
from .exceptions import MalformedInputError

logger = logging.getLogger(__name__)

RECORD_DTYPE = np.dtype("<f8")
COLOR_DTYPE = np.dtype(np.uint8)
IR_DTYPE = np.dtype(np.uint8)
DEPTH_DTYPE = np.dtype("<u2")


@dataclass(eq=False)
class RecordedScene:
    """
    Everything a session needs, as written by ``write_data_to``.

    Attributes:
        color_frame: Current color frame (H, W) or (H, W, C)
        prev_color_frame: Previous color frame, same shape
        ir_frame: IR frame (h, w)
        depth_frame: Depth frame (h, w)
        calibration: Device color calibration
        depth_intrinsics: Depth camera intrinsics
        depth_units: Depth unit scale
        secondary_model: Device secondary model
        metadata: Secondary model info and registers
    """

    color_frame: np.ndarray
    prev_color_frame: np.ndarray
    ir_frame: np.ndarray
    depth_frame: np.ndarray
    calibration: CalibrationModel
    depth_intrinsics: Intrinsics
    depth_units: float = 0.001
    secondary_model: SecondaryCalibrationModel = field(default_factory=SecondaryCalibrationModel)
    metadata: SecondaryCalibrationMetadata = field(default_factory=SecondaryCalibrationMetadata)


def _numpy_to_python(obj):
    """Convert numpy types to Python native types for JSON/YAML serialization."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_numpy_to_python(item) for item in obj]
    return obj


# -------------------------
# Binary records
# -------------------------


def _intrinsics_record(k: Intrinsics) -> np.ndarray:
    return np.concatenate([[k.width, k.height, k.fx, k.fy, k.ppx, k.ppy], k.coeffs])


def _intrinsics_from_record(values: np.ndarray) -> Intrinsics:
    return Intrinsics(
        width=int(values[0]),
        height=int(values[1]),
        fx=float(values[2]),
        fy=float(values[3]),
        ppx=float(values[4]),
        ppy=float(values[5]),
        coeffs=values[6:11],
    )


def calibration_record(calibration: CalibrationModel) -> np.ndarray:
    """``rgb.calib`` layout: intrinsics, distortion, rotation (row-major), translation."""
    return np.concatenate(
        [_intrinsics_record(calibration.intrinsics), calibration.rotation.ravel(), calibration.translation]
    ).astype(RECORD_DTYPE)


def calibration_from_record(values: np.ndarray) -> CalibrationModel:
    values = np.asarray(values, dtype=np.float64)
    if values.size != 23:
        raise MalformedInputError(f"Color calibration record must have 23 values, got {values.size}")
    return CalibrationModel(
        intrinsics=_intrinsics_from_record(values[:11]), rotation=values[11:20], translation=values[20:23]
    )


def camera_params_record(
    depth_intrinsics: Intrinsics, depth_units: float, calibration: CalibrationModel
) -> np.ndarray:
    """Interoperability record combining depth and color camera parameters."""
    k = calibration.intrinsics
    return np.concatenate(
        [
            [depth_intrinsics.width, depth_intrinsics.height, depth_units],
            depth_intrinsics.matrix().ravel(),
            [k.width, k.height],
            k.matrix().ravel(),
            k.coeffs,
            calibration.rotation.ravel(),
            calibration.translation,
        ]
    ).astype(RECORD_DTYPE)


def _read_record(path: Path) -> np.ndarray:
    if not path.exists():
        raise MalformedInputError(f"Dump file not found: {path}")
    return np.fromfile(path, dtype=RECORD_DTYPE)


def _read_raw(path: Path, dtype: np.dtype, height: int, width: int) -> np.ndarray:
    if not path.exists():
        raise MalformedInputError(f"Dump file not found: {path}")
    data = np.fromfile(path, dtype=dtype)
    pixels = height * width
    if data.size == 0 or data.size % pixels:
        raise MalformedInputError(f"{path.name} holds {data.size} samples, not a multiple of {width}x{height}")
    channels = data.size // pixels
    if channels == 1:
        return data.reshape(height, width)
    return data.reshape(height, width, channels)


# -------------------------
# Diagnostic dump
# -------------------------


def write_data_to(directory: Path | str, scene: RecordedScene) -> bool:
    """
    Write a session's inputs to ``directory``.

    Raw frames are stored as ``rgb.raw``, ``rgb_prev.raw``, ``ir.raw`` and
    ``depth.raw``; parameters as little-endian float64 records.

    Returns:
        True on success; failures are logged and reported as False
    """
    directory = Path(directory)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        np.ascontiguousarray(scene.color_frame, dtype=COLOR_DTYPE).tofile(directory / "rgb.raw")
        np.ascontiguousarray(scene.prev_color_frame, dtype=COLOR_DTYPE).tofile(directory / "rgb_prev.raw")
        np.ascontiguousarray(scene.ir_frame, dtype=IR_DTYPE).tofile(directory / "ir.raw")
        np.ascontiguousarray(scene.depth_frame, dtype=DEPTH_DTYPE).tofile(directory / "depth.raw")

        scene.secondary_model.as_array().astype(RECORD_DTYPE).tofile(directory / "dsm.params")
        calibration_record(scene.calibration).tofile(directory / "rgb.calib")
        _intrinsics_record(scene.depth_intrinsics).astype(RECORD_DTYPE).tofile(directory / "depth.intrinsics")
        np.array([scene.depth_units], dtype=RECORD_DTYPE).tofile(directory / "depth.units")
        np.asarray(scene.metadata.info, dtype=RECORD_DTYPE).tofile(directory / "cal.info")
        np.asarray(scene.metadata.registers, dtype=RECORD_DTYPE).tofile(directory / "cal.registers")
        camera_params_record(scene.depth_intrinsics, scene.depth_units, scene.calibration).tofile(
            directory / "camera_params"
        )
    except OSError as err:
        logger.error(f"Failed to write calibration data to {directory}: {err}")
        return False

    logger.info(f"Calibration data written to {directory}")
    return True


def load_data_from(directory: Path | str) -> RecordedScene:
    """
    Load a scene written by ``write_data_to``.

    Raises:
        MalformedInputError: If a file is missing or inconsistent
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise MalformedInputError(f"Dump directory not found: {directory}")

    calibration = calibration_from_record(_read_record(directory / "rgb.calib"))
    depth_record = _read_record(directory / "depth.intrinsics")
    if depth_record.size != 11:
        raise MalformedInputError(f"Depth intrinsics record must have 11 values, got {depth_record.size}")
    depth_intrinsics = _intrinsics_from_record(depth_record)

    dsm = _read_record(directory / "dsm.params")
    if dsm.size != 6:
        raise MalformedInputError(f"Secondary model record must have 6 values, got {dsm.size}")
    secondary_model = SecondaryCalibrationModel(
        h_scale=float(dsm[0]),
        v_scale=float(dsm[1]),
        h_offset=float(dsm[2]),
        v_offset=float(dsm[3]),
        rtd_offset=float(dsm[4]),
        model=int(dsm[5]),
    )
    units = _read_record(directory / "depth.units")
    metadata = SecondaryCalibrationMetadata(
        info=_read_record(directory / "cal.info"), registers=_read_record(directory / "cal.registers")
    )

    h, w = calibration.height, calibration.width
    dh, dw = depth_intrinsics.height, depth_intrinsics.width
    scene = RecordedScene(
        color_frame=_read_raw(directory / "rgb.raw", COLOR_DTYPE, h, w),
        prev_color_frame=_read_raw(directory / "rgb_prev.raw", COLOR_DTYPE, h, w),
        ir_frame=_read_raw(directory / "ir.raw", IR_DTYPE, dh, dw),
        depth_frame=_read_raw(directory / "depth.raw", DEPTH_DTYPE, dh, dw),
        calibration=calibration,
        depth_intrinsics=depth_intrinsics,
        depth_units=float(units[0]) if units.size else 0.001,
        secondary_model=secondary_model,
        metadata=metadata,
    )
    logger.info(f"Calibration data loaded from {directory}")
    return scene


# -------------------------
# Calibration results
# -------------------------


def _intrinsics_to_dict(k: Intrinsics) -> dict:
    return {
        "width": k.width,
        "height": k.height,
        "fx": k.fx,
        "fy": k.fy,
        "ppx": k.ppx,
        "ppy": k.ppy,
        "coeffs": k.coeffs,
    }


def save_calibration_result(result: CalibrationResult, output_path: Path | str, fmt: str = "yaml") -> None:
    """
    Save a calibration result to file.

    Args:
        result: Result of ``Optimizer.optimize``
        output_path: Path to output file
        fmt: 'yaml' or 'json'

    Raises:
        ValueError: If format is not supported
    """
    if fmt not in ("yaml", "json"):
        raise ValueError(f"Unsupported format: {fmt}. Use 'yaml' or 'json'.")

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    dsm = result.secondary_model
    data = _numpy_to_python(
        {
            "color": {
                **_intrinsics_to_dict(result.calibration.intrinsics),
                "rotation": result.calibration.rotation,
                "translation": result.calibration.translation,
            },
            "depth": _intrinsics_to_dict(result.depth_intrinsics),
            "secondary_model": {
                "h_scale": dsm.h_scale,
                "v_scale": dsm.v_scale,
                "h_offset": dsm.h_offset,
                "v_offset": dsm.v_offset,
                "rtd_offset": dsm.rtd_offset,
                "model": dsm.model,
            },
            "optimization": {
                "initial_cost": result.initial_cost,
                "cost": result.cost,
                "n_iterations": result.n_iterations,
                "n_cycles": result.n_cycles,
                "runtime_sec": result.runtime_sec,
            },
        }
    )

    with output_path.open("w") as f:
        if fmt == "yaml":
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        else:
            json.dump(data, f, indent=2)

    logger.info(f"Calibration saved to {output_path}")


def load_calibration_result(input_path: Path | str, fmt: str | None = None) -> CalibrationResult:
    """
    Load a calibration result from file.

    Args:
        input_path: Path to result file
        fmt: 'yaml' or 'json' (auto-detected from extension if None)

    Returns:
        CalibrationResult with the stored values
    """
    input_path = Path(input_path)
    if not input_path.exists():
        raise FileNotFoundError(f"Calibration file not found: {input_path}")

    if fmt is None:
        ext = input_path.suffix.lower()
        if ext in (".yaml", ".yml"):
            fmt = "yaml"
        elif ext == ".json":
            fmt = "json"
        else:
            raise ValueError(f"Cannot determine format from extension: {ext}")

    with input_path.open() as f:
        if fmt == "yaml":
            data = yaml.safe_load(f)
        elif fmt == "json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported format: {fmt}")

    color = dict(data["color"])
    rotation = color.pop("rotation")
    translation = color.pop("translation")
    opt = data.get("optimization", {})

    result = CalibrationResult(
        calibration=CalibrationModel(intrinsics=Intrinsics(**color), rotation=rotation, translation=translation),
        secondary_model=SecondaryCalibrationModel(**data["secondary_model"]),
        depth_intrinsics=Intrinsics(**data["depth"]),
        initial_cost=float(opt.get("initial_cost", float("nan"))),
        cost=float(opt.get("cost", float("nan"))),
        n_iterations=int(opt.get("n_iterations", 0)),
        n_cycles=int(opt.get("n_cycles", 0)),
        runtime_sec=float(opt.get("runtime_sec", 0.0)),
    )
    logger.info(f"Calibration loaded from {input_path}")
    return result
