"""
Command-line runner: calibrate a scene dumped by ``Optimizer.write_data_to``.

Example:
    online-calibration dumps/scene_01 --config configs/default.yaml --output result.yaml --progress
"""

import argparse
import logging
import sys
from pathlib import Path

from .data_structures import CalibrationConfig, IterationData, OptimizerParams
from .exceptions import OnlineCalibrationError
from .io import load_data_from, save_calibration_result
from .optimizer import Optimizer
from .projection import project
from .visualization import _get_output_mode, plot_cost_history, plot_projected_edges

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(description="Online depth-to-RGB calibration over a dumped scene")
    p.add_argument("data_dir", help="Directory written by Optimizer.write_data_to")
    p.add_argument("--config", help="YAML config with an 'optimizer' section")
    p.add_argument("--output", help="Write the result to this file (.yaml or .json)")
    p.add_argument("--plot-dir", help="Save cost history and projected edge plots here")
    p.add_argument("--progress", action="store_true", help="Show a progress bar over the cycles")
    p.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return p.parse_args(argv)


def run(args: argparse.Namespace) -> None:
    """Run one calibration session as described by ``args``."""
    config = CalibrationConfig.from_yaml(args.config) if args.config else None
    params = config.optimizer_params() if config else OptimizerParams()

    scene = load_data_from(args.data_dir)
    opt = Optimizer(params)
    opt.set_color_data(scene.color_frame, scene.prev_color_frame, scene.calibration)
    opt.set_ir_data(scene.ir_frame)
    opt.set_depth_data(
        scene.depth_frame, scene.depth_intrinsics, scene.secondary_model, scene.metadata, scene.depth_units
    )

    if not opt.is_scene_valid():
        logger.warning("Scene did not pass validation; calibrating anyway")

    history: list[IterationData] = []
    initial_uv = project(opt.depth_data.features.vertex, scene.calibration)
    result = opt.optimize(callback=history.append, progress=args.progress)
    print(result.summary())

    if args.output:
        output = Path(args.output)
        fmt = "json" if output.suffix.lower() == ".json" else "yaml"
        save_calibration_result(result, output, fmt=fmt)

    if args.plot_dir:
        plot_dir = Path(args.plot_dir)
        mode = _get_output_mode(config.visualization_mode if config else None, None)
        plot_cost_history(history, output_path=plot_dir / "cost_history.png", mode=mode)
        plot_projected_edges(
            opt.color_data.edges,
            project(opt.depth_data.features.vertex, result.calibration),
            uv_initial=initial_uv,
            output_path=plot_dir / "projected_edges.png",
            mode=mode,
        )


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        run(args)
    except (OnlineCalibrationError, FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
