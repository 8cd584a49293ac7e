"""
Visualization utilities for calibration sessions.

Provides plotting functions with support for both display and file saving modes.
"""

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from .data_structures import IterationData, IterationKind


def _get_output_mode(config_mode: str | None, override_mode: str | None) -> str:
    """Determine output mode from config and override."""
    if override_mode is not None:
        return override_mode
    if config_mode is not None:
        return config_mode
    return "save"


def _handle_figure_output(fig: plt.Figure, output_path: Path | None, mode: str) -> None:
    """Handle figure display or saving based on mode."""
    if mode in ("save", "both") and output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=150, bbox_inches="tight")
    if mode in ("show", "both"):
        plt.show()
    else:
        plt.close(fig)


def plot_projected_edges(
    color_edges: np.ndarray,
    uv: np.ndarray,
    uv_initial: np.ndarray | None = None,
    title: str = "Projected depth edges",
    output_path: Path | None = None,
    mode: str = "save",
    figsize: tuple[float, float] = (10, 7),
) -> None:
    """
    Overlay projected depth-edge vertices on the color edge image.

    Args:
        color_edges: Color edge magnitude or diffused field (H, W)
        uv: Projected vertices under the refined calibration (N, 2)
        uv_initial: Projected vertices under the initial calibration (N, 2), optional
        title: Plot title
        output_path: Path to save figure (if mode includes 'save')
        mode: 'show', 'save', or 'both'
        figsize: Figure size
    """
    fig, ax = plt.subplots(figsize=figsize)
    ax.imshow(color_edges, cmap="gray")
    if uv_initial is not None and len(uv_initial):
        ax.scatter(uv_initial[:, 0], uv_initial[:, 1], s=2, c="tab:red", alpha=0.6, label="initial")
    if len(uv):
        ax.scatter(uv[:, 0], uv[:, 1], s=2, c="tab:green", alpha=0.8, label="optimized")
    ax.set_title(f"{title} ({len(uv)} vertices)")
    ax.set_xlim(0, color_edges.shape[1] - 1)
    ax.set_ylim(color_edges.shape[0] - 1, 0)
    ax.axis("off")
    if uv_initial is not None:
        ax.legend(loc="upper right", markerscale=4)
    plt.tight_layout()

    _handle_figure_output(fig, output_path, mode)


def plot_cost_history(
    history: list[IterationData],
    output_path: Path | None = None,
    mode: str = "save",
    figsize: tuple[float, float] = (8, 4),
) -> None:
    """
    Plot the cost per inner iteration collected from the optimizer callback.

    Cycle boundaries are drawn as vertical lines.

    Args:
        history: IterationData records in callback order
        output_path: Path to save figure (if mode includes 'save')
        mode: 'show', 'save', or 'both'
        figsize: Figure size
    """
    costs = []
    boundaries = []
    for item in history:
        if item.kind == IterationKind.CYCLE:
            boundaries.append(len(costs))
        elif item.state is not None:
            costs.append(item.state.cost)

    fig, ax = plt.subplots(figsize=figsize)
    ax.plot(np.arange(len(costs)), costs, marker="o", markersize=3)
    for b in boundaries:
        ax.axvline(b - 0.5, color="gray", linestyle="--", linewidth=0.8)
    ax.set_xlabel("Iteration")
    ax.set_ylabel("Cost")
    ax.set_title("Calibration cost")
    ax.grid(True, alpha=0.3)
    plt.tight_layout()

    _handle_figure_output(fig, output_path, mode)
