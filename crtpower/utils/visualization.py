"""
Visualization utilities for cluster-randomized trial power analysis.

This module provides plotting functions for cluster-count sweeps.
"""

from typing import List

import numpy as np

__all__ = []


def _create_power_plot(
    cluster_counts: List[int],
    powers: List[float],
    lower: List[float],
    upper: List[float],
    first_achieved: int,
    target_power: float,
    title: str,
    xlabel: str = "Clusters per Arm",
    show: bool = True,
):
    """Create a cluster-count vs. power line plot with an achievement marker.

    Draws the power curve with its Wald CI band, a horizontal dashed line at
    the target power, and annotates the first count that reaches the target.

    Args:
        cluster_counts: X-axis values.
        powers: Power (proportion) per cluster count.
        lower: Lower CI bound per count.
        upper: Upper CI bound per count.
        first_achieved: First count achieving target power (``-1`` if not).
        target_power: Target power proportion (drawn as reference line).
        title: Plot title.
        xlabel: X-axis label.
        show: Call ``plt.show()`` after drawing.

    Returns:
        The matplotlib ``Figure``.

    Raises:
        ImportError: If ``matplotlib`` is not installed.
    """
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        raise ImportError("matplotlib required for plotting: pip install matplotlib") from None

    fig, ax = plt.subplots(figsize=(10, 6))
    color = plt.get_cmap("Set1")(0)

    ax.fill_between(cluster_counts, lower, upper, color=color, alpha=0.15, label="Wald CI")
    ax.plot(cluster_counts, powers, "o-", color=color, label="Estimated power", linewidth=2, markersize=4)

    if first_achieved > 0:
        achieved_power = powers[cluster_counts.index(first_achieved)]
        ax.plot(
            first_achieved,
            achieved_power,
            "s",
            color=color,
            markersize=10,
            markerfacecolor="white",
            markeredgewidth=2,
            markeredgecolor=color,
        )
        ax.annotate(
            f"K={first_achieved}",
            xy=(first_achieved, achieved_power),
            xytext=(10, -20),
            textcoords="offset points",
            bbox={"boxstyle": "round,pad=0.3", "facecolor": color, "alpha": 0.3},
            arrowprops={"arrowstyle": "->", "color": color},
        )

    ax.axhline(
        y=target_power,
        color="red",
        linestyle="--",
        linewidth=2,
        label=f"Target Power ({target_power:.2f})",
    )

    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.set_xlabel(xlabel, fontsize=12)
    ax.set_ylabel("Power", fontsize=12)
    ax.grid(True, alpha=0.3)
    ax.legend(loc="lower right")
    ax.set_ylim(0, 1.05)
    ax.set_xticks(np.asarray(cluster_counts))

    plt.tight_layout()
    if show:
        plt.show()
    return fig
