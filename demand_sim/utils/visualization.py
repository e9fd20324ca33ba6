"""
Visualization for demand estimation and profit simulation.
"""

import os
from typing import Dict, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from demand_sim.analysis.simulation import profit_matrix

plt.rcParams["figure.dpi"] = 150
sns.set_theme(style="whitegrid")


def plot_profit_heatmap(grid: pd.DataFrame, output_dir="output", labels=("A", "B")) -> str:
    """Heatmap of profit relative to the baseline cell over the price-change grid."""
    os.makedirs(output_dir, exist_ok=True)
    matrix = profit_matrix(grid)
    fig, ax = plt.subplots(figsize=(8, 6.5))

    sns.heatmap(
        matrix, annot=True, fmt=".3f", cmap="RdYlGn", center=1.0,
        xticklabels=[f"{d:+.0%}" for d in matrix.columns],
        yticklabels=[f"{d:+.0%}" for d in matrix.index],
        mask=matrix.isna(), ax=ax, cbar_kws={"label": "Profit / baseline"},
    )
    ax.set_xlabel(f"Price change, brand {labels[1]}")
    ax.set_ylabel(f"Price change, brand {labels[0]}")
    ax.set_title("Counterfactual Joint-Pricing Profit\n(1.000 = current prices)", fontsize=13)
    plt.tight_layout()
    path = f"{output_dir}/profit_grid_heatmap.png"
    plt.savefig(path, bbox_inches="tight")
    plt.close()
    return path


def plot_coefficients(summaries: Dict[str, pd.DataFrame], output_dir="output",
                      truth: Optional[Dict[str, Dict[str, float]]] = None) -> str:
    """Coefficient estimates with 95% CI, one panel per product model."""
    os.makedirs(output_dir, exist_ok=True)
    n = len(summaries)
    fig, axes = plt.subplots(1, n, figsize=(6 * n, 4.5), squeeze=False)
    axes = axes.flatten()

    for ax, (product, summary) in zip(axes, summaries.items()):
        y = np.arange(len(summary))
        err = np.vstack([summary["coef"] - summary["ci_lower"], summary["ci_upper"] - summary["coef"]])
        ax.errorbar(summary["coef"], y, xerr=err, fmt="o", color="#2196F3", capsize=3, label="Estimate")
        if truth and product in truth:
            true_vals = [truth[product].get(term, np.nan) for term in summary.index]
            ax.scatter(true_vals, y, color="red", marker="*", s=90, zorder=5, label="True")
        ax.axvline(0, color="gray", linestyle="--", alpha=0.5)
        ax.set_yticks(y)
        ax.set_yticklabels(summary.index)
        ax.set_title(f"Demand model: {product}", fontsize=11)
        ax.legend(fontsize=8)
        ax.grid(True, alpha=0.3)

    plt.suptitle("Fixed-Effects Demand Coefficients (95% CI)", fontsize=13)
    plt.tight_layout()
    path = f"{output_dir}/coefficients.png"
    plt.savefig(path, bbox_inches="tight")
    plt.close()
    return path


def plot_holdout_fit(actual: pd.Series, predicted: pd.Series, product: str, output_dir="output") -> str:
    """Actual vs predicted log1p(quantity) on held-out rows."""
    os.makedirs(output_dir, exist_ok=True)
    fig, ax = plt.subplots(figsize=(7, 6))
    ax.scatter(actual, predicted, alpha=0.35, s=12, edgecolors="none", color="#4CAF50")
    lo = float(min(actual.min(), predicted.min()))
    hi = float(max(actual.max(), predicted.max()))
    ax.plot([lo, hi], [lo, hi], color="red", linewidth=1.5, label="45° line")
    ax.set_xlabel("Actual ln(1 + Q)")
    ax.set_ylabel("Predicted ln(1 + Q)")
    ax.set_title(f"Hold-out Fit — brand {product}", fontsize=13)
    ax.legend()
    ax.grid(True, alpha=0.3)
    plt.tight_layout()
    path = f"{output_dir}/holdout_fit_{product}.png"
    plt.savefig(path, bbox_inches="tight")
    plt.close()
    return path
