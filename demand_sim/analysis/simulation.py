"""
Counterfactual Joint-Pricing Profit Simulation.

For every (Δ_A, Δ_B) in deltas × deltas, scale both brands' observed prices,
hold every other regressor at its baseline value, re-score demand with each
brand's fitted model and aggregate

    π(Δ_A, Δ_B) = Σ_obs Σ_i Q̂_i · (P_i (1 + Δ_i)(1 − m_r) − c_i)

where m_r is the retail margin and c_i = (1 − m_g)(1 − m_r) · mean(P_i) is the
manufacturer's unit cost. Cells are independent and run on a thread pool;
each worker returns its own record, merged in grid order at the end.
"""

import itertools
import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import structlog

from demand_sim.config import config
from demand_sim.data.panel import as_frame
from demand_sim.errors import DemandModelError, GridConfigError
from demand_sim.models.artifact import FittedModel
from demand_sim.models.prediction import PredictionEngine

logger = structlog.get_logger()


@dataclass
class GridCell:
    delta_a: float
    delta_b: float
    profit: float
    profit_ratio: float
    quantity_a: float
    quantity_b: float
    profit_a: float
    profit_b: float
    n_scored: int
    status: str                  # "ok" or "failed"
    error: Optional[str] = None


def unit_cost(prices, gross_margin: float, retail_margin: float) -> float:
    """Manufacturer unit cost: (1 − gross margin)(1 − retail margin) · mean baseline price."""
    prices = np.asarray(prices, dtype=float)
    if prices.size == 0:
        raise GridConfigError("Cannot compute unit cost from an empty price column")
    return float((1 - gross_margin) * (1 - retail_margin) * prices.mean())


def validate_deltas(deltas: Sequence[float]) -> Tuple[float, ...]:
    deltas = tuple(float(d) for d in deltas)
    if not deltas:
        raise GridConfigError("Delta set is empty")
    if not all(math.isfinite(d) for d in deltas):
        raise GridConfigError(f"Delta set has non-finite values: {deltas}")
    if len(set(deltas)) != len(deltas):
        raise GridConfigError(f"Delta set has duplicates: {deltas}")
    if 0.0 not in deltas:
        raise GridConfigError("Delta set must contain 0.0 (baseline cell for profit ratios)")
    if min(deltas) <= -1.0:
        raise GridConfigError(f"Deltas must be > -1 to keep prices positive, got {min(deltas)}")
    return deltas


class ProfitSimulator:
    """Evaluates the profit grid for two brands sold by the same firm."""

    def __init__(
        self,
        model_a: FittedModel,
        model_b: FittedModel,
        data,
        price_col_a: str,
        price_col_b: str,
        cost_a: float,
        cost_b: float,
        retail_margin: Optional[float] = None,
        max_workers: Optional[int] = None,
        on_unseen: Optional[str] = None,
    ):
        sc = config.simulation
        self.retail_margin = sc.retail_margin if retail_margin is None else retail_margin
        self.max_workers = max_workers or sc.max_workers
        self.on_unseen = on_unseen or sc.on_unseen
        # Row labels become positions so that scored rows map back to prices unambiguously
        self.baseline = as_frame(data).reset_index(drop=True)

        if not 0.0 <= self.retail_margin < 1.0:
            raise GridConfigError(f"Retail margin must be in [0, 1), got {self.retail_margin}")
        for col in (price_col_a, price_col_b):
            if col not in self.baseline.columns:
                raise GridConfigError(f"Price column '{col}' not in baseline data")
        if price_col_a == price_col_b:
            raise GridConfigError("Products A and B need distinct price columns")
        if not (math.isfinite(cost_a) and math.isfinite(cost_b)):
            raise GridConfigError(f"Unit costs must be finite, got {cost_a}, {cost_b}")

        self.price_col_a = price_col_a
        self.price_col_b = price_col_b
        self.cost_a = float(cost_a)
        self.cost_b = float(cost_b)
        self.engine_a = PredictionEngine(model_a, self.on_unseen)
        self.engine_b = PredictionEngine(model_b, self.on_unseen)

    def _brand_profit(self, engine: PredictionEngine, frame: pd.DataFrame, price_col: str,
                      cost: float) -> Tuple[float, float, int]:
        link = engine.predict(frame)
        quantity = engine.model.formula.invert_response(link.to_numpy())
        kept = link.index.to_numpy()
        price = frame[price_col].to_numpy(dtype=float)[kept]
        margin = price * (1 - self.retail_margin) - cost
        return float((quantity * margin).sum()), float(quantity.sum()), len(quantity)

    def evaluate_cell(self, delta_a: float, delta_b: float) -> GridCell:
        """Score one price combination. Prediction or data failures are recorded on the cell."""
        frame = self.baseline.copy()
        frame[self.price_col_a] = frame[self.price_col_a] * (1 + delta_a)
        frame[self.price_col_b] = frame[self.price_col_b] * (1 + delta_b)
        try:
            profit_a, q_a, n_a = self._brand_profit(self.engine_a, frame, self.price_col_a, self.cost_a)
            profit_b, q_b, n_b = self._brand_profit(self.engine_b, frame, self.price_col_b, self.cost_b)
        except DemandModelError as exc:
            logger.warning("grid_cell_failed", delta_a=delta_a, delta_b=delta_b, error=str(exc))
            return GridCell(delta_a, delta_b, np.nan, np.nan, np.nan, np.nan, np.nan, np.nan,
                            0, "failed", f"{type(exc).__name__}: {exc}")
        return GridCell(delta_a, delta_b, profit_a + profit_b, np.nan, q_a, q_b,
                        profit_a, profit_b, min(n_a, n_b), "ok")

    def run(self, deltas: Optional[Sequence[float]] = None) -> pd.DataFrame:
        deltas = validate_deltas(config.simulation.price_deltas if deltas is None else deltas)
        combos = list(itertools.product(deltas, deltas))
        cells: List[Optional[GridCell]] = [None] * len(combos)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.evaluate_cell, da, db): slot
                for slot, (da, db) in enumerate(combos)
            }
            for future in as_completed(futures):
                cells[futures[future]] = future.result()

        grid = pd.DataFrame([asdict(c) for c in cells])
        baseline = grid.loc[(grid["delta_a"] == 0.0) & (grid["delta_b"] == 0.0), "profit"].iloc[0]
        if np.isfinite(baseline) and baseline != 0:
            grid["profit_ratio"] = grid["profit"] / baseline
        else:
            logger.warning("baseline_profit_unavailable", baseline=baseline)
            grid["profit_ratio"] = np.nan

        n_failed = int((grid["status"] == "failed").sum())
        logger.info("profit_grid_simulated", cells=len(grid), failed=n_failed,
                    baseline_profit=round(float(baseline), 2) if np.isfinite(baseline) else None)
        return grid


def simulate(
    model_a: FittedModel,
    model_b: FittedModel,
    data,
    price_col_a: str,
    price_col_b: str,
    deltas: Sequence[float],
    cost_a: float,
    cost_b: float,
    retail_margin: Optional[float] = None,
    max_workers: Optional[int] = None,
    on_unseen: Optional[str] = None,
) -> pd.DataFrame:
    """Profit grid with one row per (delta_a, delta_b), in grid order."""
    deltas = validate_deltas(deltas)
    simulator = ProfitSimulator(
        model_a, model_b, data, price_col_a, price_col_b, cost_a, cost_b,
        retail_margin=retail_margin, max_workers=max_workers, on_unseen=on_unseen,
    )
    return simulator.run(deltas)


def profit_matrix(grid: pd.DataFrame, value: str = "profit_ratio") -> pd.DataFrame:
    """Pivot the grid to delta_a (rows) × delta_b (columns)."""
    return grid.pivot(index="delta_a", columns="delta_b", values=value)


def best_cell(grid: pd.DataFrame) -> pd.Series:
    ok = grid[grid["status"] == "ok"]
    if ok.empty:
        raise GridConfigError("No successfully evaluated cells in the grid")
    return ok.loc[ok["profit"].idxmax()]


def print_profit_table(grid: pd.DataFrame):
    """Print the profit ratio grid and the best price combination."""
    matrix = profit_matrix(grid)
    print(f"\n{'='*78}")
    print(f"  COUNTERFACTUAL PROFIT GRID (profit / baseline profit)")
    print(f"{'='*78}")
    corner = "ΔA / ΔB"
    header = "".join(f"{db:>+9.0%}" for db in matrix.columns)
    print(f"  {corner:<9}{header}")
    print(f"  {'-'*(9 + 9 * len(matrix.columns))}")
    for da, row in matrix.iterrows():
        cells = "".join(f"{v:>9.4f}" if np.isfinite(v) else f"{'failed':>9}" for v in row)
        print(f"  {da:<+9.0%}{cells}")

    best = best_cell(grid)
    print(f"  {'-'*(9 + 9 * len(matrix.columns))}")
    print(f"  Best: ΔA={best['delta_a']:+.0%} ΔB={best['delta_b']:+.0%} "
          f"profit=${best['profit']:,.0f} ({best['profit_ratio'] - 1:+.2%} vs baseline)")
    print(f"{'='*78}\n")
