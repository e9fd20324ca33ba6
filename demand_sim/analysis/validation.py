"""
Hold-out validation of fitted demand models.

The last weeks of the panel are held out. Each specification is fitted on the
training weeks, its group effects recovered, and it is then scored on the
held-out rows on both the link scale (log1p units) and the quantity scale.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import structlog

from demand_sim.config import config
from demand_sim.data.panel import PanelDataset, as_frame
from demand_sim.models.artifact import FittedModel
from demand_sim.models.estimator import estimate
from demand_sim.models.formula import Formula
from demand_sim.models.prediction import PredictionEngine

logger = structlog.get_logger()


@dataclass
class FitMetrics:
    rmse: float
    mae: float
    bias: float
    r_squared: float
    n: int


@dataclass
class ValidationResult:
    formula: str
    n_regressors: int
    r2_within: float
    train_link: FitMetrics
    holdout_link: FitMetrics
    holdout_quantity: FitMetrics
    n_skipped: int               # held-out rows with levels unseen in training


def compute_fit_metrics(actual, predicted) -> FitMetrics:
    """RMSE, MAE, mean residual and R² of predicted against actual."""
    actual = np.asarray(actual, dtype=float)
    predicted = np.asarray(predicted, dtype=float)
    if actual.shape != predicted.shape:
        raise ValueError(f"Shape mismatch: {actual.shape} vs {predicted.shape}")
    if actual.size == 0:
        return FitMetrics(np.nan, np.nan, np.nan, np.nan, 0)

    residuals = actual - predicted
    ss_res = np.sum(residuals ** 2)
    ss_tot = np.sum((actual - np.mean(actual)) ** 2)
    r2 = 1 - ss_res / ss_tot if ss_tot > 0 else 0.0

    return FitMetrics(
        rmse=float(np.sqrt(np.mean(residuals ** 2))),
        mae=float(np.mean(np.abs(residuals))),
        bias=float(np.mean(residuals)),
        r_squared=float(r2),
        n=int(actual.size),
    )


def train_validation_split(
    panel: PanelDataset, validation_fraction: Optional[float] = None,
) -> Tuple[PanelDataset, PanelDataset]:
    """Hold out the last `validation_fraction` of distinct periods."""
    frac = config.data.validation_fraction if validation_fraction is None else validation_fraction
    if not 0.0 < frac < 1.0:
        raise ValueError(f"validation_fraction must be in (0, 1), got {frac}")
    periods = np.sort(panel.column(panel.time_col).unique())
    n_valid = max(1, int(round(len(periods) * frac)))
    if n_valid >= len(periods):
        raise ValueError(f"Only {len(periods)} periods; cannot hold out {n_valid}")
    cutoff = periods[len(periods) - n_valid]
    return panel.split_by_time(cutoff)


def evaluate_model(model: FittedModel, data: PanelDataset) -> Tuple[FitMetrics, FitMetrics, int]:
    """
    Score a model (with group effects) on data, skipping rows with unseen levels.

    Returns link-scale metrics, quantity-scale metrics and the number of
    skipped rows.
    """
    frame = as_frame(data).reset_index(drop=True)
    report = PredictionEngine(model, on_unseen="skip").predict_with_report(frame)
    frame = frame.iloc[report.predictions.index.to_numpy()]

    actual_link = model.formula.response_values(frame)
    link = compute_fit_metrics(actual_link, report.predictions.to_numpy())

    actual_q = frame[model.formula.response.column].to_numpy(dtype=float)
    predicted_q = model.formula.invert_response(report.predictions).to_numpy()
    quantity = compute_fit_metrics(actual_q, predicted_q)
    return link, quantity, report.n_dropped


def validate_model(model: FittedModel, train: PanelDataset, holdout: PanelDataset) -> ValidationResult:
    model = model if model.has_group_effects else model.with_group_effects(train)
    train_link, _, _ = evaluate_model(model, train)
    holdout_link, holdout_quantity, n_skipped = evaluate_model(model, holdout)
    return ValidationResult(
        formula=str(model.formula),
        n_regressors=len(model.coef),
        r2_within=model.r2_within,
        train_link=train_link,
        holdout_link=holdout_link,
        holdout_quantity=holdout_quantity,
        n_skipped=n_skipped,
    )


def compare_specifications(
    formulas: Sequence[Union[Formula, str]],
    train: PanelDataset,
    holdout: PanelDataset,
    **options,
) -> Tuple[List[FittedModel], pd.DataFrame]:
    """
    Fit each specification on train, score it on holdout.

    Returns the fitted models (with group effects) and a comparison table.
    """
    models, rows = [], []
    for formula in formulas:
        model = estimate(formula, train, **options).with_group_effects(train)
        result = validate_model(model, train, holdout)
        models.append(model)
        rows.append({
            "formula": result.formula,
            "n_regressors": result.n_regressors,
            "r2_within": round(result.r2_within, 4),
            "train_rmse": round(result.train_link.rmse, 4),
            "holdout_rmse": round(result.holdout_link.rmse, 4),
            "holdout_r2": round(result.holdout_link.r_squared, 4),
            "holdout_qty_mae": round(result.holdout_quantity.mae, 2),
            "holdout_skipped": result.n_skipped,
        })
        logger.info("specification_validated", formula=result.formula,
                    holdout_rmse=round(result.holdout_link.rmse, 4), skipped=result.n_skipped)
    return models, pd.DataFrame(rows)
