"""
Prediction Engine: score new rows with a FittedModel on the link scale.

    ŷ = intercept + Σ β_j · x_j + Σ_g α_g[level_g]

Rows whose grouping levels were never seen during fitting either abort the
batch (on_unseen="raise") or are left out of the result and reported
(on_unseen="skip"). No default effect is ever substituted. The response
transform is not inverted here; use model.formula.invert_response().
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import structlog

from demand_sim.config import config
from demand_sim.data.panel import as_frame
from demand_sim.errors import DataError, PredictionError, UnseenCategoryError
from demand_sim.models.artifact import FittedModel

logger = structlog.get_logger()

ON_UNSEEN = ("raise", "skip")


@dataclass
class PredictionResult:
    predictions: pd.Series                  # link scale, excluded rows absent
    dropped: pd.Index                       # index labels of excluded rows
    errors: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=["row", "variable", "level"]))

    @property
    def n_dropped(self) -> int:
        return len(self.dropped)

    @property
    def complete(self) -> bool:
        return self.n_dropped == 0


class PredictionEngine:
    """Applies one fitted model to new data."""

    def __init__(self, model: FittedModel, on_unseen: str = "raise"):
        if on_unseen not in ON_UNSEEN:
            raise ValueError(f"on_unseen must be one of {ON_UNSEEN}, got '{on_unseen}'")
        if not model.has_group_effects:
            raise PredictionError(
                "Model has no recovered group effects; call model.with_group_effects(training_data) first"
            )
        self.model = model
        self.on_unseen = on_unseen

    def _unseen_rows(self, frame: pd.DataFrame) -> Dict[str, np.ndarray]:
        unseen = {}
        for g in self.model.group_vars:
            if g not in frame.columns:
                raise DataError(f"Grouping variable '{g}' not found in prediction data")
            mask = ~frame[g].isin(self.model.group_effects[g].index).to_numpy()
            if mask.any():
                unseen[g] = mask
        return unseen

    def predict_with_report(self, data) -> PredictionResult:
        model = self.model
        frame = as_frame(data)

        unseen = self._unseen_rows(frame)
        bad = np.zeros(len(frame), dtype=bool)
        error_rows: List[dict] = []
        for g, mask in unseen.items():
            levels = pd.unique(frame.loc[mask, g])
            if self.on_unseen == "raise":
                raise UnseenCategoryError(g, levels, int(mask.sum()))
            bad |= mask
            error_rows += [{"row": idx, "variable": g, "level": lvl}
                           for idx, lvl in zip(frame.index[mask], frame.loc[mask, g])]

        dropped = frame.index[bad]
        if bad.any():
            logger.warning("prediction_rows_skipped", n_rows=int(bad.sum()),
                           variables=sorted(unseen), response=model.response_name)
            frame = frame.loc[~bad]

        X = model.formula.design(frame)
        link = model.intercept + X @ model.coef.to_numpy()
        for g in model.group_vars:
            effects = model.group_effects[g]
            link = link + effects.reindex(frame[g]).to_numpy()

        predictions = pd.Series(link, index=frame.index, name=model.response_name)
        errors = pd.DataFrame(error_rows, columns=["row", "variable", "level"])
        return PredictionResult(predictions=predictions, dropped=dropped, errors=errors)

    def predict(self, data) -> pd.Series:
        return self.predict_with_report(data).predictions


def predict(model: FittedModel, data, on_unseen: Optional[str] = None) -> pd.Series:
    """predict(model, dataset) -> link-scale predictions (one per kept input row)."""
    on_unseen = on_unseen or config.simulation.on_unseen
    return PredictionEngine(model, on_unseen).predict(data)


def predict_quantity(model: FittedModel, data, on_unseen: Optional[str] = None) -> pd.Series:
    """Predictions mapped back to quantities through the formula's inverse response transform."""
    return model.formula.invert_response(predict(model, data, on_unseen))
