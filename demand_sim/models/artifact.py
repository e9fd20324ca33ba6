"""
Model Artifact: immutable record of a fitted fixed-effects demand model.

A FittedModel is created once per estimation call. Group effects are not part
of estimation; they are recovered in a separate pass with
`model.with_group_effects(training_data)`, which returns a new artifact.
"""

import dataclasses
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats
import structlog

from demand_sim.config import config
from demand_sim.data.panel import as_frame
from demand_sim.errors import DataError
from demand_sim.models.demeaning import demean, encode_groups
from demand_sim.models.formula import Formula

logger = structlog.get_logger()


@dataclass(frozen=True, eq=False)
class FittedModel:
    formula: Formula
    coef: pd.Series                         # one scalar per regressor, keyed by term name
    std_errors: pd.Series
    cov_type: str
    group_vars: Tuple[str, ...]
    levels: Dict[str, pd.Index]             # training levels per grouping variable
    group_means: Dict[str, pd.DataFrame]    # retained means removed during demeaning
    fitted_values: pd.Series                # in-sample link-scale fit, training index
    n_obs: int
    df_resid: float
    r2_within: float
    residual_se: float
    demean_iterations: int
    converged: bool
    n_singletons: int = 0
    cluster_var: Optional[str] = None
    n_clusters: Optional[int] = None
    # Demeaning settings used at fit time, reused when recovering group effects
    demean_tol: Optional[float] = None
    demean_max_iter: Optional[int] = None
    strict_convergence: Optional[bool] = None
    # Filled by with_group_effects()
    intercept: Optional[float] = None
    group_effects: Optional[Dict[str, pd.Series]] = None
    r2: Optional[float] = None

    @property
    def has_group_effects(self) -> bool:
        return self.intercept is not None

    @property
    def response_name(self) -> str:
        return self.formula.response.name

    def with_group_effects(self, data) -> "FittedModel":
        """
        Recover the grand mean and per-level fixed effects from the training rows.

        r = y − Xβ on the original (non-demeaned) variables; the intercept is
        mean(r) and the effects are the group means of r − mean(r), computed by
        the same alternating projections used for estimation so that
        intercept + Xβ + Σ effects reproduces the in-sample fit.
        """
        frame = as_frame(data)
        missing = [c for c in (*self.formula.columns, *self.group_vars) if c not in frame.columns]
        if missing:
            raise DataError(f"Data is missing columns needed to recover group effects: {sorted(set(missing))}")

        known = np.ones(len(frame), dtype=bool)
        for g in self.group_vars:
            known &= frame[g].isin(self.levels[g]).to_numpy()
        if not known.all():
            logger.warning("group_effects_rows_skipped", n_rows=int((~known).sum()),
                           reason="levels not present during estimation")
            frame = frame.loc[known]

        y = self.formula.response_values(frame)
        X = self.formula.design(frame)
        r = y - X @ self.coef.to_numpy()
        intercept = float(r.mean())

        groups = encode_groups(frame, self.group_vars)
        mc = config.model
        res = demean(
            r - intercept, groups, names=["effect"],
            tol=mc.demean_tol if self.demean_tol is None else self.demean_tol,
            max_iter=mc.demean_max_iter if self.demean_max_iter is None else self.demean_max_iter,
            strict=mc.strict_convergence if self.strict_convergence is None else self.strict_convergence,
        )
        effects = {name: means["effect"].rename(name) for name, means in res.group_means.items()}

        resid = res.demeaned
        sst = float(np.sum((y - y.mean()) ** 2))
        r2 = 1.0 - float(np.sum(resid ** 2)) / sst if sst > 0 else np.nan

        logger.info("group_effects_recovered", intercept=round(intercept, 4),
                    levels={k: len(v) for k, v in effects.items()}, r2=round(r2, 4))
        return dataclasses.replace(self, intercept=intercept, group_effects=effects, r2=r2)

    def summary(self, alpha: float = 0.05) -> pd.DataFrame:
        """Coefficient table: estimate, SE, t, p-value, CI."""
        t = self.coef / self.std_errors
        p = 2 * stats.t.sf(np.abs(t), self.df_resid)
        crit = stats.t.ppf(1 - alpha / 2, self.df_resid)
        return pd.DataFrame({
            "coef": self.coef,
            "std_error": self.std_errors,
            "t_statistic": t,
            "p_value": p,
            "ci_lower": self.coef - crit * self.std_errors,
            "ci_upper": self.coef + crit * self.std_errors,
        })

    def __repr__(self) -> str:
        return (f"FittedModel({self.formula}, n_obs={self.n_obs}, cov_type={self.cov_type}, "
                f"r2_within={self.r2_within:.4f}, group_effects={self.has_group_effects})")
