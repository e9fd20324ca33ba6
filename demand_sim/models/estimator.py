"""
Fixed-Effects Linear Estimator.

Estimates log-linear demand models with absorbed categorical effects:
    ln(1 + Q_it) = Σ β_j · x_j,it + Σ_g α_g[level_g(i, t)] + u_it

1. Within-transform y and X over the absorbed grouping variables (no dummies)
2. SVD rank check on the demeaned design; collinear columns are reported
3. OLS on the demeaned variables (statsmodels), robust or clustered SEs with
   residual degrees of freedom net of the absorbed levels
"""

from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
import structlog

from demand_sim.config import config
from demand_sim.data.panel import as_frame
from demand_sim.errors import DataError, EstimationError, RankDeficiencyError
from demand_sim.models.artifact import FittedModel
from demand_sim.models.demeaning import GroupCodes, demean, encode_groups, find_singletons
from demand_sim.models.formula import Formula

logger = structlog.get_logger()

COV_TYPES = ("nonrobust", "HC1", "cluster")


def check_rank(
    X_dm: np.ndarray, X_raw: np.ndarray, names: Sequence[str], rank_tol: Optional[float] = None,
) -> None:
    """
    Raise RankDeficiencyError if the demeaned design lacks full column rank.

    Columns wiped out by the fixed effects (constant within groups) are
    reported directly; otherwise the implicated columns are those that load on
    the null space of the column-normalised design.
    """
    rank_tol = config.model.rank_tol if rank_tol is None else rank_tol
    n, k = X_dm.shape
    names = list(names)

    raw_norm = np.linalg.norm(X_raw, axis=0)
    raw_norm[raw_norm == 0] = 1.0
    dm_norm = np.linalg.norm(X_dm, axis=0)
    absorbed = dm_norm <= 1e-9 * raw_norm
    if absorbed.any():
        cols = [nm for nm, a in zip(names, absorbed) if a]
        raise RankDeficiencyError(cols, rank=int(k - absorbed.sum()), n_columns=k)

    Z = X_dm / dm_norm
    _, s, vt = np.linalg.svd(Z, full_matrices=False)
    tol = s.max() * max(rank_tol, max(n, k) * np.finfo(float).eps)
    rank = int((s > tol).sum())
    if rank < k:
        null_space = vt[rank:]
        loading = np.abs(null_space).max(axis=0)
        cols = [nm for nm, w in zip(names, loading) if w > 1e-6]
        raise RankDeficiencyError(cols, rank=rank, n_columns=k)


def absorbed_dof(groups: Sequence[GroupCodes]) -> int:
    """Parameters absorbed by the fixed effects (one shared normalisation per extra dimension)."""
    if not groups:
        return 1    # grand mean
    return sum(g.n_levels for g in groups) - (len(groups) - 1)


class FixedEffectsOLS:
    """
    OLS with high-dimensional fixed effects absorbed by iterative demeaning.

    Defaults come from config.model; explicit arguments override them.
    """

    def __init__(
        self,
        cov_type: Optional[str] = None,
        cluster_var: Optional[str] = None,
        tol: Optional[float] = None,
        max_iter: Optional[int] = None,
        strict_convergence: Optional[bool] = None,
        drop_singletons: Optional[bool] = None,
        rank_tol: Optional[float] = None,
    ):
        mc = config.model
        self.cov_type = cov_type or mc.cov_type
        if self.cov_type not in COV_TYPES:
            raise ValueError(f"cov_type must be one of {COV_TYPES}, got '{self.cov_type}'")
        self.cluster_var = (cluster_var or mc.cluster_var) if self.cov_type == "cluster" else None
        if self.cov_type == "cluster" and not self.cluster_var:
            raise ValueError("cov_type='cluster' needs a cluster_var")
        self.tol = mc.demean_tol if tol is None else tol
        self.max_iter = mc.demean_max_iter if max_iter is None else max_iter
        self.strict_convergence = mc.strict_convergence if strict_convergence is None else strict_convergence
        self.drop_singletons = mc.drop_singletons if drop_singletons is None else drop_singletons
        self.rank_tol = mc.rank_tol if rank_tol is None else rank_tol

    def fit(self, formula: Union[Formula, str], data) -> FittedModel:
        if isinstance(formula, str):
            formula = Formula.parse(formula)
        frame = as_frame(data)

        missing = [c for c in formula.columns if c not in frame.columns]
        if self.cluster_var and self.cluster_var not in frame.columns:
            missing.append(self.cluster_var)
        if missing:
            raise DataError(f"Data is missing columns required by the model: {missing}")

        y = formula.response_values(frame)
        X = formula.design(frame)
        groups = encode_groups(frame, formula.absorb)

        n_singletons = 0
        if self.drop_singletons and groups:
            singletons = find_singletons(groups)
            n_singletons = int(singletons.sum())
            if n_singletons:
                frame = frame.loc[~singletons]
                y, X = y[~singletons], X[~singletons]
                groups = encode_groups(frame, formula.absorb)
                logger.info("singletons_dropped", n_rows=n_singletons)

        n, k = X.shape
        df_resid = n - k - absorbed_dof(groups)
        if df_resid <= 0:
            raise EstimationError(
                f"Insufficient degrees of freedom: {n} observations for {k} regressors "
                f"and {absorbed_dof(groups)} absorbed parameters"
            )

        names = list(formula.names)
        res = demean(
            np.column_stack([y, X]), groups, names=[formula.response.name] + names,
            tol=self.tol, max_iter=self.max_iter, strict=self.strict_convergence,
        )
        y_dm = res.demeaned[:, 0]
        X_dm = res.demeaned[:, 1:]

        check_rank(X_dm, X, names, self.rank_tol)

        model = sm.OLS(y_dm, X_dm, hasconst=False)
        model.df_resid = df_resid
        n_clusters = None
        if self.cov_type == "cluster":
            cluster_codes, cluster_levels = pd.factorize(frame[self.cluster_var])
            n_clusters = len(cluster_levels)
            ols = model.fit(cov_type="cluster", cov_kwds={"groups": cluster_codes})
        else:
            ols = model.fit(cov_type=self.cov_type)

        beta = np.asarray(ols.params)
        resid = y_dm - X_dm @ beta
        ssr = float(resid @ resid)
        sst_within = float(y_dm @ y_dm)

        fitted = FittedModel(
            formula=formula,
            coef=pd.Series(beta, index=names, name="coef"),
            std_errors=pd.Series(np.asarray(ols.bse), index=names, name="std_error"),
            cov_type=self.cov_type,
            group_vars=tuple(formula.absorb),
            levels={g.name: g.levels for g in groups},
            group_means=res.group_means,
            fitted_values=pd.Series(y - resid, index=frame.index, name=formula.response.name),
            n_obs=n,
            df_resid=float(df_resid),
            r2_within=1.0 - ssr / sst_within if sst_within > 0 else np.nan,
            residual_se=float(np.sqrt(ssr / df_resid)),
            demean_iterations=res.n_iter,
            converged=res.converged,
            n_singletons=n_singletons,
            cluster_var=self.cluster_var,
            n_clusters=n_clusters,
            demean_tol=self.tol,
            demean_max_iter=self.max_iter,
            strict_convergence=self.strict_convergence,
        )

        logger.info("model_estimated", formula=str(formula), n_obs=n,
                    coef={nm: round(b, 4) for nm, b in zip(names, beta)},
                    r2_within=round(fitted.r2_within, 4), sweeps=res.n_iter, converged=res.converged)
        return fitted


def estimate(formula: Union[Formula, str], data, **options) -> FittedModel:
    """estimate(formula, dataset) -> FittedModel; options are passed to FixedEffectsOLS."""
    return FixedEffectsOLS(**options).fit(formula, data)


def fit(formula: Union[Formula, str], grouping_vars: Sequence[str], data, **options) -> FittedModel:
    """Fit with the absorbed grouping variables given separately from the formula."""
    if isinstance(formula, str):
        formula = Formula.parse(formula)
    if grouping_vars:
        formula = Formula(formula.response, formula.regressors, tuple(grouping_vars))
    return estimate(formula, data, **options)


def estimate_nested(base: Formula, additions: Sequence[List[str]], data, **options) -> List[FittedModel]:
    """
    Fit a sequence of specifications, each adding regressors to the previous one.
    Earlier models are superseded, not modified.
    """
    models = []
    formula = base
    models.append(estimate(formula, data, **options))
    for terms in additions:
        formula = formula.with_regressors(*terms)
        models.append(estimate(formula, data, **options))
    return models
