"""
Fixed-Effects Demeaning Transform.

Removes the additive effect of one or more categorical grouping variables from
every numeric column without building dummy matrices:

  - one grouping variable: x~ = x − mean_g(x), exact in one pass
  - several grouping variables: alternating projections. Each sweep subtracts
    the current group means of every grouping variable in turn; iteration stops
    once the largest absolute adjustment made during a full sweep is below `tol`
    or after `max_iter` sweeps.

The means removed from each column are accumulated per group level, so the
caller gets back the training-group means alongside the demeaned matrix.
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import structlog

from demand_sim.config import config
from demand_sim.errors import DataError, NonConvergenceError, NonConvergenceWarning

logger = structlog.get_logger()


@dataclass
class GroupCodes:
    name: str
    codes: np.ndarray           # int64 level index per row
    levels: pd.Index            # observed levels, sorted
    counts: np.ndarray          # rows per level

    @property
    def n_levels(self) -> int:
        return len(self.levels)


@dataclass
class DemeanResult:
    demeaned: np.ndarray
    group_means: Dict[str, pd.DataFrame]    # levels × variables, accumulated means removed
    n_iter: int
    converged: bool
    max_change: float
    center: Optional[np.ndarray] = None     # grand means, when no grouping variable is given
    names: List[str] = field(default_factory=list)


def encode_groups(frame: pd.DataFrame, grouping_vars: Sequence[str]) -> List[GroupCodes]:
    """Factorize each grouping variable into integer codes."""
    groups = []
    for var in grouping_vars:
        if var not in frame.columns:
            raise DataError(f"Grouping variable '{var}' not found in data")
        col = frame[var]
        if col.isna().any():
            raise DataError(f"Grouping variable '{var}' has {int(col.isna().sum())} missing value(s)")
        codes, levels = pd.factorize(col, sort=True)
        codes = codes.astype(np.int64)
        counts = np.bincount(codes, minlength=len(levels))
        groups.append(GroupCodes(name=var, codes=codes, levels=pd.Index(levels, name=var), counts=counts))
    return groups


def group_means(x: np.ndarray, group: GroupCodes) -> np.ndarray:
    """Per-level means of every column of x (n_levels × k)."""
    sums = np.column_stack([
        np.bincount(group.codes, weights=x[:, j], minlength=group.n_levels)
        for j in range(x.shape[1])
    ])
    return sums / group.counts[:, None]


def find_singletons(groups: Sequence[GroupCodes]) -> np.ndarray:
    """
    Boolean mask of rows that are the only member of their level in some
    grouping variable. Repeated until stable, since removing a singleton in one
    dimension can create new singletons in another.
    """
    if not groups:
        return np.zeros(0, dtype=bool)
    keep = np.ones(len(groups[0].codes), dtype=bool)
    changed = True
    while changed:
        changed = False
        for g in groups:
            counts = np.bincount(g.codes[keep], minlength=g.n_levels)
            single = keep & (counts[g.codes] == 1)
            if single.any():
                keep &= ~single
                changed = True
    return ~keep


def demean(
    values: np.ndarray,
    groups: Sequence[GroupCodes],
    names: Optional[Sequence[str]] = None,
    tol: Optional[float] = None,
    max_iter: Optional[int] = None,
    strict: Optional[bool] = None,
) -> DemeanResult:
    """
    Within-group demean the columns of `values` over all `groups`.

    Args:
        values: n × k array (a 1-D array is treated as one column). Not modified.
        groups: encoded grouping variables, each with n codes.
        names: column names used to label the retained group means.
        tol: convergence tolerance on the max absolute change in one sweep.
        max_iter: cap on the number of sweeps.
        strict: raise NonConvergenceError instead of warning at the cap.
    """
    tol = config.model.demean_tol if tol is None else tol
    max_iter = config.model.demean_max_iter if max_iter is None else max_iter
    strict = config.model.strict_convergence if strict is None else strict

    x = np.array(values, dtype=float, copy=True)
    squeeze = x.ndim == 1
    if squeeze:
        x = x[:, None]
    n, k = x.shape
    names = list(names) if names is not None else [f"x{j}" for j in range(k)]
    if len(names) != k:
        raise ValueError(f"Got {len(names)} names for {k} columns")
    for g in groups:
        if len(g.codes) != n:
            raise ValueError(f"Grouping variable '{g.name}' has {len(g.codes)} codes for {n} rows")

    def _result(n_iter, converged, max_change, accum, center=None):
        out = x[:, 0] if squeeze else x
        means = {
            g.name: pd.DataFrame(accum[i], index=g.levels, columns=names)
            for i, g in enumerate(groups)
        }
        return DemeanResult(out, means, n_iter, converged, max_change, center, names)

    if not groups:
        center = x.mean(axis=0)
        x -= center
        return _result(1, True, 0.0, [], center)

    accum = [np.zeros((g.n_levels, k)) for g in groups]

    if len(groups) == 1:
        m = group_means(x, groups[0])
        x -= m[groups[0].codes]
        accum[0] += m
        return _result(1, True, 0.0, accum)

    max_change = np.inf
    for it in range(1, max_iter + 1):
        max_change = 0.0
        for i, g in enumerate(groups):
            m = group_means(x, g)
            x -= m[g.codes]
            accum[i] += m
            max_change = max(max_change, float(np.abs(m).max()))
        if max_change < tol:
            logger.debug("demeaning_converged", sweeps=it, max_change=max_change,
                         groups=[g.name for g in groups])
            return _result(it, True, max_change, accum)

    if strict:
        raise NonConvergenceError(max_iter, max_change, tol)

    logger.warning("demeaning_not_converged", sweeps=max_iter, max_change=max_change, tol=tol,
                   groups=[g.name for g in groups])
    warnings.warn(
        f"Iterative demeaning stopped at {max_iter} sweeps with max change "
        f"{max_change:.3e} (tol {tol:.1e}); using the best available approximation",
        NonConvergenceWarning,
        stacklevel=2,
    )
    return _result(max_iter, False, max_change, accum)
