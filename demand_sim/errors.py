"""
Error taxonomy for estimation, prediction and simulation.

DemandModelError
├── DataError              missing / non-finite / non-positive values reaching the core
├── EstimationError
│   ├── RankDeficiencyError    collinear regressors
│   └── NonConvergenceError    demeaning iteration cap exceeded (strict mode only)
├── PredictionError
│   └── UnseenCategoryError    level absent at fit time
└── SimulationError
    └── GridConfigError        empty / malformed delta set
"""

from typing import Sequence


class DemandModelError(Exception):
    """Base class for all errors raised by demand_sim."""


class DataError(DemandModelError, ValueError):
    pass


class EstimationError(DemandModelError):
    pass


class RankDeficiencyError(EstimationError):
    def __init__(self, columns: Sequence[str], rank: int, n_columns: int):
        self.columns = list(columns)
        self.rank = rank
        self.n_columns = n_columns
        super().__init__(
            f"Rank-deficient design: rank {rank} < {n_columns} columns; "
            f"implicated columns: {', '.join(self.columns)}"
        )


class NonConvergenceError(EstimationError):
    def __init__(self, n_iter: int, max_change: float, tol: float):
        self.n_iter = n_iter
        self.max_change = max_change
        self.tol = tol
        super().__init__(
            f"Iterative demeaning did not converge after {n_iter} sweeps "
            f"(max change {max_change:.3e} > tol {tol:.1e})"
        )


class NonConvergenceWarning(UserWarning):
    """Demeaning hit its iteration cap; results are a best-effort approximation."""


class PredictionError(DemandModelError):
    pass


class UnseenCategoryError(PredictionError):
    def __init__(self, variable: str, levels: Sequence, n_rows: int):
        self.variable = variable
        self.levels = list(levels)
        self.n_rows = n_rows
        shown = ", ".join(repr(v) for v in self.levels[:10])
        more = "" if len(self.levels) <= 10 else f" (+{len(self.levels) - 10} more)"
        super().__init__(
            f"{n_rows} row(s) have levels of '{variable}' never seen during "
            f"fitting: {shown}{more}"
        )


class SimulationError(DemandModelError):
    pass


class GridConfigError(SimulationError, ValueError):
    pass
