"""
Formula Specification for log-linear demand models.

    log1p(q_a) ~ log(p_a) + log(p_b) + promo_a | store_id + week

Left of "~" is the transformed response, between "~" and "|" the ordered
numeric regressors, after "|" the grouping variables whose fixed effects are
absorbed. Every transform has an explicit inverse so the response can be
mapped back to quantities by the caller.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from demand_sim.errors import DataError


@dataclass(frozen=True)
class Transform:
    name: str
    forward: Callable[[np.ndarray], np.ndarray]
    inverse: Callable[[np.ndarray], np.ndarray]
    lower_bound: float          # inputs must be strictly greater

    def check(self, values: np.ndarray, column: str) -> None:
        bad = values <= self.lower_bound
        if bad.any():
            raise DataError(
                f"{self.name}({column}) undefined for {int(bad.sum())} value(s) <= {self.lower_bound}"
            )


TRANSFORMS: Dict[str, Transform] = {
    "identity": Transform("identity", lambda x: x, lambda x: x, -np.inf),
    "log": Transform("log", np.log, np.exp, 0.0),
    "log1p": Transform("log1p", np.log1p, np.expm1, -1.0),
}

_TERM_RE = re.compile(r"^\s*(?:(\w+)\s*\(\s*(\w+)\s*\)|(\w+))\s*$")


@dataclass(frozen=True)
class Term:
    column: str
    transform: str = "identity"

    def __post_init__(self):
        if self.transform not in TRANSFORMS:
            raise ValueError(f"Unknown transform '{self.transform}'; choose from {sorted(TRANSFORMS)}")

    @property
    def name(self) -> str:
        if self.transform == "identity":
            return self.column
        return f"{self.transform}({self.column})"

    @classmethod
    def parse(cls, expr: str) -> "Term":
        m = _TERM_RE.match(expr)
        if not m:
            raise ValueError(f"Cannot parse term '{expr}'")
        if m.group(3):
            return cls(m.group(3))
        return cls(m.group(2), m.group(1))

    def evaluate(self, frame: pd.DataFrame) -> np.ndarray:
        """Apply the transform to the column, rejecting missing or out-of-domain values."""
        if self.column not in frame.columns:
            raise DataError(f"Column '{self.column}' not found in data")
        values = frame[self.column].to_numpy(dtype=float)
        if not np.isfinite(values).all():
            raise DataError(f"Column '{self.column}' has {int((~np.isfinite(values)).sum())} missing or non-finite value(s)")
        tf = TRANSFORMS[self.transform]
        tf.check(values, self.column)
        return tf.forward(values)

    def __str__(self) -> str:
        return self.name


TermLike = Union[Term, str]


def _as_term(t: TermLike) -> Term:
    return t if isinstance(t, Term) else Term.parse(t)


@dataclass(frozen=True)
class Formula:
    response: Term
    regressors: Tuple[Term, ...]
    absorb: Tuple[str, ...] = ()

    def __post_init__(self):
        names = [t.name for t in self.regressors]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate regressors: {dupes}")
        if not self.regressors:
            raise ValueError("Formula needs at least one regressor")
        if len(set(self.absorb)) != len(self.absorb):
            raise ValueError(f"Duplicate grouping variables: {list(self.absorb)}")

    @classmethod
    def build(cls, response: TermLike, regressors: Sequence[TermLike], absorb: Sequence[str] = ()) -> "Formula":
        return cls(_as_term(response), tuple(_as_term(t) for t in regressors), tuple(absorb))

    @classmethod
    def parse(cls, text: str) -> "Formula":
        if "~" not in text:
            raise ValueError(f"Formula '{text}' has no '~'")
        lhs, rhs = text.split("~", 1)
        absorb: Tuple[str, ...] = ()
        if "|" in rhs:
            rhs, fe = rhs.split("|", 1)
            absorb = tuple(v.strip() for v in fe.split("+") if v.strip())
        regressors = [t for t in rhs.split("+") if t.strip()]
        return cls.build(lhs, regressors, absorb)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(t.name for t in self.regressors)

    @property
    def columns(self) -> Tuple[str, ...]:
        cols = [self.response.column] + [t.column for t in self.regressors] + list(self.absorb)
        return tuple(dict.fromkeys(cols))

    def with_regressors(self, *terms: TermLike) -> "Formula":
        """New formula with extra regressors appended; this one is left as is."""
        return Formula(self.response, self.regressors + tuple(_as_term(t) for t in terms), self.absorb)

    def response_values(self, frame: pd.DataFrame) -> np.ndarray:
        return self.response.evaluate(frame)

    def design(self, frame: pd.DataFrame) -> np.ndarray:
        """n × k matrix of transformed regressors, columns in formula order."""
        if not len(frame):
            return np.empty((0, len(self.regressors)))
        return np.column_stack([t.evaluate(frame) for t in self.regressors])

    def invert_response(self, values):
        """Map link-scale values back to the response's original scale (e.g. expm1 for log1p)."""
        inverse = TRANSFORMS[self.response.transform].inverse
        if isinstance(values, pd.Series):
            return pd.Series(inverse(values.to_numpy(dtype=float)), index=values.index, name=values.name)
        return inverse(np.asarray(values, dtype=float))

    def __str__(self) -> str:
        text = f"{self.response.name} ~ {' + '.join(self.names)}"
        if self.absorb:
            text += f" | {' + '.join(self.absorb)}"
        return text
