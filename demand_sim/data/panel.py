"""
Panel Dataset: one row per (store, week) with wide per-brand columns.

The frame is copied on construction and every transforming operation returns
a new PanelDataset, so estimators and simulators can share one instance
without defensive copies of their own.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import structlog

from demand_sim.errors import DataError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProductColumns:
    name: str
    quantity: str
    price: str
    promotion: Optional[str] = None

    @classmethod
    def for_brand(cls, brand: str) -> "ProductColumns":
        """Default column naming used by the generator: q_<brand>, p_<brand>, promo_<brand>."""
        return cls(name=brand, quantity=f"q_{brand}", price=f"p_{brand}", promotion=f"promo_{brand}")


class PanelDataset:
    """Typed wrapper around a cleaned store × week DataFrame."""

    def __init__(
        self,
        frame: pd.DataFrame,
        products: Sequence[ProductColumns],
        entity_col: str = "store_id",
        time_col: str = "week",
        group_cols: Sequence[str] = (),
        validate: bool = True,
    ):
        self._frame = frame.copy()
        self.products: Tuple[ProductColumns, ...] = tuple(products)
        self.entity_col = entity_col
        self.time_col = time_col
        extra = [c for c in group_cols if c not in (entity_col, time_col)]
        self.group_cols: Tuple[str, ...] = (entity_col, time_col, *extra)
        if validate:
            self.validate()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame.copy()

    @property
    def columns(self) -> List[str]:
        return list(self._frame.columns)

    @property
    def index(self) -> pd.Index:
        return self._frame.index

    def __len__(self) -> int:
        return len(self._frame)

    def __repr__(self) -> str:
        names = ", ".join(p.name for p in self.products)
        return (f"PanelDataset(rows={len(self)}, products=[{names}], "
                f"entities={self._frame[self.entity_col].nunique()}, "
                f"periods={self._frame[self.time_col].nunique()})")

    def product(self, name: str) -> ProductColumns:
        for p in self.products:
            if p.name == name:
                return p
        raise KeyError(f"Unknown product '{name}'; known: {[p.name for p in self.products]}")

    def column(self, name: str) -> pd.Series:
        return self._frame[name]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> "PanelDataset":
        """
        Enforce the upstream cleaning contract.

        Raises DataError for missing key/product columns, missing values,
        non-positive prices, negative quantities or promotion flags outside {0, 1}.
        Nothing is coerced.
        """
        df = self._frame
        required = list(self.group_cols)
        for p in self.products:
            required += [p.quantity, p.price]
            if p.promotion:
                required.append(p.promotion)

        missing_cols = [c for c in required if c not in df.columns]
        if missing_cols:
            raise DataError(f"Panel is missing required columns: {missing_cols}")

        for col in required:
            n_missing = int(df[col].isna().sum())
            if n_missing:
                raise DataError(f"Column '{col}' has {n_missing} missing value(s)")

        for p in self.products:
            price = df[p.price].to_numpy(dtype=float)
            bad = ~np.isfinite(price) | (price <= 0)
            if bad.any():
                raise DataError(f"Price column '{p.price}' has {int(bad.sum())} non-positive or non-finite value(s)")

            qty = df[p.quantity].to_numpy(dtype=float)
            bad = ~np.isfinite(qty) | (qty < 0)
            if bad.any():
                raise DataError(f"Quantity column '{p.quantity}' has {int(bad.sum())} negative or non-finite value(s)")

            if p.promotion:
                promo = df[p.promotion]
                bad = ~promo.isin([0, 1])
                if bad.any():
                    raise DataError(f"Promotion column '{p.promotion}' has {int(bad.sum())} value(s) outside {{0, 1}}")

        dupes = int(df.duplicated(subset=[self.entity_col, self.time_col]).sum())
        if dupes:
            raise DataError(
                f"{dupes} duplicate ({self.entity_col}, {self.time_col}) row(s); expected one row per store and period"
            )
        return self

    # ------------------------------------------------------------------
    # Derived datasets
    # ------------------------------------------------------------------

    def _derive(self, frame: pd.DataFrame) -> "PanelDataset":
        return PanelDataset(
            frame, self.products, entity_col=self.entity_col, time_col=self.time_col,
            group_cols=self.group_cols, validate=False,
        )

    def scale_prices(self, factors: Dict[str, float]) -> "PanelDataset":
        """Return a copy with each named price column multiplied by its factor."""
        price_cols = {p.price for p in self.products}
        df = self._frame.copy()
        for col, factor in factors.items():
            if col not in price_cols:
                raise KeyError(f"'{col}' is not a product price column")
            if not factor > 0:
                raise DataError(f"Price factor for '{col}' must be positive, got {factor}")
            df[col] = df[col] * factor
        return self._derive(df)

    def subset(self, mask) -> "PanelDataset":
        return self._derive(self._frame.loc[mask])

    def split_by_time(self, cutoff) -> Tuple["PanelDataset", "PanelDataset"]:
        """Rows with time < cutoff train, rows with time >= cutoff validate."""
        t = self._frame[self.time_col]
        train = self.subset(t < cutoff)
        valid = self.subset(t >= cutoff)
        logger.info("panel_split", cutoff=cutoff, train_rows=len(train), validation_rows=len(valid))
        return train, valid


def as_frame(data) -> pd.DataFrame:
    """Accept a PanelDataset or a plain DataFrame; the result is never the caller's object."""
    if isinstance(data, PanelDataset):
        return data.frame
    if isinstance(data, pd.DataFrame):
        return data.copy()
    raise TypeError(f"Expected PanelDataset or DataFrame, got {type(data).__name__}")
