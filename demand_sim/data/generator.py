"""
Synthetic Two-Brand Scanner Panel with Known Demand.

Generates one row per store-week with wide per-brand columns, drawing demand
from a log-linear model with store and week fixed effects:
    ln(1 + Q_i) = α_i + μ_s + λ_t + ε_ii * ln(P_i / P0_i) + ε_ij * ln(P_j / P0_j)
                  + γ_i * promo_i + noise

True parameters are returned alongside the panel for validating the estimator.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import structlog

from demand_sim.config import DataConfig, config
from demand_sim.data.panel import PanelDataset, ProductColumns

logger = structlog.get_logger()


@dataclass
class BrandSpec:
    brand: str
    base_price: float
    base_log_demand: float
    own_elasticity: float           # True own-price elasticity (negative)
    cross_elasticity: float         # True elasticity w.r.t. the rival brand's price
    promo_lift: float


def brand_specs(cfg: Optional[DataConfig] = None) -> List[BrandSpec]:
    cfg = cfg or config.data
    return [
        BrandSpec(
            brand=cfg.brands[i],
            base_price=cfg.base_prices[i],
            base_log_demand=cfg.base_log_demand[i],
            own_elasticity=cfg.own_elasticities[i],
            cross_elasticity=cfg.cross_elasticities[i],
            promo_lift=cfg.promo_lifts[i],
        )
        for i in range(2)
    ]


def generate_panel(
    n_stores: Optional[int] = None,
    n_weeks: Optional[int] = None,
    seed: Optional[int] = None,
    cfg: Optional[DataConfig] = None,
) -> Tuple[PanelDataset, List[BrandSpec], Dict[str, pd.Series]]:
    """
    Generate a cleaned store × week panel for two competing brands.

    Returns:
        panel: PanelDataset keyed by (store_id, week) with year as extra grouping key
        specs: true demand parameters per brand
        effects: true store and week effects (for diagnostics)
    """
    cfg = cfg or config.data
    n_stores = n_stores or cfg.n_stores
    n_weeks = n_weeks or cfg.n_weeks
    rng = np.random.default_rng(cfg.seed if seed is None else seed)

    specs = brand_specs(cfg)
    dates = pd.date_range(start=cfg.start_date, periods=n_weeks, freq="W-MON")
    store_ids = [f"S{s:03d}" for s in range(n_stores)]

    store_effects = pd.Series(rng.normal(0, cfg.store_effect_sd, n_stores), index=store_ids)
    week_effects = pd.Series(rng.normal(0, cfg.week_effect_sd, n_weeks), index=np.arange(n_weeks))

    records = []
    for store_id in store_ids:
        mu_s = store_effects[store_id]
        for week_idx, week_date in enumerate(dates):
            prices = np.zeros(2)
            promos = np.zeros(2, dtype=int)
            for i, spec in enumerate(specs):
                is_promo = rng.random() < cfg.promo_frequency
                discount = rng.uniform(*cfg.promo_discount_range) if is_promo else 0.0
                price = spec.base_price * (1 - discount) * np.exp(rng.normal(0, cfg.price_noise_sd))
                prices[i] = round(max(price, 0.50), 2)
                promos[i] = int(is_promo)

            row = {
                "store_id": store_id,
                "week": week_idx,
                "date": week_date,
                "year": week_date.year,
                "month": week_date.month,
            }
            for i, spec in enumerate(specs):
                j = 1 - i
                rival = specs[j]
                log_q = (
                    spec.base_log_demand + mu_s + week_effects[week_idx]
                    + spec.own_elasticity * np.log(prices[i] / spec.base_price)
                    + spec.cross_elasticity * np.log(prices[j] / rival.base_price)
                    + spec.promo_lift * promos[i]
                    + rng.normal(0, cfg.noise_sd)
                )
                row[f"q_{spec.brand}"] = max(0, int(np.round(np.expm1(log_q))))
                row[f"p_{spec.brand}"] = prices[i]
                row[f"promo_{spec.brand}"] = promos[i]
            records.append(row)

    frame = pd.DataFrame(records)
    products = [ProductColumns.for_brand(s.brand) for s in specs]
    panel = PanelDataset(frame, products, entity_col="store_id", time_col="week", group_cols=["year"])

    logger.info("panel_generated", rows=len(frame), stores=n_stores, weeks=n_weeks,
                brands=[s.brand for s in specs])
    return panel, specs, {"store_id": store_effects, "week": week_effects}
