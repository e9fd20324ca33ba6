"""Configuration for Panel Demand Estimation & Pricing Simulation."""

from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass
class DataConfig:
    n_stores: int = 40
    n_weeks: int = 156          # 3 years weekly
    start_date: str = "2019-01-07"
    seed: int = 42
    brands: Tuple[str, str] = ("a", "b")
    base_prices: Tuple[float, float] = (4.49, 3.99)
    # True demand parameters (for validation)
    own_elasticities: Tuple[float, float] = (-2.4, -2.1)
    cross_elasticities: Tuple[float, float] = (0.6, 0.5)
    promo_lifts: Tuple[float, float] = (0.35, 0.30)
    base_log_demand: Tuple[float, float] = (3.4, 3.6)
    store_effect_sd: float = 0.40
    week_effect_sd: float = 0.10
    noise_sd: float = 0.15
    # Price variation
    promo_frequency: float = 0.15
    promo_discount_range: tuple = (0.10, 0.30)
    price_noise_sd: float = 0.04
    validation_fraction: float = 0.2    # last 20% of weeks held out


@dataclass
class ModelConfig:
    # Iterative centering (alternating projections)
    demean_tol: float = 1e-8            # max |change| over one full sweep
    demean_max_iter: int = 10_000
    strict_convergence: bool = False    # raise instead of warn
    drop_singletons: bool = False

    # Standard errors
    cov_type: str = "HC1"               # "nonrobust", "HC1", "cluster"
    cluster_var: Optional[str] = "store_id"

    # Rank check (relative to largest singular value)
    rank_tol: float = 1e-10

    # Elasticity reporting
    significance: float = 0.10
    cross_threshold: float = 0.05


@dataclass
class SimulationConfig:
    price_deltas: Tuple[float, ...] = (-0.10, -0.05, 0.0, 0.05, 0.10)
    gross_margin: float = 0.35          # manufacturer margin on wholesale
    retail_margin: float = 0.25         # retailer's share of shelf price
    max_workers: Optional[int] = 4
    on_unseen: str = "raise"            # "raise" or "skip"


@dataclass
class Config:
    data: DataConfig = field(default_factory=DataConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    output_dir: str = "output"


config = Config()
