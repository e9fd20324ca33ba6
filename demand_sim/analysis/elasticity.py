"""
Own- and cross-price elasticity table from fitted log-linear models.

In ln(1 + Q_i) = ... + ε_ij ln(P_j) + ..., the coefficient on ln(P_j) is the
elasticity of brand i's demand with respect to brand j's price (approximately,
since the response is log1p rather than log).
"""

from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

import pandas as pd
import structlog

from demand_sim.config import config
from demand_sim.models.artifact import FittedModel

logger = structlog.get_logger()


@dataclass
class ElasticityEstimate:
    product: str
    price_term: str
    elasticity: float
    std_error: float
    p_value: float
    kind: str                # "own", "substitute", "complement", "unrelated"
    true_elasticity: Optional[float] = None


def classify_cross(elasticity: float, p_value: float,
                   significance: Optional[float] = None, threshold: Optional[float] = None) -> str:
    significance = config.model.significance if significance is None else significance
    threshold = config.model.cross_threshold if threshold is None else threshold
    if elasticity > threshold and p_value < significance:
        return "substitute"
    if elasticity < -threshold and p_value < significance:
        return "complement"
    return "unrelated"


def elasticity_table(
    models: Dict[str, FittedModel],
    price_terms: Dict[str, str],
    truth: Optional[Dict[str, Dict[str, float]]] = None,
) -> pd.DataFrame:
    """
    One row per (product model, price term) present in that model.

    Args:
        models: product name -> fitted model for that product's demand
        price_terms: product name -> regressor name of its price (e.g. "log(p_a)")
        truth: optional product -> {product: true elasticity} for comparison
    """
    rows: List[ElasticityEstimate] = []
    for product, model in models.items():
        summary = model.summary()
        for other, term in price_terms.items():
            if term not in summary.index:
                continue
            est = summary.loc[term]
            kind = "own" if other == product else classify_cross(est["coef"], est["p_value"])
            true_e = truth.get(product, {}).get(other) if truth else None
            rows.append(ElasticityEstimate(
                product=product, price_term=term,
                elasticity=round(float(est["coef"]), 4),
                std_error=round(float(est["std_error"]), 4),
                p_value=round(float(est["p_value"]), 4),
                kind=kind, true_elasticity=true_e,
            ))

    table = pd.DataFrame([asdict(r) for r in rows])
    if truth and not table.empty:
        true_e = pd.to_numeric(table["true_elasticity"], errors="coerce")
        table["estimation_error"] = (table["elasticity"] - true_e).abs().round(4)
    logger.info("elasticity_table_built", rows=len(table), products=list(models))
    return table


def elasticity_matrix(table: pd.DataFrame) -> pd.DataFrame:
    """Pivot to product (rows) × price term (columns)."""
    if table.empty:
        return pd.DataFrame()
    return table.pivot(index="product", columns="price_term", values="elasticity")
