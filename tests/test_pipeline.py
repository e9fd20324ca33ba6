"""
Test suite for Panel Demand Estimation & Pricing Simulation.
Tests panel validation, demeaning, fixed-effects estimation, prediction,
the profit grid, hold-out validation and elasticity reporting.
"""

import dataclasses

import numpy as np
import pandas as pd
import pytest

from demand_sim.data.generator import generate_panel
from demand_sim.data.panel import PanelDataset, ProductColumns
from demand_sim.errors import (
    DataError, EstimationError, GridConfigError, NonConvergenceError, NonConvergenceWarning,
    PredictionError, RankDeficiencyError, UnseenCategoryError,
)
from demand_sim.models.demeaning import demean, encode_groups, find_singletons
from demand_sim.models.estimator import FixedEffectsOLS, estimate, estimate_nested, fit
from demand_sim.models.formula import Formula, Term
from demand_sim.models.prediction import PredictionEngine, predict, predict_quantity
from demand_sim.analysis.simulation import (
    ProfitSimulator, best_cell, profit_matrix, simulate, unit_cost, validate_deltas,
)
from demand_sim.analysis.validation import (
    compare_specifications, compute_fit_metrics, evaluate_model, train_validation_split,
)
from demand_sim.analysis.elasticity import classify_cross, elasticity_matrix, elasticity_table


TRUE = {
    "a": {"const": 5.0, "own": -2.0, "cross": 0.5, "promo": 0.30},
    "b": {"const": 5.2, "own": -1.5, "cross": 0.4, "promo": 0.20},
}
DELTAS = (-0.10, -0.05, 0.0, 0.05, 0.10)
RETAIL_MARGIN = 0.25
COST_A, COST_B = 1.20, 1.00


def make_exact_panel(n_stores=10, n_weeks=10, seed=7) -> PanelDataset:
    """Noise-free two-brand panel: log1p(Q) is exactly linear in logs plus a store effect."""
    rng = np.random.default_rng(seed)
    n = n_stores * n_weeks
    store_names = [f"S{i:02d}" for i in range(n_stores)]
    stores = np.repeat(store_names, n_weeks)
    weeks = np.tile(np.arange(n_weeks), n_stores)
    store_fe = dict(zip(store_names, rng.normal(0, 0.3, n_stores)))
    fe = np.array([store_fe[s] for s in stores])

    p_a = rng.uniform(2.0, 5.0, n)
    p_b = rng.uniform(2.0, 5.0, n)
    promo_a = (rng.random(n) < 0.3).astype(int)
    promo_b = (rng.random(n) < 0.3).astype(int)

    y_a = (TRUE["a"]["const"] + fe + TRUE["a"]["own"] * np.log(p_a)
           + TRUE["a"]["cross"] * np.log(p_b) + TRUE["a"]["promo"] * promo_a)
    y_b = (TRUE["b"]["const"] + fe + TRUE["b"]["own"] * np.log(p_b)
           + TRUE["b"]["cross"] * np.log(p_a) + TRUE["b"]["promo"] * promo_b)

    frame = pd.DataFrame({
        "store_id": stores, "week": weeks,
        "q_a": np.expm1(y_a), "p_a": p_a, "promo_a": promo_a,
        "q_b": np.expm1(y_b), "p_b": p_b, "promo_b": promo_b,
    })
    return PanelDataset(frame, [ProductColumns.for_brand("a"), ProductColumns.for_brand("b")])


def brand_formula(own, rival, absorb=("store_id",)) -> Formula:
    return Formula.build(
        f"log1p(q_{own})", [f"log(p_{own})", f"log(p_{rival})", f"promo_{own}"], absorb,
    )


def fitted_pair(panel):
    model_a = estimate(brand_formula("a", "b"), panel).with_group_effects(panel)
    model_b = estimate(brand_formula("b", "a"), panel).with_group_effects(panel)
    return model_a, model_b


def closed_form_profit(panel, da, db, cost_a, cost_b, retail_margin):
    f = panel.frame
    y_a = np.log1p(f["q_a"]) + TRUE["a"]["own"] * np.log1p(da) + TRUE["a"]["cross"] * np.log1p(db)
    y_b = np.log1p(f["q_b"]) + TRUE["b"]["own"] * np.log1p(db) + TRUE["b"]["cross"] * np.log1p(da)
    margin_a = f["p_a"] * (1 + da) * (1 - retail_margin) - cost_a
    margin_b = f["p_b"] * (1 + db) * (1 - retail_margin) - cost_b
    return float((np.expm1(y_a) * margin_a).sum() + (np.expm1(y_b) * margin_b).sum())


# ============================================================
# PANEL DATASET
# ============================================================

class TestPanelDataset:
    def setup_method(self):
        self.panel = make_exact_panel()

    def test_length(self):
        assert len(self.panel) == 100

    def test_rejects_non_positive_price(self):
        frame = self.panel.frame
        frame.loc[3, "p_a"] = 0.0
        with pytest.raises(DataError, match="p_a"):
            PanelDataset(frame, self.panel.products)

    def test_rejects_missing_values(self):
        frame = self.panel.frame
        frame.loc[5, "q_b"] = np.nan
        with pytest.raises(DataError, match="missing"):
            PanelDataset(frame, self.panel.products)

    def test_rejects_bad_promotion_flag(self):
        frame = self.panel.frame
        frame.loc[0, "promo_a"] = 2
        with pytest.raises(DataError, match="promo_a"):
            PanelDataset(frame, self.panel.products)

    def test_rejects_duplicate_store_week(self):
        frame = pd.concat([self.panel.frame, self.panel.frame.iloc[[0]]], ignore_index=True)
        with pytest.raises(DataError, match="duplicate"):
            PanelDataset(frame, self.panel.products)

    def test_scale_prices_leaves_original(self):
        before = self.panel.column("p_a").copy()
        scaled = self.panel.scale_prices({"p_a": 1.1})
        pd.testing.assert_series_equal(self.panel.column("p_a"), before)
        np.testing.assert_allclose(scaled.column("p_a"), before * 1.1)

    def test_frame_is_a_copy(self):
        frame = self.panel.frame
        frame["p_a"] = -1.0
        assert (self.panel.column("p_a") > 0).all()

    def test_split_by_time(self):
        train, valid = self.panel.split_by_time(8)
        assert len(train) == 80
        assert len(valid) == 20
        assert valid.column("week").min() == 8


class TestGenerator:
    def setup_method(self):
        self.panel, self.specs, self.effects = generate_panel(n_stores=5, n_weeks=30, seed=1)

    def test_panel_shape(self):
        assert len(self.panel) == 5 * 30

    def test_wide_brand_columns(self):
        for col in ("q_a", "p_a", "promo_a", "q_b", "p_b", "promo_b", "year", "month"):
            assert col in self.panel.columns

    def test_own_elasticities_negative(self):
        assert all(s.own_elasticity < 0 for s in self.specs)

    def test_true_effects_returned(self):
        assert len(self.effects["store_id"]) == 5
        assert len(self.effects["week"]) == 30


# ============================================================
# FORMULA
# ============================================================

class TestFormula:
    def test_parse(self):
        f = Formula.parse("log1p(q_a) ~ log(p_a) + log(p_b) + promo_a | store_id + week")
        assert f.response == Term("q_a", "log1p")
        assert f.names == ("log(p_a)", "log(p_b)", "promo_a")
        assert f.absorb == ("store_id", "week")

    def test_str_round_trip(self):
        text = "log1p(q_a) ~ log(p_a) + promo_a | store_id"
        assert str(Formula.parse(text)) == text

    def test_with_regressors_returns_new_formula(self):
        base = Formula.parse("log1p(q_a) ~ log(p_a) | store_id")
        extended = base.with_regressors("log(p_b)")
        assert base.names == ("log(p_a)",)
        assert extended.names == ("log(p_a)", "log(p_b)")

    def test_duplicate_regressor_rejected(self):
        with pytest.raises(ValueError):
            Formula.parse("log1p(q_a) ~ log(p_a) + log(p_a)")

    def test_unknown_transform_rejected(self):
        with pytest.raises(ValueError):
            Term.parse("sqrt(p_a)")

    def test_log_of_non_positive_is_data_error(self):
        frame = pd.DataFrame({"p_a": [1.0, 0.0, 2.0]})
        with pytest.raises(DataError):
            Term("p_a", "log").evaluate(frame)

    def test_invert_response(self):
        f = Formula.parse("log1p(q_a) ~ log(p_a)")
        q = np.array([0.0, 3.0, 120.0])
        np.testing.assert_allclose(f.invert_response(np.log1p(q)), q)


# ============================================================
# DEMEANING
# ============================================================

class TestDemeaning:
    def setup_method(self):
        rng = np.random.default_rng(0)
        n = 400
        self.frame = pd.DataFrame({
            "store_id": rng.integers(0, 25, n),
            "week": rng.integers(0, 30, n),
        })
        self.values = rng.normal(size=(n, 3)) + self.frame[["store_id"]].to_numpy() * 0.1

    def test_single_group_means_are_zero(self):
        groups = encode_groups(self.frame, ["store_id"])
        res = demean(self.values, groups, names=["y", "x1", "x2"])
        means = pd.DataFrame(res.demeaned).groupby(self.frame["store_id"].to_numpy()).mean()
        np.testing.assert_allclose(means.to_numpy(), 0.0, atol=1e-12)
        assert res.converged and res.n_iter == 1

    def test_single_group_retains_group_means(self):
        groups = encode_groups(self.frame, ["store_id"])
        res = demean(self.values, groups, names=["y", "x1", "x2"])
        expected = pd.DataFrame(self.values, columns=["y", "x1", "x2"]).groupby(
            self.frame["store_id"].to_numpy()).mean()
        np.testing.assert_allclose(res.group_means["store_id"].to_numpy(), expected.to_numpy())

    def test_input_not_mutated(self):
        original = self.values.copy()
        demean(self.values, encode_groups(self.frame, ["store_id", "week"]))
        np.testing.assert_array_equal(self.values, original)

    def test_two_way_converges_and_centres_both_groups(self):
        groups = encode_groups(self.frame, ["store_id", "week"])
        res = demean(self.values, groups, tol=1e-10, max_iter=10_000)
        assert res.converged
        dm = pd.DataFrame(res.demeaned)
        for var in ("store_id", "week"):
            means = dm.groupby(self.frame[var].to_numpy()).mean()
            np.testing.assert_allclose(means.to_numpy(), 0.0, atol=1e-6)

    def test_non_convergence_warns(self):
        groups = encode_groups(self.frame, ["store_id", "week"])
        with pytest.warns(NonConvergenceWarning):
            res = demean(self.values, groups, max_iter=1, strict=False)
        assert not res.converged
        assert res.n_iter == 1

    def test_non_convergence_strict_raises(self):
        groups = encode_groups(self.frame, ["store_id", "week"])
        with pytest.raises(NonConvergenceError):
            demean(self.values, groups, max_iter=1, strict=True)

    def test_no_groups_centres_on_grand_mean(self):
        res = demean(self.values, [])
        np.testing.assert_allclose(res.demeaned.mean(axis=0), 0.0, atol=1e-12)

    def test_one_dimensional_input(self):
        groups = encode_groups(self.frame, ["store_id"])
        res = demean(self.values[:, 0], groups)
        assert res.demeaned.shape == (len(self.frame),)

    def test_find_singletons(self):
        frame = pd.DataFrame({"store_id": [1, 1, 2, 3, 3], "week": [1, 2, 1, 1, 2]})
        mask = find_singletons(encode_groups(frame, ["store_id", "week"]))
        assert mask.tolist() == [False, False, True, False, False]

    def test_missing_grouping_variable(self):
        with pytest.raises(DataError):
            encode_groups(self.frame, ["region"])


# ============================================================
# FIXED-EFFECTS ESTIMATOR
# ============================================================

class TestEstimator:
    def setup_method(self):
        self.panel = make_exact_panel()

    def test_recovers_exact_coefficients(self):
        model = estimate(brand_formula("a", "b"), self.panel)
        assert model.coef["log(p_a)"] == pytest.approx(TRUE["a"]["own"], abs=1e-8)
        assert model.coef["log(p_b)"] == pytest.approx(TRUE["a"]["cross"], abs=1e-8)
        assert model.coef["promo_a"] == pytest.approx(TRUE["a"]["promo"], abs=1e-8)

    def test_accepts_formula_string(self):
        model = estimate("log1p(q_a) ~ log(p_a) + log(p_b) | store_id", self.panel)
        assert list(model.coef.index) == ["log(p_a)", "log(p_b)"]

    def test_fit_with_separate_grouping_vars(self):
        model = fit("log1p(q_a) ~ log(p_a) + log(p_b) + promo_a", ["store_id"], self.panel)
        assert model.group_vars == ("store_id",)
        assert model.coef["log(p_a)"] == pytest.approx(TRUE["a"]["own"], abs=1e-8)

    def test_collinear_regressor_raises_rank_deficiency(self):
        frame = self.panel.frame
        frame["p_ab"] = frame["p_a"] * frame["p_b"]
        formula = brand_formula("a", "b").with_regressors("log(p_ab)")
        with pytest.raises(RankDeficiencyError) as exc:
            estimate(formula, frame)
        assert {"log(p_a)", "log(p_b)", "log(p_ab)"} <= set(exc.value.columns)
        assert "promo_a" not in exc.value.columns

    def test_regressor_absorbed_by_fixed_effect(self):
        frame = self.panel.frame
        frame["store_size"] = frame["store_id"].str[1:].astype(int) * 10.0 + 5.0
        formula = brand_formula("a", "b").with_regressors("store_size")
        with pytest.raises(RankDeficiencyError) as exc:
            estimate(formula, frame)
        assert exc.value.columns == ["store_size"]

    def test_insufficient_degrees_of_freedom(self):
        tiny = self.panel.subset(self.panel.column("week") < 1)   # one row per store
        with pytest.raises(EstimationError):
            estimate(brand_formula("a", "b"), tiny)

    def test_invalid_cov_type(self):
        with pytest.raises(ValueError):
            FixedEffectsOLS(cov_type="HC9")

    def test_missing_column_is_data_error(self):
        with pytest.raises(DataError):
            estimate("log1p(q_a) ~ log(p_c) | store_id", self.panel)

    def test_recovers_elasticities_from_noisy_panel(self):
        panel, specs, _ = generate_panel(n_stores=20, n_weeks=80, seed=3)
        spec_a = specs[0]
        formula = Formula.build("log1p(q_a)", ["log(p_a)", "log(p_b)", "promo_a", "promo_b"],
                                ("store_id", "week"))
        model = estimate(formula, panel)
        assert model.converged
        assert abs(model.coef["log(p_a)"] - spec_a.own_elasticity) < 0.35
        assert abs(model.coef["log(p_b)"] - spec_a.cross_elasticity) < 0.35
        assert (model.std_errors > 0).all()

    def test_cluster_standard_errors(self):
        model = estimate(brand_formula("a", "b"), make_noisy(self.panel),
                         cov_type="cluster", cluster_var="store_id")
        assert model.n_clusters == 10
        assert (model.std_errors > 0).all()

    def test_summary_table(self):
        model = estimate(brand_formula("a", "b"), make_noisy(self.panel))
        summary = model.summary()
        assert list(summary.columns) == ["coef", "std_error", "t_statistic", "p_value", "ci_lower", "ci_upper"]
        assert (summary["ci_lower"] <= summary["coef"]).all()
        assert (summary["coef"] <= summary["ci_upper"]).all()

    def test_non_convergence_is_recoverable(self):
        formula = brand_formula("a", "b", absorb=("store_id", "week"))
        with pytest.warns(NonConvergenceWarning):
            model = estimate(formula, make_noisy(self.panel, drop=0.3), max_iter=1,
                             strict_convergence=False)
        assert not model.converged

    def test_drop_singletons(self):
        frame = self.panel.frame
        frame = frame[(frame["store_id"] != "S00") | (frame["week"] == 0)]
        formula = brand_formula("a", "b", absorb=("store_id", "week"))
        model = estimate(formula, frame, drop_singletons=True)
        assert model.n_singletons == 1
        assert model.n_obs == 90
        assert "S00" not in model.levels["store_id"]

    def test_nested_specifications_supersede(self):
        base = Formula.build("log1p(q_a)", ["log(p_a)"], ("store_id",))
        models = estimate_nested(base, [["log(p_b)"], ["promo_a"]], self.panel)
        assert [len(m.coef) for m in models] == [1, 2, 3]
        assert models[0].formula == base


def make_noisy(panel: PanelDataset, drop: float = 0.0, seed: int = 11) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    frame = panel.frame
    frame["q_a"] = np.expm1(np.log1p(frame["q_a"]) + rng.normal(0, 0.1, len(frame)))
    frame["q_b"] = np.expm1(np.log1p(frame["q_b"]) + rng.normal(0, 0.1, len(frame)))
    if drop:
        frame = frame[rng.random(len(frame)) >= drop]
    return frame


# ============================================================
# MODEL ARTIFACT & PREDICTION
# ============================================================

class TestPrediction:
    def setup_method(self):
        self.panel = make_exact_panel()
        self.noisy = make_noisy(self.panel)
        self.model = estimate(brand_formula("a", "b", absorb=("store_id", "week")), self.noisy)
        self.model_fe = self.model.with_group_effects(self.noisy)

    def test_with_group_effects_returns_new_artifact(self):
        assert not self.model.has_group_effects
        assert self.model_fe.has_group_effects
        assert set(self.model_fe.group_effects) == {"store_id", "week"}
        pd.testing.assert_series_equal(self.model.coef, self.model_fe.coef)

    def test_predict_without_group_effects_fails(self):
        with pytest.raises(PredictionError):
            predict(self.model, self.noisy)

    def test_round_trip_matches_in_sample_fit(self):
        pred = predict(self.model_fe, self.noisy)
        np.testing.assert_allclose(pred.to_numpy(), self.model.fitted_values.to_numpy(), atol=1e-6)

    def test_single_group_round_trip(self):
        model = estimate(brand_formula("a", "b"), self.noisy).with_group_effects(self.noisy)
        pred = predict(model, self.noisy)
        np.testing.assert_allclose(pred.to_numpy(), model.fitted_values.to_numpy(), atol=1e-9)

    def test_exact_data_predicts_exactly(self):
        model = estimate(brand_formula("a", "b"), self.panel).with_group_effects(self.panel)
        q = predict_quantity(model, self.panel)
        np.testing.assert_allclose(q.to_numpy(), self.panel.column("q_a").to_numpy(), rtol=1e-8)

    def test_unseen_category_strict(self):
        new = self.panel.frame.iloc[:5].copy()
        new.loc[new.index[:2], "store_id"] = "S_NEW"
        with pytest.raises(UnseenCategoryError) as exc:
            predict(self.model_fe, new, on_unseen="raise")
        assert exc.value.variable == "store_id"
        assert exc.value.levels == ["S_NEW"]
        assert exc.value.n_rows == 2

    def test_unseen_category_lenient_excludes_rows(self):
        new = self.panel.frame.iloc[:5].copy()
        new.loc[new.index[:2], "store_id"] = "S_NEW"
        report = PredictionEngine(self.model_fe, on_unseen="skip").predict_with_report(new)
        assert list(report.predictions.index) == list(new.index[2:])
        assert list(report.dropped) == list(new.index[:2])
        assert report.errors["level"].tolist() == ["S_NEW", "S_NEW"]
        assert not report.predictions.isna().any()

    def test_invalid_unseen_policy(self):
        with pytest.raises(ValueError):
            PredictionEngine(self.model_fe, on_unseen="zero")

    def test_prediction_does_not_invert_response(self):
        pred = predict(self.model_fe, self.noisy)
        assert pred.name == "log1p(q_a)"
        assert pred.max() < np.log1p(self.noisy["q_a"].max()) + 1.0

    def test_group_effects_reuse_fit_convergence_settings(self):
        formula = brand_formula("a", "b", absorb=("store_id", "week"))
        with pytest.warns(NonConvergenceWarning):
            model = estimate(formula, self.noisy, max_iter=1, strict_convergence=False)
        assert model.demean_max_iter == 1
        assert model.strict_convergence is False
        with pytest.warns(NonConvergenceWarning):
            model.with_group_effects(self.noisy)

        strict = dataclasses.replace(model, strict_convergence=True)
        with pytest.raises(NonConvergenceError):
            strict.with_group_effects(self.noisy)

    def test_group_effects_missing_grouping_column(self):
        with pytest.raises(DataError, match="week"):
            self.model.with_group_effects(self.noisy.drop(columns=["week"]))

    def test_singleton_store_unseen_after_drop(self):
        frame = self.panel.frame
        frame = frame[(frame["store_id"] != "S00") | (frame["week"] == 0)]
        formula = brand_formula("a", "b", absorb=("store_id", "week"))
        model = estimate(formula, frame, drop_singletons=True).with_group_effects(frame)
        with pytest.raises(UnseenCategoryError):
            predict(model, frame, on_unseen="raise")


# ============================================================
# PROFIT SIMULATION
# ============================================================

class TestProfitSimulation:
    def setup_method(self):
        self.panel = make_exact_panel()
        self.model_a, self.model_b = fitted_pair(self.panel)

    def run(self, deltas=DELTAS, **kwargs):
        return simulate(self.model_a, self.model_b, self.panel, "p_a", "p_b", deltas,
                        COST_A, COST_B, RETAIL_MARGIN, **kwargs)

    def test_grid_size_and_order(self):
        grid = self.run()
        assert len(grid) == 25
        assert grid[["delta_a", "delta_b"]].iloc[0].tolist() == [-0.10, -0.10]
        assert grid[["delta_a", "delta_b"]].iloc[-1].tolist() == [0.10, 0.10]
        assert (grid["status"] == "ok").all()

    def test_baseline_ratio_is_exactly_one(self):
        grid = self.run()
        base = grid[(grid["delta_a"] == 0.0) & (grid["delta_b"] == 0.0)]
        assert base["profit_ratio"].iloc[0] == 1.0

    def test_matches_closed_form(self):
        grid = self.run()
        expected = [closed_form_profit(self.panel, da, db, COST_A, COST_B, RETAIL_MARGIN)
                    for da, db in zip(grid["delta_a"], grid["delta_b"])]
        np.testing.assert_allclose(grid["profit"].to_numpy(), expected, rtol=1e-6)

    def test_baseline_reproduces_direct_profit(self):
        grid = self.run()
        qa = predict_quantity(self.model_a, self.panel)
        qb = predict_quantity(self.model_b, self.panel)
        f = self.panel.frame
        direct = ((qa * (f["p_a"] * (1 - RETAIL_MARGIN) - COST_A)).sum()
                  + (qb * (f["p_b"] * (1 - RETAIL_MARGIN) - COST_B)).sum())
        base = grid[(grid["delta_a"] == 0.0) & (grid["delta_b"] == 0.0)]["profit"].iloc[0]
        assert base == pytest.approx(direct, rel=1e-10)

    def test_idempotent(self):
        pd.testing.assert_frame_equal(self.run(), self.run())

    def test_worker_count_does_not_change_result(self):
        pd.testing.assert_frame_equal(self.run(max_workers=1), self.run(max_workers=8))

    def test_baseline_data_not_mutated(self):
        before = self.panel.frame
        self.run()
        pd.testing.assert_frame_equal(self.panel.frame, before)

    def test_missing_baseline_delta(self):
        with pytest.raises(GridConfigError):
            self.run(deltas=(-0.1, 0.1))

    def test_empty_delta_set(self):
        with pytest.raises(GridConfigError):
            self.run(deltas=())

    def test_duplicate_deltas(self):
        with pytest.raises(GridConfigError):
            validate_deltas((0.0, 0.05, 0.05))

    def test_delta_wiping_out_price(self):
        with pytest.raises(GridConfigError):
            validate_deltas((-1.0, 0.0))

    def test_bad_retail_margin(self):
        with pytest.raises(GridConfigError):
            simulate(self.model_a, self.model_b, self.panel, "p_a", "p_b", DELTAS,
                     COST_A, COST_B, retail_margin=1.0)

    def test_unknown_price_column(self):
        with pytest.raises(GridConfigError):
            simulate(self.model_a, self.model_b, self.panel, "p_a", "p_z", DELTAS,
                     COST_A, COST_B, RETAIL_MARGIN)

    def test_cell_failures_are_isolated(self):
        class FlakySimulator(ProfitSimulator):
            def _brand_profit(self, engine, frame, price_col, cost):
                if price_col == "p_a" and frame["p_a"].mean() > self.baseline["p_a"].mean() * 1.09:
                    raise DataError("simulated scoring failure")
                return super()._brand_profit(engine, frame, price_col, cost)

        sim = FlakySimulator(self.model_a, self.model_b, self.panel, "p_a", "p_b",
                             COST_A, COST_B, RETAIL_MARGIN)
        grid = sim.run(DELTAS)
        failed = grid[grid["status"] == "failed"]
        assert len(failed) == 5
        assert (failed["delta_a"] == 0.10).all()
        assert failed["profit"].isna().all()
        assert failed["error"].str.contains("DataError").all()
        assert (grid.loc[grid["status"] == "ok", "profit"].notna()).all()

    def test_duplicate_index_labels(self):
        frame = self.panel.frame
        frame.index = np.arange(len(frame)) % 50
        grid = simulate(self.model_a, self.model_b, frame, "p_a", "p_b", DELTAS,
                        COST_A, COST_B, RETAIL_MARGIN)
        expected = [closed_form_profit(self.panel, da, db, COST_A, COST_B, RETAIL_MARGIN)
                    for da, db in zip(grid["delta_a"], grid["delta_b"])]
        np.testing.assert_allclose(grid["profit"].to_numpy(), expected, rtol=1e-6)
        assert (grid["n_scored"] == 100).all()

    def test_skip_policy_excludes_unseen_rows(self):
        frame = self.panel.frame
        unseen = (frame["store_id"] == "S00").to_numpy()
        frame.loc[unseen, "store_id"] = "S_NEW"
        grid = simulate(self.model_a, self.model_b, frame, "p_a", "p_b", DELTAS,
                        COST_A, COST_B, RETAIL_MARGIN, on_unseen="skip")
        assert (grid["status"] == "ok").all()
        assert (grid["n_scored"] == 90).all()

        kept = self.panel.subset(~unseen)
        expected = [closed_form_profit(kept, da, db, COST_A, COST_B, RETAIL_MARGIN)
                    for da, db in zip(grid["delta_a"], grid["delta_b"])]
        np.testing.assert_allclose(grid["profit"].to_numpy(), expected, rtol=1e-6)

        base = grid[(grid["delta_a"] == 0.0) & (grid["delta_b"] == 0.0)]
        assert base["profit_ratio"].iloc[0] == 1.0

    def test_unseen_levels_fail_every_cell(self):
        frame = self.panel.frame
        frame["store_id"] = "S_NEW"
        frame["week"] = np.arange(len(frame))
        grid = simulate(self.model_a, self.model_b, frame, "p_a", "p_b", DELTAS,
                        COST_A, COST_B, RETAIL_MARGIN, on_unseen="raise")
        assert (grid["status"] == "failed").all()
        assert grid["profit_ratio"].isna().all()

    def test_unit_cost(self):
        prices = np.array([2.0, 4.0])
        assert unit_cost(prices, 0.4, 0.25) == pytest.approx(0.6 * 0.75 * 3.0)

    def test_profit_matrix_and_best_cell(self):
        grid = self.run()
        matrix = profit_matrix(grid)
        assert matrix.shape == (5, 5)
        assert matrix.loc[0.0, 0.0] == 1.0
        best = best_cell(grid)
        assert best["profit"] == grid["profit"].max()


# ============================================================
# VALIDATION & ELASTICITY REPORTING
# ============================================================

class TestValidation:
    def setup_method(self):
        self.panel, self.specs, _ = generate_panel(n_stores=8, n_weeks=60, seed=5)

    def test_fit_metrics_perfect(self):
        m = compute_fit_metrics([1.0, 2.0, 3.0], [1.0, 2.0, 3.0])
        assert m.rmse == 0.0
        assert m.r_squared == 1.0
        assert m.n == 3

    def test_fit_metrics_shape_mismatch(self):
        with pytest.raises(ValueError):
            compute_fit_metrics([1.0, 2.0], [1.0])

    def test_split_holds_out_last_periods(self):
        train, holdout = train_validation_split(self.panel, validation_fraction=0.2)
        assert train.column("week").max() < holdout.column("week").min()
        assert holdout.column("week").nunique() == 12

    def test_evaluate_model_with_duplicate_index_labels(self):
        panel = make_exact_panel()
        model = estimate(brand_formula("a", "b"), panel).with_group_effects(panel)
        frame = panel.frame
        frame.index = np.arange(len(frame)) % 50
        link, quantity, n_skipped = evaluate_model(model, frame)
        assert link.n == 100 and quantity.n == 100
        assert n_skipped == 0
        assert link.rmse < 1e-8

    def test_compare_specifications(self):
        train, holdout = train_validation_split(self.panel, validation_fraction=0.2)
        base = Formula.build("log1p(q_a)", ["log(p_a)"], ("store_id", "month"))
        formulas = [base, base.with_regressors("log(p_b)", "promo_a")]
        models, table = compare_specifications(formulas, train, holdout)
        assert len(models) == 2 and len(table) == 2
        assert all(m.has_group_effects for m in models)
        assert (table["holdout_skipped"] == 0).all()
        assert table["n_regressors"].tolist() == [1, 3]


class TestElasticity:
    def setup_method(self):
        self.panel = make_exact_panel()
        noisy = make_noisy(self.panel)
        self.models = {
            "a": estimate(brand_formula("a", "b"), noisy),
            "b": estimate(brand_formula("b", "a"), noisy),
        }

    def test_classify_cross(self):
        assert classify_cross(0.4, 0.01) == "substitute"
        assert classify_cross(-0.4, 0.01) == "complement"
        assert classify_cross(0.4, 0.5) == "unrelated"

    def test_table(self):
        truth = {"a": {"a": TRUE["a"]["own"], "b": TRUE["a"]["cross"]},
                 "b": {"b": TRUE["b"]["own"], "a": TRUE["b"]["cross"]}}
        table = elasticity_table(self.models, {"a": "log(p_a)", "b": "log(p_b)"}, truth)
        assert len(table) == 4
        own = table[table["kind"] == "own"]
        assert len(own) == 2
        assert (own["elasticity"] < 0).all()
        assert (table["estimation_error"] < 0.3).all()

    def test_matrix(self):
        table = elasticity_table(self.models, {"a": "log(p_a)", "b": "log(p_b)"})
        matrix = elasticity_matrix(table)
        assert matrix.shape == (2, 2)


# ============================================================
# INTEGRATION
# ============================================================

class TestIntegration:
    def test_full_pipeline(self):
        panel, specs, _ = generate_panel(n_stores=10, n_weeks=40, seed=9)
        models = {}
        for own, rival in (("a", "b"), ("b", "a")):
            formula = Formula.build(
                f"log1p(q_{own})", [f"log(p_{own})", f"log(p_{rival})", f"promo_{own}"],
                ("store_id", "week"),
            )
            models[own] = estimate(formula, panel).with_group_effects(panel)
            assert models[own].coef[f"log(p_{own})"] < 0

        cost_a = unit_cost(panel.column("p_a"), 0.35, 0.25)
        cost_b = unit_cost(panel.column("p_b"), 0.35, 0.25)
        grid = simulate(models["a"], models["b"], panel, "p_a", "p_b",
                        DELTAS, cost_a, cost_b, 0.25)
        assert len(grid) == 25
        assert (grid["status"] == "ok").all()
        assert grid.loc[(grid["delta_a"] == 0) & (grid["delta_b"] == 0), "profit_ratio"].iloc[0] == 1.0
