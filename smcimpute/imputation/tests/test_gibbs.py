"""Tests for the single-chain Gibbs engine."""
import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from smcimpute.covariates import build_covariate_specs
from smcimpute.errors import InvalidInput, RejectionLimitExceeded
from smcimpute.imputation.gibbs import GibbsEngine, impute_once
from smcimpute.substantive import SubstantiveModelSpec
from smcimpute.substantive.glm import LinearModel


def _lm_spec():
    return SubstantiveModelSpec.create("lm", "y ~ x + z")


class TestGibbsEngine:
    """One imputed dataset per run."""

    def test_complete_data_is_unchanged(self, linear_data):
        data = linear_data.dropna()
        specs = build_covariate_specs(data, ["", "", ""])
        run = impute_once(data, specs, _lm_spec(), iterations=3, rng=1)
        pd.testing.assert_frame_equal(run.dataset, data)
        assert run.trace.shape == (3, 3)
        np.testing.assert_array_equal(run.trace[0], run.trace[2])

    def test_fills_missing_and_keeps_observed(self, linear_data):
        specs = build_covariate_specs(linear_data, ["", "norm", ""])
        run = impute_once(linear_data, specs, _lm_spec(), iterations=4, rng=2)
        observed = linear_data["x"].notna()
        assert not run.dataset["x"].isna().any()
        pd.testing.assert_series_equal(run.dataset.loc[observed, "x"], linear_data.loc[observed, "x"])
        assert run.dataset.index.equals(linear_data.index)
        assert run.coef_names == ["Intercept", "x", "z"]
        assert run.trace.shape == (4, 3)
        assert np.isfinite(run.trace).all()
        assert run.attempts["x"] >= 4 * linear_data["x"].isna().sum()

    def test_input_not_modified(self, linear_data):
        before = linear_data.copy()
        specs = build_covariate_specs(linear_data, ["", "norm", ""])
        impute_once(linear_data, specs, _lm_spec(), iterations=1, rng=3)
        pd.testing.assert_frame_equal(linear_data, before)

    def test_same_seed_same_result(self, linear_data):
        specs = build_covariate_specs(linear_data, ["", "norm", ""])
        first = impute_once(linear_data, specs, _lm_spec(), iterations=2, rng=5)
        second = impute_once(linear_data, specs, _lm_spec(), iterations=2, rng=5)
        pd.testing.assert_frame_equal(first.dataset, second.dataset)
        np.testing.assert_array_equal(first.trace, second.trace)

    def test_zero_iterations(self, linear_data):
        specs = build_covariate_specs(linear_data, ["", "norm", ""])
        with pytest.raises(InvalidInput):
            impute_once(linear_data, specs, _lm_spec(), iterations=0)

    def test_validation_happens_at_construction(self, linear_data):
        specs = build_covariate_specs(linear_data, ["", "norm", ""])
        with pytest.raises(InvalidInput):
            GibbsEngine(linear_data, specs, SubstantiveModelSpec.create("lm", "y ~ x + nothere"))
        with pytest.raises(InvalidInput):
            GibbsEngine(linear_data.iloc[:0], specs, _lm_spec())
        with pytest.raises(InvalidInput):
            GibbsEngine(linear_data.to_numpy(), specs, _lm_spec())

    def test_missing_outcome(self, linear_data):
        data = linear_data.copy()
        data.loc[data.index[0], "y"] = np.nan
        specs = build_covariate_specs(data, ["", "norm", ""])
        with pytest.raises(InvalidInput):
            GibbsEngine(data, specs, _lm_spec())

    def test_rejection_limit(self, linear_data, monkeypatch):
        monkeypatch.setattr(
            LinearModel, "acceptance_weight", lambda self, frame, params: np.zeros(len(frame))
        )
        data = linear_data.set_axis([f"id{i}" for i in range(len(linear_data))])
        specs = build_covariate_specs(data, ["", "norm", ""])
        with pytest.raises(RejectionLimitExceeded) as info:
            impute_once(data, specs, _lm_spec(), iterations=2, rng=0, rjlimit=1, imputation=3)
        err = info.value
        assert err.covariate == "x"
        assert err.iteration == 0
        assert err.imputation == 3
        assert err.subjects == list(data.index[data["x"].isna()])

    def test_passive_terms(self, linear_data):
        spec = SubstantiveModelSpec.create("lm", "y ~ x + I(x**2) + z")
        specs = build_covariate_specs(linear_data, ["", "norm", ""])
        run = impute_once(linear_data, specs, spec, iterations=2, rng=4)
        assert run.coef_names == ["Intercept", "x", "I(x ** 2)", "z"]
        assert np.isfinite(run.trace).all()


class TestCovariateTypes:
    """Every imputation method produces values of the right kind."""

    def test_categorical_covariates(self):
        rng = np.random.default_rng(8)
        n = 300
        z = rng.normal(size=n)
        eta = np.column_stack([np.zeros(n), 0.5 + z, -0.5 - z])
        p = np.exp(eta) / np.exp(eta).sum(axis=1, keepdims=True)
        codes = (np.cumsum(p, axis=1) < rng.uniform(size=n)[:, None]).sum(axis=1)
        levels = np.array(["low", "mid", "high"])
        y = 0.5 * (codes == 1) - 0.5 * (codes == 2) + z + rng.normal(size=n)
        g = pd.Categorical(levels[codes], categories=levels)
        g[rng.uniform(size=n) < 0.25] = np.nan
        o = pd.Categorical(levels[codes], categories=levels, ordered=True)
        o[rng.uniform(size=n) < 0.25] = np.nan
        data = pd.DataFrame({"y": y, "g": g, "o": o, "z": z})

        for column, method in [("g", "mlogit"), ("o", "podds")]:
            frame = data.drop(columns=["o" if column == "g" else "g"])
            specs = build_covariate_specs(frame, {column: method})
            sm_spec = SubstantiveModelSpec.create("lm", f"y ~ {column} + z")
            run = impute_once(frame, specs, sm_spec, iterations=2, rng=9)
            imputed = run.dataset[column]
            assert not imputed.isna().any()
            assert imputed.dtype == frame[column].dtype
            assert set(imputed.unique()) <= set(levels)
            assert run.attempts == {}

    def test_poisson_covariate(self):
        rng = np.random.default_rng(10)
        n = 300
        z = rng.normal(size=n)
        x = rng.poisson(np.exp(0.5 + 0.3 * z)).astype(float)
        y = 0.3 * x + z + rng.normal(size=n)
        x[rng.uniform(size=n) < 0.3] = np.nan
        data = pd.DataFrame({"y": y, "x": x, "z": z})
        run = impute_once(data, build_covariate_specs(data, {"x": "poisson"}),
                          _lm_spec(), iterations=2, rng=11)
        imputed = run.dataset["x"]
        assert (imputed >= 0).all()
        assert (imputed == np.round(imputed)).all()

    def test_custom_predictors(self, linear_data):
        data = linear_data.assign(w=lambda df: df["z"] * 2 + 1)
        specs = build_covariate_specs(data, {"x": "norm"}, predictors={"x": "w"})
        run = impute_once(data, specs, _lm_spec(), iterations=2, rng=12)
        assert not run.dataset["x"].isna().any()

    def test_two_covariates_in_order(self):
        rng = np.random.default_rng(13)
        n = 400
        z = rng.normal(size=n)
        x1 = (rng.uniform(size=n) < expit(z)).astype(float)
        x2 = z + x1 + rng.normal(size=n)
        y = (rng.uniform(size=n) < expit(-0.5 + x1 + 0.5 * x2)).astype(float)
        x1[rng.uniform(size=n) < 0.2] = np.nan
        x2[rng.uniform(size=n) < 0.2] = np.nan
        data = pd.DataFrame({"y": y, "x1": x1, "x2": x2, "z": z})
        spec = SubstantiveModelSpec.create("logistic", "y ~ x1 + x2 + z")
        run = impute_once(data, build_covariate_specs(data, ["", "logreg", "norm", ""]),
                          spec, iterations=3, rng=14)
        assert set(run.dataset["x1"].unique()) <= {0.0, 1.0}
        assert not run.dataset.isna().any().any()
        assert list(run.attempts) == ["x2"]

    def test_string_coded_binary(self):
        rng = np.random.default_rng(15)
        n = 300
        z = rng.normal(size=n)
        x = rng.uniform(size=n) < expit(z)
        y = 0.5 * x + z + rng.normal(size=n)
        labels = np.where(x, "yes", "no").astype(object)
        labels[rng.uniform(size=n) < 0.3] = None
        data = pd.DataFrame({"y": y, "x": labels, "z": z})
        run = impute_once(data, build_covariate_specs(data, {"x": "logreg"}),
                          _lm_spec(), iterations=2, rng=16)
        imputed = run.dataset["x"]
        assert not imputed.isna().any()
        assert set(imputed.unique()) == {"no", "yes"}
        assert imputed.dtype == object
        assert run.coef_names == ["Intercept", "x[T.yes]", "z"]
        observed = data["x"].notna()
        pd.testing.assert_series_equal(imputed[observed], data.loc[observed, "x"])
