"""End-to-end tests of the public entry points."""
import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

import smcimpute
from smcimpute import (
    ImputationConfig,
    InvalidInput,
    WorkerFailure,
    smcfcs,
    smcfcs_casecohort,
    smcfcs_dtsam,
    smcfcs_flexsurv,
    smcfcs_nestedcc,
    smcfcs_parallel,
)
from smcimpute.substantive.glm import LogisticModel
from smcimpute.substantive.tests.test_survival_models import make_nested_case_control


class TestSmcfcs:
    """Generic entry point."""

    def test_logistic_scenario(self, logistic_data):
        result = smcfcs(logistic_data, "logistic", "y ~ x + z", ["", "norm", ""],
                        m=5, numit=10, seed=123)
        assert len(result.imp_datasets) == 5
        assert result.sm_coef_iter.shape == (5, 10, 3)
        assert not np.isnan(result.sm_coef_iter).any()
        assert result.sm_coef_names == ["Intercept", "x", "z"]
        for dataset in result.imp_datasets:
            assert dataset.shape == logistic_data.shape
            assert not dataset.isna().any().any()
        # the true effects are 1 and 1
        final = result.sm_coef_iter[:, -1, 1:].mean(axis=0)
        np.testing.assert_allclose(final, [1.0, 1.0], atol=0.35)

    def test_seed_determinism(self, linear_data):
        kwargs = dict(m=2, numit=2, seed=99)
        first = smcfcs(linear_data, "lm", "y ~ x + z", ["", "norm", ""], **kwargs)
        second = smcfcs(linear_data, "lm", "y ~ x + z", ["", "norm", ""], **kwargs)
        np.testing.assert_array_equal(first.sm_coef_iter, second.sm_coef_iter)
        for a, b in zip(first, second):
            pd.testing.assert_frame_equal(a, b)

    def test_complete_data(self, linear_data):
        data = linear_data.dropna()
        result = smcfcs(data, "lm", "y ~ x + z", ["", "", ""], m=2, numit=1, seed=1)
        for dataset in result:
            pd.testing.assert_frame_equal(dataset, data)

    def test_zero_iterations(self, linear_data):
        with pytest.raises(InvalidInput):
            smcfcs(linear_data, "lm", "y ~ x + z", ["", "norm", ""], numit=0)

    def test_config(self, linear_data):
        config = ImputationConfig(m=3, numit=2, seed=5)
        result = smcfcs(linear_data, "lm", "y ~ x + z", {"x": "norm"}, config=config)
        assert result.sm_coef_iter.shape == (3, 2, 3)

    def test_unknown_model_option(self, linear_data):
        with pytest.raises(InvalidInput):
            smcfcs(linear_data, "lm", "y ~ x + z", ["", "norm", ""], time_effects="linear")

    def test_noisy_restores_logging(self, linear_data):
        import logging

        level = logging.getLogger("smcimpute").level
        smcfcs(linear_data, "lm", "y ~ x + z", ["", "norm", ""], m=1, numit=1, noisy=True)
        assert logging.getLogger("smcimpute").level == level

    def test_poisson_outcome(self, linear_data, rng):
        data = linear_data.assign(y=rng.poisson(1.0, size=len(linear_data)).astype(float))
        result = smcfcs(data, "poisson", "y ~ x + z", ["", "norm", ""], m=1, numit=2, seed=3)
        assert result.sm_coef_iter.shape == (1, 2, 3)

    def test_package_exports(self):
        assert smcimpute.smcfcs is smcfcs
        assert "MultipleImputationResult" in smcimpute.__all__


class TestFactorNumericEquivalence:
    """0/1 numeric and two-level categorical encodings of one covariate."""

    @pytest.mark.parametrize("formula", ["Surv(t, d) ~ x + z", "Surv(t, d) ~ z + x"])
    def test_term_order_does_not_matter(self, dtsam_data, formula):
        numeric = smcfcs_dtsam(dtsam_data, formula, {"x": "logreg"}, m=2, numit=2, seed=5)
        as_factor = dtsam_data.assign(x=pd.Categorical(dtsam_data["x"], categories=[0.0, 1.0]))
        factor = smcfcs_dtsam(as_factor, formula, {"x": "logreg"}, m=2, numit=2, seed=5)
        np.testing.assert_allclose(numeric.sm_coef_iter, factor.sm_coef_iter, rtol=1e-10, atol=1e-12)
        position = [name.startswith("x") for name in factor.sm_coef_names]
        assert position == [name == "x" for name in numeric.sm_coef_names]

    def test_dtsam_traces_identical(self, dtsam_data):
        """A 0/1 numeric covariate and its two-level categorical give the same trace."""
        numeric = smcfcs_dtsam(dtsam_data, "Surv(t, d) ~ x + z", ["", "", "logreg", ""],
                               m=2, numit=3, seed=17)
        as_factor = dtsam_data.assign(x=pd.Categorical(dtsam_data["x"], categories=[0.0, 1.0]))
        factor = smcfcs_dtsam(as_factor, "Surv(t, d) ~ x + z", ["", "", "logreg", ""],
                              m=2, numit=3, seed=17)
        np.testing.assert_allclose(numeric.sm_coef_iter, factor.sm_coef_iter, rtol=1e-10, atol=1e-12)
        assert factor.sm_coef_names[-2:] == ["x[T.1.0]", "z"]
        for a, b in zip(numeric, factor):
            np.testing.assert_array_equal(a["x"].to_numpy(), b["x"].astype(float).to_numpy())


class TestSurvivalEntryPoints:
    """Cox-type, flexible parametric and discrete time entry points."""

    def test_coxph(self, survival_data):
        result = smcfcs(survival_data, "coxph", "Surv(t, d) ~ x + z", ["", "", "norm", ""],
                        m=2, numit=3, seed=1)
        assert result.sm_coef_names == ["x", "z"]
        assert result.sm_coef_iter.shape == (2, 3, 2)

    def test_competing_risks(self, survival_data, rng):
        data = survival_data.copy()
        data["d"] = np.where(data["d"] == 1, 1 + (rng.uniform(size=len(data)) < 0.4), 0)
        result = smcfcs(data, "compet", ["Surv(t, d == 1) ~ x + z", "Surv(t, d == 2) ~ x + z"],
                        ["", "", "norm", ""], m=1, numit=2, seed=2)
        assert result.sm_coef_names == ["cause1:x", "cause1:z", "cause2:x", "cause2:z"]
        assert not result.imp_datasets[0]["x"].isna().any()

    def test_casecohort(self, survival_data, rng):
        data = survival_data.copy()
        data["sub"] = (rng.uniform(size=len(data)) < 0.3).astype(float)
        data = data[(data["sub"] == 1) | (data["d"] == 1)]
        result = smcfcs_casecohort(data, "Surv(t, d) ~ x + z", {"x": "norm"},
                                   sampfrac=0.3, in_subcohort="sub", m=1, numit=2, seed=3)
        assert result.sm_coef_iter.shape == (1, 2, 2)
        assert not result.imp_datasets[0]["x"].isna().any()

    def test_nestedcc(self):
        data = make_nested_case_control(missing=0.2)
        result = smcfcs_nestedcc(data, "Surv(t, case) ~ x + z", {"x": "norm"},
                                 set_col="setno", event_col="case", nrisk_col="nrisk",
                                 m=1, numit=2, seed=4)
        assert result.sm_coef_names == ["x", "z"]
        assert not result.imp_datasets[0]["x"].isna().any()

    def test_nestedcc_event_mismatch(self):
        data = make_nested_case_control()
        with pytest.raises(InvalidInput):
            smcfcs_nestedcc(data, "Surv(t, case) ~ x", {}, set_col="setno",
                            event_col="d", nrisk_col="nrisk")

    def test_dtsam_non_integer_time(self, dtsam_data):
        data = dtsam_data.copy()
        data.loc[data.index[0], "t"] = 2.5
        with pytest.raises(InvalidInput):
            smcfcs_dtsam(data, "Surv(t, d) ~ x + z", ["", "", "logreg", ""], m=1, numit=1)

    def test_flexsurv_impute_times_with_censtime(self, survival_data):
        result = smcfcs_flexsurv(survival_data, "Surv(t, d) ~ x + z", ["", "", "norm", ""],
                                 k=1, impute_times=True, censtime=10, m=2, numit=2, seed=5)
        originally_censored = survival_data["d"] == 0
        for dataset in result:
            censored = dataset["d"] == 0
            assert (dataset.loc[censored, "t"] == 10).all()
            observed = ~originally_censored
            pd.testing.assert_series_equal(dataset.loc[observed, "t"],
                                           survival_data.loc[observed, "t"])

    def test_flexsurv_impute_times_without_censtime(self, survival_data):
        result = smcfcs_flexsurv(survival_data, "Surv(t, d) ~ x + z", ["", "", "norm", ""],
                                 k=1, impute_times=True, m=1, numit=2, seed=6)
        dataset = result.imp_datasets[0]
        assert (dataset["d"] == 1).all()
        censored = survival_data["d"] == 0
        assert (dataset.loc[censored, "t"] >= survival_data.loc[censored, "t"]).all()

    def test_flexsurv_times_only(self, survival_data):
        data = survival_data.dropna()
        result = smcfcs_flexsurv(data, "Surv(t, d) ~ x + z", ["", "", "", ""],
                                 impute_times=True, censtime=20.0, m=1, numit=1, seed=7)
        assert result.sm_coef_names[:4] == ["gamma0", "gamma1", "gamma2", "gamma3"]


class TestTimeVaryingFlexsurv:
    """gamma1() effects on fully observed and on imputed covariates."""

    @pytest.fixture
    def data(self):
        rng = np.random.default_rng(1234)
        n = 500
        z = rng.normal(size=n)
        x = (rng.uniform(size=n) < expit(z)).astype(float)
        t = -np.log(rng.uniform(size=n)) / np.exp(x + z)
        d = (t < 10).astype(float)
        t[d == 0] = 10.0
        return pd.DataFrame({"t": t, "d": d, "x": x, "z": z})

    def test_fully_observed_continuous(self, data):
        data.loc[np.random.default_rng(1).uniform(size=len(data)) < 0.5, "x"] = np.nan
        result = smcfcs_flexsurv(data, "Surv(t, d) ~ x + z + gamma1(z)", ["", "", "logreg", ""],
                                 k=2, m=1, numit=2, seed=1)
        assert result.sm_coef_names[-1] == "gamma1(z)"
        assert result.sm_coef_iter.shape == (1, 2, 7)
        assert set(result.imp_datasets[0]["x"].unique()) <= {0.0, 1.0}

    def test_partially_observed_binary(self, data):
        data.loc[np.random.default_rng(2).uniform(size=len(data)) < 0.5, "x"] = np.nan
        result = smcfcs_flexsurv(data, "Surv(t, d) ~ x + z + gamma1(x)", ["", "", "logreg", ""],
                                 k=2, m=1, numit=2, seed=2)
        assert result.sm_coef_names[-1] == "gamma1(x)"
        assert not result.imp_datasets[0]["x"].isna().any()

    def test_partially_observed_continuous(self, data):
        data.loc[np.random.default_rng(3).uniform(size=len(data)) < 0.5, "z"] = np.nan
        with pytest.raises(InvalidInput):
            smcfcs_flexsurv(data, "Surv(t, d) ~ x + z + gamma1(z)", ["", "", "", "norm"],
                            k=2, m=1, numit=1, seed=3)


class TestSmcfcsParallel:
    """Argument checks and equivalence with the serial path."""

    def test_matches_serial(self, linear_data):
        serial = smcfcs(linear_data, "lm", "y ~ x + z", ["", "norm", ""], m=4, numit=2, seed=7)
        parallel = smcfcs_parallel(
            seed=7, m=4, n_jobs=2, backend="threading", data=linear_data, smtype="lm",
            smformula="y ~ x + z", method=["", "norm", ""], numit=2,
        )
        np.testing.assert_array_equal(serial.sm_coef_iter, parallel.sm_coef_iter)
        for a, b in zip(serial, parallel):
            pd.testing.assert_frame_equal(a, b)

    def test_wrapper_function(self, dtsam_data):
        result = smcfcs_parallel(
            func="smcfcs_dtsam", seed=1, m=2, n_jobs=2, m_per_worker=1, backend="threading",
            data=dtsam_data, smformula="Surv(t, d) ~ x + z", method=["", "", "logreg", ""],
            time_effects="linear", numit=1,
        )
        assert result.sm_coef_names[:2] == ["Intercept", "tstart"]
        assert result.sm_coef_iter.shape == (2, 1, 4)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"func": "mice"},
            {"m": 0},
            {"m": 2, "n_jobs": 3},
            {"m": 4, "n_jobs": 2, "m_per_worker": 3},
            {"m": 4, "n_jobs": 2, "m_per_worker": 0},
            {"bogus": 1},
            {"func": "smcfcs_dtsam", "sampfrac": 0.5},
        ],
    )
    def test_invalid_arguments(self, linear_data, kwargs):
        base = dict(data=linear_data, smformula="y ~ x + z", method=["", "norm", ""])
        if kwargs.get("func", "smcfcs") == "smcfcs":
            base["smtype"] = "lm"
        with pytest.raises(InvalidInput):
            smcfcs_parallel(**{**base, **kwargs})

    def test_worker_failure(self, logistic_data, monkeypatch):
        monkeypatch.setattr(
            LogisticModel, "acceptance_weight", lambda self, frame, params: np.zeros(len(frame))
        )
        with pytest.raises(WorkerFailure):
            smcfcs_parallel(
                seed=1, m=2, n_jobs=2, backend="threading", data=logistic_data,
                smtype="logistic", smformula="y ~ x + z", method=["", "norm", ""],
                numit=1, rjlimit=1,
            )
