"""Tests for building and checking per-column specifications."""
import numpy as np
import pandas as pd
import pytest

from smcimpute.covariates import CovariateMethod, CovariateSpec, build_covariate_specs
from smcimpute.covariates.spec import resolve_covariate_specs
from smcimpute.errors import InvalidInput


@pytest.fixture
def frame():
    return pd.DataFrame({
        "y": [1.0, 2.0, 3.0, 4.0],
        "x": [0.5, np.nan, 1.5, 2.0],
        "w": [1.0, 0.0, np.nan, 1.0],
        "z": [0.1, 0.2, 0.3, 0.4],
    })


class TestBuildCovariateSpecs:
    def test_sequence(self, frame):
        specs = build_covariate_specs(frame, ["", "norm", "logreg", ""])
        assert [s.method for s in specs] == [
            CovariateMethod.NONE, CovariateMethod.NORM, CovariateMethod.LOGREG,
            CovariateMethod.NONE,
        ]
        assert [s.imputed for s in specs] == [False, True, True, False]

    def test_mapping(self, frame):
        specs = build_covariate_specs(frame, {"x": "norm"}, predictors={"x": "z"})
        assert specs[1] == CovariateSpec("x", CovariateMethod.NORM, "z")
        assert not specs[2].imputed

    def test_length_mismatch(self, frame):
        with pytest.raises(InvalidInput):
            build_covariate_specs(frame, ["", "norm"])

    def test_unknown_column(self, frame):
        with pytest.raises(InvalidInput):
            build_covariate_specs(frame, {"q": "norm"})

    def test_predictors_for_unimputed_column(self, frame):
        with pytest.raises(InvalidInput):
            build_covariate_specs(frame, {"x": "norm"}, predictors={"z": "x"})


class TestResolveCovariateSpecs:
    """Consistency of methods, missingness and predictors."""

    def test_default_predictors(self, frame):
        specs = build_covariate_specs(frame, ["", "norm", "logreg", ""])
        active = resolve_covariate_specs(frame, specs, ["x", "w", "z"], ["y"])
        assert [(s.column, s.predictors) for s in active] == [("x", "w + z"), ("w", "x + z")]

    def test_lone_covariate_gets_intercept_only(self, frame):
        specs = build_covariate_specs(frame[["y", "x"]], ["", "norm"])
        active = resolve_covariate_specs(frame[["y", "x"]], specs, ["x"], ["y"])
        assert active[0].predictors == "1"

    def test_fully_observed_with_method(self, frame):
        specs = build_covariate_specs(frame, ["", "norm", "logreg", "norm"])
        with pytest.raises(InvalidInput):
            resolve_covariate_specs(frame, specs, ["x", "w", "z"], ["y"])

    def test_missing_without_method(self, frame):
        specs = build_covariate_specs(frame, ["", "norm", "", ""])
        with pytest.raises(InvalidInput, match="'w'"):
            resolve_covariate_specs(frame, specs, ["x", "w", "z"], ["y"])

    def test_missing_predictor_without_method(self, frame):
        specs = build_covariate_specs(frame, ["", "norm", "", ""], predictors={"x": "w"})
        with pytest.raises(InvalidInput):
            resolve_covariate_specs(frame, specs, ["x", "z"], ["y"])

    def test_unused_incomplete_column_is_allowed(self, frame):
        specs = build_covariate_specs(frame, ["", "norm", "", ""])
        active = resolve_covariate_specs(frame, specs, ["x", "z"], ["y"])
        assert [s.column for s in active] == ["x"]

    def test_outcome_cannot_be_imputed(self):
        data = pd.DataFrame({"y": [1.0, np.nan, 0.0], "x": [1.0, 2.0, 3.0]})
        specs = build_covariate_specs(data, ["logreg", ""])
        with pytest.raises(InvalidInput):
            resolve_covariate_specs(data, specs, ["x"], ["y"])

    def test_self_predictor(self, frame):
        specs = build_covariate_specs(frame, {"x": "norm", "w": "logreg"},
                                      predictors={"x": "x + z"})
        with pytest.raises(InvalidInput):
            resolve_covariate_specs(frame, specs, ["x", "w", "z"], ["y"])

    def test_family_validation_runs(self, frame):
        specs = build_covariate_specs(frame, {"x": "logreg", "w": "logreg"})
        with pytest.raises(InvalidInput):
            resolve_covariate_specs(frame, specs, ["x", "w", "z"], ["y"])
