"""Substantive-model-compatible Gibbs sampler for one imputed dataset.

Missing covariate values start as a bootstrap sample of the observed values of
their column. Each iteration then visits the imputed covariates in declaration
order. For each one the substantive model is refitted and a parameter vector
drawn, the covariate's conditional model is fitted and drawn, and new values
are generated for the missing rows so that they are compatible with both:

* discrete covariates are drawn from the conditional model probabilities of
  every level, reweighted by the substantive model likelihood;
* continuous covariates are drawn by rejection sampling, proposing from the
  conditional model and accepting with the (bounded) substantive model
  likelihood.

After the covariates, censored event times are optionally imputed, and the
substantive model is refitted to record its point estimates in the trace.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from smcimpute.covariates.families import ConditionalFamily, resolve_family
from smcimpute.covariates.spec import CovariateSpec, resolve_covariate_specs
from smcimpute.design import DesignBuilder
from smcimpute.errors import InvalidInput, SMCImputeError
from smcimpute.sampler.rejection import DrawContext, RejectionSampler
from smcimpute.substantive import SubstantiveModelSpec, build_substantive_model

logger = logging.getLogger(__name__)


@dataclass
class ImputationRun:
    """Output of one chain.

    Attributes:
        dataset: Completed copy of the data, same index and columns.
        trace: Substantive model estimates, shape ``(iterations, n_coef)``.
        coef_names: Names of the trace columns.
        attempts: Total rejection sampling proposals per continuous covariate.
    """
    dataset: pd.DataFrame
    trace: np.ndarray
    coef_names: List[str]
    attempts: Dict[str, int]


class GibbsEngine:
    """Validated imputation problem, ready to produce completed datasets.

    All argument checking happens in the constructor, so a malformed problem
    fails with :class:`InvalidInput` before any random number is drawn.
    """

    def __init__(
        self,
        data: pd.DataFrame,
        covariate_specs: Sequence[CovariateSpec],
        sm_spec: SubstantiveModelSpec,
        rjlimit: int = 1000,
    ):
        if not isinstance(data, pd.DataFrame):
            raise InvalidInput(f"data must be a pandas DataFrame, got {type(data).__name__}")
        if len(data) == 0:
            raise InvalidInput("data has no rows")
        if data.columns.duplicated().any():
            raise InvalidInput("data has duplicated column names")

        self.data = data
        self.sm_spec = sm_spec
        self.model = build_substantive_model(sm_spec)
        self.model.validate(data)
        self.sm_covariates = self.model.covariate_columns(list(data.columns))
        self.specs = resolve_covariate_specs(
            data, covariate_specs, self.sm_covariates, self.model.outcome_columns
        )
        self.families: Dict[str, ConditionalFamily] = {
            s.column: resolve_family(s.method) for s in self.specs
        }
        self.model.check_imputed_covariates(
            [s.column for s in self.specs if not self.families[s.column].discrete]
        )
        self.levels = {s.column: self.families[s.column].levels(data[s.column]) for s in self.specs}
        self.missing = {s.column: data[s.column].isna().to_numpy() for s in self.specs}
        self.sampler = RejectionSampler(max_draws=rjlimit)
        self._check_designs()

    @property
    def imputed_columns(self) -> List[str]:
        return [s.column for s in self.specs]

    def _check_designs(self):
        """Build every design once on a crudely filled copy to surface formula errors."""
        filled = self.data.reset_index(drop=True)
        for spec in self.specs:
            column = filled[spec.column]
            filled[spec.column] = column.fillna(column.dropna().iloc[0])
        self.model.prepare(filled)
        for spec in self.specs:
            DesignBuilder(spec.predictors, filled, intercept=True)

    def run(self, iterations: int, rng=None, imputation: int = 0) -> ImputationRun:
        """Run one chain for ``iterations`` iterations and return its final state."""
        if isinstance(iterations, bool) or not isinstance(iterations, (int, np.integer)) or iterations < 1:
            raise InvalidInput(f"numit must be a positive integer, got {iterations!r}")
        rng = np.random.default_rng(rng)
        model = self.model

        data = self.data.reset_index(drop=True)
        for spec in self.specs:
            self._seed_column(data, spec.column, rng)

        time_state = None
        if model.imputes_times:
            data[model.time_column] = data[model.time_column].astype(float)
            data[model.event_column] = data[model.event_column].astype(float)
            censored = data[model.event_column].to_numpy() == 0
            time_state = (censored, data[model.time_column].to_numpy()[censored].copy())

        model.prepare(data)
        designs = {
            s.column: DesignBuilder(s.predictors, data, intercept=True) for s in self.specs
        }
        fit_rows = model.covariate_model_rows(data)
        names = model.coef_names
        trace = np.empty((iterations, len(names)))
        attempts = {s.column: 0 for s in self.specs if not self.families[s.column].discrete}

        fit = None
        for iteration in range(iterations):
            for spec in self.specs:
                if fit is None:
                    fit = model.fit(data)
                sm_params = model.draw(fit, data, rng)
                context = DrawContext(spec.column, iteration, imputation)
                n_attempts = self._impute_covariate(
                    data, spec, designs[spec.column], fit_rows, sm_params, rng, context
                )
                if spec.column in attempts:
                    attempts[spec.column] += n_attempts
                    logger.debug(
                        "Imputation %d iteration %d: %d proposals for %d missing '%s'",
                        imputation + 1, iteration + 1, n_attempts,
                        int(self.missing[spec.column].sum()), spec.column,
                    )
                fit = None

            if time_state is not None:
                if fit is None:
                    fit = model.fit(data)
                self._impute_times(data, time_state, model.draw(fit, data, rng), rng)
                fit = None

            if fit is None:
                fit = model.fit(data)
            trace[iteration] = model.coefficients(fit)
            logger.debug(
                "Imputation %d iteration %d: %s", imputation + 1, iteration + 1,
                np.array2string(trace[iteration], precision=4),
            )

        data.index = self.data.index
        return ImputationRun(dataset=data, trace=trace, coef_names=list(names), attempts=attempts)

    def _seed_column(self, data, column, rng):
        missing = self.missing[column]
        observed = np.flatnonzero(~missing)
        picks = rng.integers(0, len(observed), size=int(missing.sum()))
        values = data[column].to_numpy()[observed[picks]]
        data.loc[missing, column] = values

    def _impute_covariate(self, data, spec, design, fit_rows, sm_params, rng, context) -> int:
        column = spec.column
        family = self.families[column]
        levels = self.levels[column]
        missing_rows = np.flatnonzero(self.missing[column])

        X = design.matrix(data)
        y = family.encode(data[column], levels)
        n_levels = len(levels) if family.discrete else None
        draw = family.fit(X[fit_rows], y[fit_rows], rng, n_levels=n_levels)

        if family.discrete:
            self._draw_discrete(data, column, levels, missing_rows, X, draw, sm_params, rng)
            return 0

        context.subjects = self.data.index[missing_rows]
        X_missing = X[missing_rows]
        base = data.iloc[missing_rows]

        def propose(pending, r):
            return draw.sample(X_missing[pending], r)

        def weight(candidates, pending):
            frame = base.iloc[pending].copy()
            frame[column] = candidates
            return self.model.acceptance_weight(frame, sm_params)

        result = self.sampler.sample(propose, weight, len(missing_rows), rng, context)
        data.loc[missing_rows, column] = result.values
        return result.total_attempts

    def _draw_discrete(self, data, column, levels, missing_rows, X, draw, sm_params, rng):
        base = data.iloc[missing_rows]
        dtype = data[column].dtype
        likelihood = np.column_stack([
            self.model.likelihood(_with_value(base, column, level, dtype), sm_params)
            for level in levels
        ])
        probs = draw.probabilities(X[missing_rows]) * likelihood
        total = probs.sum(axis=1, keepdims=True)
        if not np.all(np.isfinite(total)) or np.any(total <= 0):
            raise SMCImputeError(
                f"Every level of '{column}' has zero probability for some subjects; "
                "the covariate and substantive models are incompatible"
            )
        probs = probs / total
        u = rng.uniform(size=len(missing_rows))
        codes = (np.cumsum(probs, axis=1) < u[:, None]).sum(axis=1)
        codes = np.minimum(codes, len(levels) - 1)
        data.loc[missing_rows, column] = np.asarray(levels)[codes]

    def _impute_times(self, data, time_state, sm_params, rng):
        censored, censoring_times = time_state
        model = self.model
        frame = data.loc[censored].copy()
        frame[model.time_column] = censoring_times
        frame[model.event_column] = 0.0
        times, events = model.impute_times(frame, sm_params, rng)
        data.loc[censored, model.time_column] = times
        data.loc[censored, model.event_column] = events


def _with_value(frame: pd.DataFrame, column: str, value, dtype) -> pd.DataFrame:
    frame = frame.copy()
    frame[column] = pd.Series(np.repeat(value, len(frame)), index=frame.index).astype(dtype)
    return frame


def impute_once(
    data: pd.DataFrame,
    covariate_specs: Sequence[CovariateSpec],
    sm_spec: SubstantiveModelSpec,
    iterations: int,
    rng=None,
    rjlimit: int = 1000,
    imputation: int = 0,
) -> ImputationRun:
    """Produce one completed dataset and its coefficient trace."""
    engine = GibbsEngine(data, covariate_specs, sm_spec, rjlimit=rjlimit)
    return engine.run(iterations, rng=rng, imputation=imputation)
