"""Public entry points.

``smcfcs`` covers every substantive model type; the ``smcfcs_*`` functions
are convenience wrappers naming the extra arguments of particular model
types, and ``smcfcs_parallel`` splits the imputations of any of them over a
joblib worker pool.
"""

import inspect
import logging
from contextlib import contextmanager
from typing import Mapping, Optional, Sequence, Union

import pandas as pd
from joblib import cpu_count

from smcimpute.config import ImputationConfig
from smcimpute.covariates.spec import build_covariate_specs
from smcimpute.design import parse_formula
from smcimpute.errors import InvalidInput
from smcimpute.imputation.driver import (
    JoblibExecutor,
    MultipleImputationDriver,
    MultipleImputationResult,
    determine_imp_specs,
)
from smcimpute.substantive import (
    SubstantiveModelSpec,
    SubstantiveModelType,
    substantive_model_class,
)


logger = logging.getLogger(__name__)

_PACKAGE_LOGGER = "smcimpute"


@contextmanager
def _progress_logging(noisy: bool):
    """Route package INFO messages to stderr for the duration of a noisy call."""
    if not noisy:
        yield
        return
    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s: %(message)s"))
    previous = package_logger.level
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)
    try:
        yield
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(previous)


def _impute(data, sm_spec, method, predictors, config: ImputationConfig) -> MultipleImputationResult:
    config.validate()
    specs = build_covariate_specs(data, method, predictors)
    executor = None
    chunks = None
    if config.n_jobs > 1:
        executor = JoblibExecutor(n_jobs=config.n_jobs, backend=config.backend)
        chunks = determine_imp_specs(config.n_jobs, config.m, config.m_per_worker)
    with _progress_logging(config.noisy):
        driver = MultipleImputationDriver(executor=executor, rjlimit=config.rjlimit, noisy=config.noisy)
        return driver.run(data, specs, sm_spec, config.m, config.numit, config.seed, chunks=chunks)


def smcfcs(
    data: pd.DataFrame,
    smtype: Union[str, SubstantiveModelType],
    smformula: Union[str, Sequence[str]],
    method: Union[Sequence[str], Mapping[str, str]],
    m: int = 5,
    numit: int = 10,
    rjlimit: int = 1000,
    seed: Optional[int] = None,
    predictors: Optional[Mapping[str, str]] = None,
    noisy: bool = False,
    config: Optional[ImputationConfig] = None,
    **sm_options,
) -> MultipleImputationResult:
    """Multiple imputation of covariates compatible with a substantive model.

    Args:
        data: Data with missing covariate values as NaN.
        smtype: One of ``lm``, ``logistic``, ``poisson``, ``coxph``,
            ``compet``, ``flexsurv``, ``dtsam``, ``casecohort``, ``nestedcc``.
        smformula: Substantive model formula, e.g. ``"y ~ x + z"`` or
            ``"Surv(t, d) ~ x + z"``; a list of ``Surv(t, d == k) ~ ...``
            formulas for competing risks.
        method: Imputation method per column, either aligned with
            ``data.columns`` (``""`` for columns not imputed) or a mapping
            from column name to method.
        m: Number of imputed datasets.
        numit: Gibbs iterations per imputed dataset.
        rjlimit: Rejection sampling attempt limit per subject.
        seed: Seed for reproducible results.
        predictors: Optional mapping from imputed column to the right-hand
            side of its conditional model, e.g. ``{"x": "z + w"}``. By
            default every other covariate of the substantive model is used.
        noisy: Log progress at INFO level and show a progress bar.
        config: Run-control settings; when given, they replace ``m``,
            ``numit``, ``rjlimit``, ``seed`` and ``noisy``.
        **sm_options: Options of the substantive model type.

    Returns:
        The imputed datasets and the substantive model coefficient trace.
    """
    if config is None:
        config = ImputationConfig(m=m, numit=numit, rjlimit=rjlimit, seed=seed, noisy=noisy)
    sm_spec = SubstantiveModelSpec.create(smtype, smformula, **sm_options)
    return _impute(data, sm_spec, method, predictors, config)


def smcfcs_flexsurv(data, smformula, method, k=2, impute_times=False, censtime=None,
                    original_knots=True, **kwargs) -> MultipleImputationResult:
    """Imputation compatible with a Royston-Parmar proportional hazards model.

    Args:
        k: Number of internal spline knots.
        impute_times: Also impute the event times of censored subjects.
        censtime: Administrative censoring time(s) for imputed event times;
            a scalar, or one value per row or per censored row. Imputed times
            beyond it are censored at it. Without it every censored subject
            gets an event time.
        original_knots: Keep the knots placed on the observed data; otherwise
            place them again at each fit.
    """
    return smcfcs(data, SubstantiveModelType.FLEXSURV, smformula, method, k=k,
                  impute_times=impute_times, censtime=censtime,
                  original_knots=original_knots, **kwargs)


def smcfcs_dtsam(data, smformula, method, time_effects="factor", **kwargs) -> MultipleImputationResult:
    """Imputation compatible with a discrete time survival model.

    ``time_effects`` is ``"factor"`` (one hazard parameter per period),
    ``"linear"`` or ``"quad"``.
    """
    return smcfcs(data, SubstantiveModelType.DTSAM, smformula, method,
                  time_effects=time_effects, **kwargs)


def smcfcs_casecohort(data, smformula, method, sampfrac, in_subcohort, **kwargs) -> MultipleImputationResult:
    """Imputation for case-cohort studies.

    Args:
        sampfrac: Fraction of the full cohort sampled into the subcohort.
        in_subcohort: Name of the 0/1 subcohort membership column.
    """
    return smcfcs(data, SubstantiveModelType.CASECOHORT, smformula, method,
                  sampfrac=sampfrac, in_subcohort=in_subcohort, **kwargs)


def smcfcs_nestedcc(data, smformula, method, set_col, event_col, nrisk_col, **kwargs) -> MultipleImputationResult:
    """Imputation for nested case-control studies.

    Args:
        set_col: Column identifying matched sets.
        event_col: Case indicator column; must be the event of ``smformula``.
        nrisk_col: Number at risk in the full cohort at the case time of each set.
    """
    formula = parse_formula(smformula)
    if formula.event is not None and formula.event != event_col:
        raise InvalidInput(
            f"event_col '{event_col}' does not match the event '{formula.event}' of the formula"
        )
    return smcfcs(data, SubstantiveModelType.NESTEDCC, smformula, method,
                  set_col=set_col, nrisk_col=nrisk_col, **kwargs)


_FUNCTIONS = {
    "smcfcs": smcfcs,
    "smcfcs_flexsurv": smcfcs_flexsurv,
    "smcfcs_dtsam": smcfcs_dtsam,
    "smcfcs_casecohort": smcfcs_casecohort,
    "smcfcs_nestedcc": smcfcs_nestedcc,
}

_RUN_CONTROL = ("numit", "rjlimit", "noisy")


def _accepted_arguments(func_name, kwargs):
    params = set()
    for fn in {_FUNCTIONS[func_name], smcfcs}:
        params.update(
            name for name, p in inspect.signature(fn).parameters.items()
            if p.kind is not inspect.Parameter.VAR_KEYWORD
        )
    if func_name == "smcfcs" and "smtype" in kwargs:
        smtype = SubstantiveModelType.parse(kwargs["smtype"])
        params.update(substantive_model_class(smtype).option_defaults)
    if func_name != "smcfcs":
        params.discard("smtype")
    return params - {"config", "m", "seed"}


def smcfcs_parallel(
    func: str = "smcfcs",
    seed: Optional[int] = None,
    m: int = 5,
    n_jobs: Optional[int] = None,
    m_per_worker: Optional[int] = None,
    backend: str = "loky",
    **kwargs,
) -> MultipleImputationResult:
    """Run one of the smcfcs functions with its imputations split over workers.

    Results for a given ``seed`` are the same whatever ``n_jobs`` and
    ``m_per_worker`` are.

    Args:
        func: Name of the function to run, e.g. ``"smcfcs_flexsurv"``.
        seed: Seed for reproducible results.
        m: Total number of imputations.
        n_jobs: Number of workers; defaults to one less than the number of
            CPUs, capped at ``m``.
        m_per_worker: Imputations per worker; at most ``m // n_jobs``.
        backend: joblib backend.
        **kwargs: Arguments of ``func``.
    """
    if func not in _FUNCTIONS:
        raise InvalidInput(f"Unknown function {func!r}; expected one of {', '.join(_FUNCTIONS)}")
    unknown = sorted(set(kwargs) - _accepted_arguments(func, kwargs))
    if unknown:
        raise InvalidInput(f"{func} does not accept argument(s): {', '.join(unknown)}")

    if isinstance(m, bool) or not isinstance(m, int) or m < 1:
        raise InvalidInput(f"m must be a positive integer, got {m!r}")
    if n_jobs is None:
        n_jobs = max(1, min(cpu_count() - 1, m))
    settings = {name: kwargs.pop(name) for name in _RUN_CONTROL if name in kwargs}
    config = ImputationConfig(
        m=m, seed=seed, n_jobs=n_jobs, m_per_worker=m_per_worker, backend=backend, **settings
    ).validate()
    if m_per_worker is not None and m_per_worker > m // n_jobs:
        raise InvalidInput(
            f"m_per_worker ({m_per_worker}) cannot exceed m // n_jobs ({m // n_jobs})"
        )
    logger.info("Splitting %d imputation(s) over %d worker(s)", m, n_jobs)
    return _FUNCTIONS[func](config=config, **kwargs)
