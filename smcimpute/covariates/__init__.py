from smcimpute.covariates.families import (
    ConditionalFamily,
    CovariateMethod,
    LogisticFamily,
    MultinomialFamily,
    NormalFamily,
    PoissonFamily,
    ProportionalOddsFamily,
    draw_normal,
    resolve_family,
)
from smcimpute.covariates.spec import CovariateSpec, build_covariate_specs

__all__ = [
    "ConditionalFamily",
    "CovariateMethod",
    "CovariateSpec",
    "LogisticFamily",
    "MultinomialFamily",
    "NormalFamily",
    "PoissonFamily",
    "ProportionalOddsFamily",
    "build_covariate_specs",
    "draw_normal",
    "resolve_family",
]
