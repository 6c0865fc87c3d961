"""Substantive model compatible fully conditional specification imputation."""

from smcimpute.config import ImputationConfig
from smcimpute.covariates import CovariateMethod, CovariateSpec
from smcimpute.errors import (
    InvalidInput,
    RejectionLimitExceeded,
    SMCImputeError,
    WorkerFailure,
)
from smcimpute.imputation import (
    MultipleImputationResult,
    smcfcs,
    smcfcs_casecohort,
    smcfcs_dtsam,
    smcfcs_flexsurv,
    smcfcs_nestedcc,
    smcfcs_parallel,
)
from smcimpute.substantive import SubstantiveModelSpec, SubstantiveModelType

__version__ = "0.1.0"

__all__ = [
    "CovariateMethod",
    "CovariateSpec",
    "ImputationConfig",
    "InvalidInput",
    "MultipleImputationResult",
    "RejectionLimitExceeded",
    "SMCImputeError",
    "SubstantiveModelSpec",
    "SubstantiveModelType",
    "WorkerFailure",
    "smcfcs",
    "smcfcs_casecohort",
    "smcfcs_dtsam",
    "smcfcs_flexsurv",
    "smcfcs_nestedcc",
    "smcfcs_parallel",
]
