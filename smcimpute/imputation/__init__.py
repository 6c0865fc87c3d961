from smcimpute.imputation.api import (
    smcfcs,
    smcfcs_casecohort,
    smcfcs_dtsam,
    smcfcs_flexsurv,
    smcfcs_nestedcc,
    smcfcs_parallel,
)
from smcimpute.imputation.driver import (
    JoblibExecutor,
    MultipleImputationDriver,
    MultipleImputationResult,
    SerialExecutor,
    TaskExecutor,
    combine_results,
    determine_imp_specs,
)
from smcimpute.imputation.gibbs import GibbsEngine, ImputationRun, impute_once

__all__ = [
    "GibbsEngine",
    "ImputationRun",
    "JoblibExecutor",
    "MultipleImputationDriver",
    "MultipleImputationResult",
    "SerialExecutor",
    "TaskExecutor",
    "combine_results",
    "determine_imp_specs",
    "impute_once",
    "smcfcs",
    "smcfcs_casecohort",
    "smcfcs_dtsam",
    "smcfcs_flexsurv",
    "smcfcs_nestedcc",
    "smcfcs_parallel",
]
