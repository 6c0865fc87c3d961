"""Multiple imputation: repeat the Gibbs engine ``m`` times, possibly in parallel.

Every imputation draws from its own ``numpy.random.Generator`` seeded from
``SeedSequence(seed).spawn(m)[i]``, so the completed datasets depend only on
the seed and the imputation index, never on how the imputations were split
across workers.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from smcimpute.covariates.spec import CovariateSpec
from smcimpute.errors import InvalidInput, WorkerFailure
from smcimpute.imputation.gibbs import GibbsEngine, ImputationRun
from smcimpute.substantive import SubstantiveModelSpec

logger = logging.getLogger(__name__)


@dataclass
class MultipleImputationResult:
    """Completed datasets and the substantive model trace of every chain.

    Attributes:
        imp_datasets: The ``m`` completed datasets.
        sm_coef_iter: Point estimates per imputation and iteration, shape
            ``(m, iterations, n_coef)``.
        sm_info: ``smtype`` and ``smformula`` of the substantive model.
        sm_coef_names: Names of the last axis of ``sm_coef_iter``.
        rejection_attempts: Per imputation, total rejection sampling
            proposals per continuous covariate.
    """
    imp_datasets: List[pd.DataFrame]
    sm_coef_iter: np.ndarray
    sm_info: Dict[str, Any]
    sm_coef_names: List[str] = field(default_factory=list)
    rejection_attempts: List[Dict[str, int]] = field(default_factory=list)

    @property
    def m(self) -> int:
        return len(self.imp_datasets)

    def __len__(self):
        return len(self.imp_datasets)

    def __iter__(self) -> Iterator[pd.DataFrame]:
        return iter(self.imp_datasets)


def determine_imp_specs(n_workers: int, m: int, m_per_worker: Optional[int] = None) -> List[int]:
    """Number of imputations handed to each worker.

    With ``m_per_worker`` the imputations are cut into chunks of that size,
    otherwise into ``n_workers`` chunks of ``m // n_workers``. Any remainder
    goes to the last chunk.

    >>> determine_imp_specs(3, 10)
    [3, 3, 4]
    >>> determine_imp_specs(2, 10, m_per_worker=3)
    [3, 3, 4]
    """
    if m_per_worker is not None:
        specs = [m_per_worker] * (m // m_per_worker)
        remainder = m % m_per_worker
    else:
        specs = [m // n_workers] * n_workers
        remainder = m % n_workers
    if remainder:
        specs[-1] += remainder
    return specs


def combine_results(
    worker_runs: Sequence[Sequence[ImputationRun]], sm_info: Dict[str, Any]
) -> MultipleImputationResult:
    """Concatenate per-worker runs, in worker order, into one result."""
    runs = [run for chunk in worker_runs for run in chunk]
    if not runs:
        raise InvalidInput("No imputations to combine")
    return MultipleImputationResult(
        imp_datasets=[run.dataset for run in runs],
        sm_coef_iter=np.stack([run.trace for run in runs], axis=0),
        sm_info=dict(sm_info),
        sm_coef_names=list(runs[0].coef_names),
        rejection_attempts=[dict(run.attempts) for run in runs],
    )


@dataclass(frozen=True)
class ImputationTask:
    """The imputations one worker is responsible for."""
    worker: int
    imputations: Sequence[int]
    seeds: Sequence[np.random.SeedSequence]


@dataclass
class _TaskFailure:
    worker: int
    error: BaseException


def _run_task(task: ImputationTask, data, covariate_specs, sm_spec, iterations, rjlimit):
    try:
        engine = GibbsEngine(data, covariate_specs, sm_spec, rjlimit=rjlimit)
        return [
            engine.run(iterations, rng=np.random.default_rng(seed), imputation=i)
            for i, seed in zip(task.imputations, task.seeds)
        ]
    except Exception as exc:
        # handed back to the parent, which fails the whole call
        return _TaskFailure(task.worker, exc)


class TaskExecutor(ABC):
    """Runs a function over tasks and yields the results in task order."""

    @abstractmethod
    def map(self, fn: Callable, tasks: Iterable) -> Iterator:
        pass


class SerialExecutor(TaskExecutor):
    def map(self, fn, tasks):
        return (fn(task) for task in tasks)


class JoblibExecutor(TaskExecutor):
    """joblib worker pool; ``backend`` is any joblib backend name."""

    def __init__(self, n_jobs: int = -1, backend: str = "loky"):
        self.n_jobs = n_jobs
        self.backend = backend

    def map(self, fn, tasks):
        # return_as="generator" lets the caller track completion as it happens
        return Parallel(n_jobs=self.n_jobs, backend=self.backend, return_as="generator")(
            delayed(fn)(task) for task in tasks
        )


class MultipleImputationDriver:
    """Produce ``m`` imputed datasets.

    Args:
        executor: Where worker tasks run; serial by default.
        rjlimit: Rejection sampling attempt limit per subject.
        noisy: Show a progress bar over imputations (or worker chunks).
    """

    def __init__(self, executor: Optional[TaskExecutor] = None, rjlimit: int = 1000,
                 noisy: bool = False):
        self.executor = executor or SerialExecutor()
        self.rjlimit = rjlimit
        self.noisy = noisy

    def run(
        self,
        data: pd.DataFrame,
        covariate_specs: Sequence[CovariateSpec],
        sm_spec: SubstantiveModelSpec,
        m: int,
        iterations: int,
        seed: Optional[int] = None,
        chunks: Optional[Sequence[int]] = None,
    ) -> MultipleImputationResult:
        """Impute ``m`` times.

        Args:
            chunks: Imputations per worker, summing to ``m``; a single chunk
                runs in the calling process and failures propagate as they
                are, several chunks go to the executor and a failure in any
                of them raises :class:`WorkerFailure`.
        """
        if isinstance(m, bool) or not isinstance(m, (int, np.integer)) or m < 1:
            raise InvalidInput(f"m must be a positive integer, got {m!r}")
        if isinstance(iterations, bool) or not isinstance(iterations, (int, np.integer)) or iterations < 1:
            raise InvalidInput(f"numit must be a positive integer, got {iterations!r}")
        chunks = list(chunks) if chunks is not None else [m]
        if sum(chunks) != m or any(c < 1 for c in chunks):
            raise InvalidInput(f"Worker chunks {chunks} do not split {m} imputations")

        engine = GibbsEngine(data, covariate_specs, sm_spec, rjlimit=self.rjlimit)
        logger.info(
            "Imputing %s with %s model: %d imputation(s), %d iteration(s), %d worker(s)",
            ", ".join(engine.imputed_columns) or "no covariates",
            sm_spec.smtype.value, m, iterations, len(chunks),
        )
        seeds = np.random.SeedSequence(seed).spawn(m)

        if len(chunks) == 1:
            runs = [
                engine.run(iterations, rng=np.random.default_rng(seeds[i]), imputation=i)
                for i in tqdm(range(m), desc="Imputations", disable=not self.noisy)
            ]
            return combine_results([runs], sm_spec.info())

        tasks = []
        start = 0
        for worker, size in enumerate(chunks):
            indices = tuple(range(start, start + size))
            tasks.append(ImputationTask(worker, indices, tuple(seeds[i] for i in indices)))
            start += size

        fn = partial(
            _run_task,
            data=data,
            covariate_specs=list(covariate_specs),
            sm_spec=sm_spec,
            iterations=iterations,
            rjlimit=self.rjlimit,
        )
        worker_runs = []
        results = tqdm(
            self.executor.map(fn, tasks), total=len(tasks), desc="Workers",
            disable=not self.noisy,
        )
        for outcome in results:
            if isinstance(outcome, _TaskFailure):
                raise WorkerFailure(outcome.worker, outcome.error) from outcome.error
            worker_runs.append(outcome)
        return combine_results(worker_runs, sm_spec.info())
