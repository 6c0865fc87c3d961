"""Exceptions raised by smcimpute.

All exceptions carry their diagnostic context as attributes and pickle
cleanly, since they may be raised inside a worker process and re-raised in
the parent.
"""


class SMCImputeError(Exception):
    """Base class for all smcimpute errors."""


class InvalidInput(SMCImputeError, ValueError):
    """Malformed arguments or data, detected before any sampling starts."""


class RejectionLimitExceeded(SMCImputeError, RuntimeError):
    """The rejection sampler ran out of attempts for one or more subjects.

    This usually signals that the covariate model and the substantive model
    are badly incompatible. Raising ``rjlimit`` only helps when acceptance
    rates are low but non-zero.

    Attributes:
        covariate: Name of the covariate being imputed (or ``None``).
        iteration: Zero-based Gibbs iteration (or ``None``).
        subjects: Row labels of the subjects that were never accepted.
        attempts: Number of proposals drawn per subject.
        imputation: Zero-based imputation index (or ``None``).
    """

    def __init__(self, covariate=None, iteration=None, subjects=(), attempts=0,
                 imputation=None):
        self.covariate = covariate
        self.iteration = iteration
        self.subjects = list(subjects)
        self.attempts = attempts
        self.imputation = imputation
        shown = ", ".join(str(s) for s in self.subjects[:10])
        if len(self.subjects) > 10:
            shown += ", ..."
        msg = (
            f"Rejection sampling failed for {len(self.subjects)} subject(s) "
            f"[{shown}] after {attempts} attempts"
        )
        if covariate is not None:
            msg += f" while imputing '{covariate}'"
        if iteration is not None:
            msg += f" in iteration {iteration + 1}"
        if imputation is not None:
            msg += f" of imputation {imputation + 1}"
        msg += ". Consider increasing rjlimit or revising the covariate model."
        super().__init__(msg)

    def __reduce__(self):
        return (
            self.__class__,
            (self.covariate, self.iteration, self.subjects, self.attempts,
             self.imputation),
        )


class WorkerFailure(SMCImputeError, RuntimeError):
    """A parallel worker failed; the whole multiple-imputation call fails.

    Attributes:
        worker: Zero-based index of the failing worker.
        error: The exception raised inside the worker.
    """

    def __init__(self, worker, error):
        self.worker = worker
        self.error = error
        super().__init__(
            f"Imputation worker {worker} failed: "
            f"{type(error).__name__}: {error}"
        )

    def __reduce__(self):
        return (self.__class__, (self.worker, self.error))
