from .types import FailureKind


class KeyPoolError(Exception):
    """Base class for errors raised by the key pool and job runner."""


class InvalidConfiguration(KeyPoolError, ValueError):
    pass


class PoolExhausted(KeyPoolError):
    pass


class KeysBusy(PoolExhausted):
    """Healthy keys exist but every one of them is locked by another job."""


class UnknownJob(KeyPoolError, KeyError):
    def __init__(self, job_id: int):
        super().__init__(f"no key assigned to job {job_id}")
        self.job_id = job_id

    def __str__(self) -> str:
        return self.args[0]


class JobCancelled(KeyPoolError):
    pass


class RemoteCallError(Exception):
    """A failed remote call, already classified by the collaborator that made it."""

    def __init__(
        self,
        message: str,
        kind: FailureKind,
        status: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.retry_after = retry_after
