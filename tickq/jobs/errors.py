from __future__ import annotations


class JobNotFoundError(RuntimeError):
    pass


class JobConflictError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


class JobError(Exception):
    """Base for errors raised on the handler side of a job run.

    ``code`` is persisted as the row's ``error_code``.
    """

    code = "JOB_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class JobFailedError(JobError):
    code = "JOB_FAILED"


class JobCanceledError(JobError):
    code = "JOB_CANCELED"


class JobTimeoutError(JobError):
    code = "JOB_TIMEOUT"


class UnknownJobTypeError(JobError):
    code = "UNKNOWN_JOB_TYPE"
