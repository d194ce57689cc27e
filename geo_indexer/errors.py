from __future__ import annotations


class IndexerError(Exception):
    """Base class for everything geo_indexer raises on purpose."""


class ConfigurationError(IndexerError, ValueError):
    """Bad or incomplete job configuration. Raised before any task runs."""


class JobFailedError(IndexerError):
    def __init__(self, message: str, job_id: str | None = None):
        super().__init__(message)
        self.job_id = job_id


class OutputExistsError(JobFailedError):
    pass


class JobCancelledError(JobFailedError):
    pass


class TaskFailedError(IndexerError):
    def __init__(self, task_id: str, attempts: int, cause: BaseException):
        super().__init__(f"Task {task_id} failed after {attempts} attempt(s): {cause!r}")
        self.task_id = task_id
        self.attempts = attempts
        self.cause = cause
