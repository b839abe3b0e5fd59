"""
Exceptions raised by the job store.

Store-native (SQLAlchemy / DBAPI) exceptions never reach callers; they are
wrapped in one of these and chained as ``__cause__``.
"""


class JobStoreError(Exception):
    """Base class for all job store errors."""


class StoreNotOpenError(JobStoreError):
    """An operation was issued while the store is not open."""


class StoreConnectionError(JobStoreError):
    """The connection to the store was lost during an operation."""


class WriteCountMismatchError(JobStoreError):
    """
    A single-record write affected an unexpected number of records.

    Attributes:
        operation: Past-tense verb of the write, e.g. ``"updated"``.
        actual: Number of records the store reported as affected.
        expected: Number of records the write should have affected.
    """

    def __init__(self, operation: str, actual: int, expected: int = 1):
        self.operation = operation
        self.actual = actual
        self.expected = expected
        super().__init__(f"{operation} {actual} jobs instead of {expected}")


class JobCreateError(JobStoreError):
    """A job could not be inserted."""

    def __init__(self, job_id: str, reason: str | None = None):
        self.job_id = job_id
        message = f"could not create job {job_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class JobDecodeError(JobStoreError):
    """A stored record could not be read back as a job."""

    def __init__(self, job_id: str | None, reason: str):
        self.job_id = job_id
        super().__init__(f"could not decode job {job_id}: {reason}")
