"""
Job-related type definitions.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from jobstore.constants import RESERVED_FIELDS, JobStatus

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
MILLISECOND = timedelta(milliseconds=1)


def normalize_timestamp(value: datetime) -> datetime:
    """
    Normalize a timestamp to the precision the store keeps.

    Naive values are taken as UTC. The result is UTC-aware and truncated
    to whole milliseconds.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def utcnow() -> datetime:
    """Current time, normalized."""
    return normalize_timestamp(datetime.now(UTC))


def to_epoch_ms(value: datetime) -> int:
    """Convert a timestamp to milliseconds since the epoch."""
    return (normalize_timestamp(value) - EPOCH) // MILLISECOND


def from_epoch_ms(value: int) -> datetime:
    """Convert milliseconds since the epoch to a UTC timestamp."""
    return EPOCH + timedelta(milliseconds=value)


class Job(BaseModel):
    """
    A persisted unit of work.

    Fields other than the ones declared here are kept as extra fields and
    stored verbatim; they must be JSON-serializable.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    status: str = JobStatus.READY.value
    worker_id: str | None = None
    attempts: int = Field(default=0, ge=0)
    expires: datetime | None = None
    expire_ms: int | None = Field(default=None, ge=0)
    stalls: datetime | None = None
    stall_ms: int | None = Field(default=None, ge=0)

    @field_validator("status")
    @classmethod
    def _plain_status(cls, value: str) -> str:
        # Stored as a plain string, enum members included
        return str(value)

    @field_validator("expires", "stalls")
    @classmethod
    def _normalize_deadline(cls, value: datetime | None) -> datetime | None:
        return normalize_timestamp(value) if value is not None else None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Job":
        if self.status == JobStatus.PROCESSING and not self.worker_id:
            raise ValueError("a processing job requires a worker_id")
        reserved = RESERVED_FIELDS.intersection(self.model_extra or {})
        if reserved:
            raise ValueError(f"reserved field names: {sorted(reserved)}")
        return self

    @property
    def extra_fields(self) -> dict[str, Any]:
        """Fields not declared on the model."""
        return dict(self.model_extra or {})

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if a processing job has passed its expiry deadline."""
        return self._is_overdue(self.expires, now)

    def is_stalled(self, now: datetime | None = None) -> bool:
        """Check if a processing job has passed its stall deadline."""
        return self._is_overdue(self.stalls, now)

    def _is_overdue(self, deadline: datetime | None, now: datetime | None) -> bool:
        if self.status != JobStatus.PROCESSING or deadline is None:
            return False
        return deadline < (now or utcnow())

    def to_document(self) -> dict[str, Any]:
        """Get the job as a plain document, extra fields included."""
        return self.model_dump()

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Job":
        """Build a job from a plain document."""
        return cls.model_validate(document)
