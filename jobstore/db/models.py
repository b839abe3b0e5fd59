"""
SQLAlchemy table definitions.
Defines the job record layout and the mapping between records and rows.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    ColumnElement,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB

from jobstore.constants import (
    CREATED_AT_COLUMN,
    EXTRA_FIELDS_COLUMN,
    PRIMARY_KEY,
    JobStatus,
)
from jobstore.types.job import from_epoch_ms, to_epoch_ms

# Columns that hold declared job fields, in record order
RECORD_COLUMNS: tuple[str, ...] = (
    PRIMARY_KEY,
    "status",
    "worker_id",
    "attempts",
    "expires",
    "expire_ms",
    "stalls",
    "stall_ms",
)


class EpochMillis(TypeDecorator):
    """
    Timestamp stored as integer milliseconds since the epoch.

    Keeps deadlines as plain integers in the store so ``now + duration``
    can be computed inside a single statement on any backend.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> int | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return to_epoch_ms(value)
        return int(value)

    def process_result_value(self, value: Any, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return from_epoch_ms(value)


def build_jobs_table(name: str, metadata: MetaData | None = None) -> Table:
    """
    Build the job table for the given collection name.

    Key layout:
    - job_id is the primary key (the domain ``id``)
    - declared job fields are columns, extra fields live in attrs
    - (status, expires) and (status, stalls) back the reclamation scans

    Args:
        name: Table name.
        metadata: Metadata to attach the table to.

    Returns:
        The table.
    """
    return Table(
        name,
        metadata or MetaData(),
        Column(PRIMARY_KEY, String(255), primary_key=True),
        Column("status", String(64), nullable=False, default=JobStatus.READY.value),
        Column("worker_id", String(255), nullable=True),
        Column("attempts", Integer, nullable=False, default=0),
        Column("expires", EpochMillis, nullable=True),
        Column("expire_ms", BigInteger, nullable=True),
        Column("stalls", EpochMillis, nullable=True),
        Column("stall_ms", BigInteger, nullable=True),
        Column(
            EXTRA_FIELDS_COLUMN,
            JSON().with_variant(JSONB(), "postgresql"),
            nullable=False,
            default=dict,
        ),
        Column(
            CREATED_AT_COLUMN,
            DateTime(timezone=True),
            nullable=False,
            default=lambda: datetime.now(UTC),
        ),
        Index(f"ix_{name}_status", "status"),
        Index(f"ix_{name}_status_expires", "status", "expires"),
        Index(f"ix_{name}_status_stalls", "status", "stalls"),
    )


def split_record(record: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Split a record into column values and extra fields.

    Args:
        record: A full or partial record (primary-key naming).

    Returns:
        Tuple of (column values, extra fields).

    Raises:
        ValueError: If the record uses a name reserved by the layout.
    """
    reserved = {EXTRA_FIELDS_COLUMN, CREATED_AT_COLUMN}.intersection(record)
    if reserved:
        raise ValueError(f"reserved field names: {sorted(reserved)}")

    columns: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in record.items():
        if key in RECORD_COLUMNS:
            columns[key] = value
        else:
            extra[key] = value
    return columns, extra


def to_row(record: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a full record to insertable row values."""
    columns, extra = split_record(record)
    return {**columns, EXTRA_FIELDS_COLUMN: extra}


def from_row(row: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a fetched row back to a record."""
    extra = row[EXTRA_FIELDS_COLUMN] or {}
    return {**extra, **{name: row[name] for name in RECORD_COLUMNS}}


def _extra_field_clause(table: Table, key: str, value: Any) -> ColumnElement[bool]:
    field = table.c[EXTRA_FIELDS_COLUMN][key]
    if value is None:
        return field.as_string().is_(None)
    if isinstance(value, bool):
        return field.as_boolean() == value
    if isinstance(value, int):
        return field.as_integer() == value
    if isinstance(value, float):
        return field.as_float() == value
    if isinstance(value, str):
        return field.as_string() == value
    raise ValueError(f"unsupported filter value for {key!r}: {type(value).__name__}")


def filter_clauses(table: Table, record: Mapping[str, Any]) -> list[ColumnElement[bool]]:
    """
    Build equality clauses for a partial record.

    Columns compare directly, ``None`` meaning IS NULL. Extra fields compare
    against the typed value extracted from the JSON column; only scalar
    values are supported there.

    Args:
        table: The job table.
        record: Partial record (primary-key naming).

    Returns:
        List of clauses, empty for an empty filter.
    """
    columns, extra = split_record(record)
    clauses: list[ColumnElement[bool]] = []
    for key, value in columns.items():
        column = table.c[key]
        clauses.append(column.is_(None) if value is None else column == value)
    for key, value in extra.items():
        clauses.append(_extra_field_clause(table, key, value))
    return clauses
