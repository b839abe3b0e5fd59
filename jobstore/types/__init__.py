"""
Type definitions for the job store.
"""

from jobstore.types.events import EventSink, StoreEvent, discard_event
from jobstore.types.job import Job, from_epoch_ms, normalize_timestamp, to_epoch_ms, utcnow

__all__ = [
    # Job types
    "Job",
    "normalize_timestamp",
    "utcnow",
    "to_epoch_ms",
    "from_epoch_ms",
    # Event types
    "StoreEvent",
    "EventSink",
    "discard_event",
]
