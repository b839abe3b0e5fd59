"""
Event type definitions for store lifecycle signaling.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict

from jobstore.constants import StoreEventType


class StoreEvent(BaseModel):
    """
    Event emitted when the store connection opens or closes.
    Delivered to the event sink of the owning job-queue engine.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    event_type: StoreEventType
    timestamp: datetime
    error: BaseException | None = None

    @classmethod
    def opened(cls) -> "StoreEvent":
        """Create a store opened event."""
        return cls(
            event_type=StoreEventType.OPENED,
            timestamp=datetime.now(UTC),
        )

    @classmethod
    def closed(cls, error: BaseException | None = None) -> "StoreEvent":
        """Create a store closed event, optionally carrying the cause."""
        return cls(
            event_type=StoreEventType.CLOSED,
            timestamp=datetime.now(UTC),
            error=error,
        )


EventSink = Callable[[StoreEvent], Awaitable[None]]


async def discard_event(event: StoreEvent) -> None:
    """Event sink that ignores every event."""
