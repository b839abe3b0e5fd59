"""
Store connection management.
Handles the async SQLAlchemy engine, its lifecycle events and sessions.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import MetaData, Table, event
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobstore.config import StoreConfig
from jobstore.constants import StoreState
from jobstore.db.models import build_jobs_table
from jobstore.errors import JobStoreError, StoreConnectionError, StoreNotOpenError
from jobstore.observability.metrics import MetricsCollector, get_metrics
from jobstore.types.events import EventSink, StoreEvent, discard_event

logger = logging.getLogger(__name__)


class StoreConnection:
    """
    Connection to the store holding the job table.

    Owns the engine and reports its lifecycle to the owning engine through
    the event sink:
    - ``opened`` once the table and its indexes exist
    - ``closed`` on failed open, on close, and on a dropped connection

    Open and close never overlap. Operations are only accepted while open;
    a graceful close waits for the ones in flight.
    """

    def __init__(
        self,
        config: StoreConfig,
        events: EventSink | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the connection. Nothing is contacted until ``open``.

        Args:
            config: Connection configuration.
            events: Async callable receiving lifecycle events.
            metrics: Metrics collector. Uses the global one if not provided.
        """
        self.config = config
        self.table: Table = build_jobs_table(config.collection, MetaData())
        self._events = events or discard_event
        self._metrics = metrics or get_metrics()

        self._state = StoreState.CLOSED
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._transition = asyncio.Lock()
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._background: set[asyncio.Task] = set()

        logger.debug("Store created", extra={"collection": config.collection})

    @property
    def state(self) -> StoreState:
        """Current connection state."""
        return self._state

    @property
    def is_open(self) -> bool:
        """Check if operations are accepted."""
        return self._state is StoreState.OPEN

    @property
    def engine(self) -> AsyncEngine:
        """
        The engine of the open connection.

        Raises:
            StoreNotOpenError: If the store is not open.
        """
        if self._engine is None:
            raise StoreNotOpenError("store is not open")
        return self._engine

    async def open(self) -> bool:
        """
        Connect and make sure the job table and its indexes exist.

        Failures are not raised: they are logged and reported as a
        ``closed`` event carrying the error. There is no retry.

        Returns:
            True if the store is open.
        """
        async with self._transition:
            if self._state is StoreState.OPEN:
                return True

            self._state = StoreState.OPENING
            engine: AsyncEngine | None = None
            try:
                engine = create_async_engine(self.config.url, **self.config.engine_options())
                event.listen(engine.sync_engine, "invalidate", self._on_invalidate)
                async with engine.begin() as conn:
                    await conn.run_sync(self.table.metadata.create_all, checkfirst=True)
            except Exception as e:
                # Bad engine options surface here as TypeError / ArgumentError
                logger.error(
                    f"Could not connect to store: {e}",
                    extra={"collection": self.config.collection},
                )
                self._state = StoreState.CLOSED
                if engine is not None:
                    await self._dispose(engine)
                await self._emit(StoreEvent.closed(e))
                return False

            self._engine = engine
            self._session_factory = async_sessionmaker(
                bind=engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
            self._state = StoreState.OPEN

        logger.debug("Store opened", extra={"collection": self.config.collection})
        await self._emit(StoreEvent.opened())
        return True

    async def close(self, force: bool = False) -> None:
        """
        Close the connection.

        Args:
            force: If True, in-flight operations are abandoned instead of
                waited for.
        """
        if await self._shutdown(force=force):
            await self._emit(StoreEvent.closed())

    async def _shutdown(self, force: bool) -> bool:
        async with self._transition:
            if self._state is not StoreState.OPEN:
                return False

            logger.warning(f"Closing store - {'forced' if force else 'graceful'}")
            self._state = StoreState.CLOSING

            if not force and self._in_flight:
                logger.info(f"Waiting for {self._in_flight} operations to complete")
                await self._idle.wait()

            engine, self._engine, self._session_factory = self._engine, None, None
            if engine is not None:
                await self._dispose(engine)

            self._state = StoreState.CLOSED
            return True

    async def _dispose(self, engine: AsyncEngine) -> None:
        try:
            await engine.dispose()
        except Exception as e:
            logger.error(f"Close error: {e}")

    def _on_invalidate(self, dbapi_connection: Any, connection_record: Any, exception: BaseException | None) -> None:
        # Pool event, fired from sync code on the event loop thread.
        if self._state is not StoreState.OPEN:
            return
        task = asyncio.get_running_loop().create_task(self._connection_lost(exception))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _connection_lost(self, error: BaseException | None) -> None:
        logger.warning("Store connection dropped", extra={"error": str(error) if error else None})

        if error is not None:
            logger.info("Force closing store")

        try:
            closed = await self._shutdown(force=error is not None)
            if closed:
                await self._emit(StoreEvent.closed(error))
        except Exception as e:
            logger.exception(f"Error handling dropped connection: {e}")

    async def _emit(self, store_event: StoreEvent) -> None:
        self._metrics.record_store_event(store_event.event_type)
        await self._events(store_event)

    @asynccontextmanager
    async def session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """
        Run one operation in its own transaction.

        Commits on success and rolls back on error. Store-native errors
        are wrapped in ``JobStoreError`` subclasses.

        Args:
            operation: Operation name used in error messages.

        Yields:
            AsyncSession: A session inside a transaction.

        Raises:
            StoreNotOpenError: If the store is not open.
            StoreConnectionError: If the connection dropped.
            JobStoreError: For any other store error.
        """
        if self._state is not StoreState.OPEN or self._session_factory is None:
            raise StoreNotOpenError(f"cannot {operation}: store is {self._state}")

        self._in_flight += 1
        self._idle.clear()
        try:
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        yield session
                except DBAPIError as e:
                    if e.connection_invalidated:
                        raise StoreConnectionError(f"{operation} failed: connection lost") from e
                    raise JobStoreError(f"{operation} failed: {e.orig}") from e
                except SQLAlchemyError as e:
                    raise JobStoreError(f"{operation} failed: {e}") from e
        finally:
            self._in_flight -= 1
            if not self._in_flight:
                self._idle.set()
