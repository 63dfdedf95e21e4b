"""Durable storage for the last successful connection time.

The store holds a single keyed value. :class:`SqlTimestampStore` persists it
through SQLAlchemy (SQLite by default) so the cadence survives process
restarts; :class:`MemoryTimestampStore` is the in-process variant used by
tests and short-lived sessions.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

from sqlalchemy import Column, DateTime, Float, String, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from retooth.errors import PersistenceError

logger = logging.getLogger(__name__)

LAST_CONNECTION_TIME_KEY = "last_connection_time"

Base = declarative_base()


class TimestampRecord(Base):  # type: ignore[misc, valid-type]
    """One persisted timestamp, keyed so several managers may share a database."""

    __tablename__ = "connection_timestamps"

    key = Column(String(120), primary_key=True)
    value = Column(Float, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TimestampRecord {self.key}={self.value}>"


@runtime_checkable
class TimestampStore(Protocol):
    async def get_last_connection_time(self) -> Optional[float]: ...

    async def set_last_connection_time(self, timestamp: float) -> None: ...

    async def clear(self) -> None: ...


class MemoryTimestampStore:
    """Keeps the timestamp in memory; nothing survives the process."""

    def __init__(self, initial: Optional[float] = None) -> None:
        self._value = initial

    async def get_last_connection_time(self) -> Optional[float]:
        return self._value

    async def set_last_connection_time(self, timestamp: float) -> None:
        self._value = float(timestamp)

    async def clear(self) -> None:
        self._value = None


class SqlTimestampStore:
    """SQLAlchemy-backed store; blocking I/O runs in a worker thread."""

    def __init__(
        self,
        target: Union[str, Path, Engine],
        *,
        key: str = LAST_CONNECTION_TIME_KEY,
    ) -> None:
        if isinstance(target, Engine):
            self.engine = target
        else:
            url = str(target)
            if "://" not in url:
                path = Path(url)
                path.parent.mkdir(parents=True, exist_ok=True)
                url = f"sqlite:///{path}"
            self.engine = create_engine(url, future=True)
        self.key = key
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._write_lock = threading.Lock()
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not initialise timestamp store: {exc}") from exc

    async def get_last_connection_time(self) -> Optional[float]:
        return await asyncio.to_thread(self._read)

    async def set_last_connection_time(self, timestamp: float) -> None:
        await asyncio.to_thread(self._write, float(timestamp))

    async def clear(self) -> None:
        await asyncio.to_thread(self._delete)

    def _read(self) -> Optional[float]:
        try:
            with self._session_factory() as session:
                record = session.get(TimestampRecord, self.key)
                value = record.value if record is not None else None
        except SQLAlchemyError as exc:
            logger.error("Reading %s failed: %s", self.key, exc)
            raise PersistenceError(f"could not read {self.key}: {exc}") from exc
        logger.debug("Loaded %s=%s", self.key, value)
        return value

    def _write(self, timestamp: float) -> None:
        with self._write_lock:
            try:
                with self._session_factory() as session:
                    session.merge(TimestampRecord(key=self.key, value=timestamp))
                    session.commit()
            except SQLAlchemyError as exc:
                logger.error("Saving %s failed: %s", self.key, exc)
                raise PersistenceError(f"could not save {self.key}: {exc}") from exc
        logger.debug("Saved %s=%s", self.key, timestamp)

    def _delete(self) -> None:
        with self._write_lock:
            try:
                with self._session_factory() as session:
                    record = session.get(TimestampRecord, self.key)
                    if record is not None:
                        session.delete(record)
                        session.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError(f"could not clear {self.key}: {exc}") from exc

    def dispose(self) -> None:
        self.engine.dispose()


__all__ = [
    "TimestampStore",
    "MemoryTimestampStore",
    "SqlTimestampStore",
    "TimestampRecord",
    "LAST_CONNECTION_TIME_KEY",
]
