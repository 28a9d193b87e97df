from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence, TypeVar

from ..models import Batch, Record

T = TypeVar("T")

BackpressureCallback = Callable[[], Awaitable[None]]


class QueueFullError(Exception):
    """Raised by BoundedQueue when overflow_strategy='error' and the queue is full."""


class Sink(ABC):
    """Destination for sealed batches (the search index).

    ``write`` either stores the whole batch or raises. Implementations may
    hold connections; use them as async context managers.
    """

    name: str = "sink"

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def identifier(self) -> str:
        return self.name

    @abstractmethod
    async def write(self, batch: Batch) -> None:
        """Write every record of ``batch`` as one bulk operation."""


class BackupStore(ABC):
    """Durable blob storage for batches that could not be delivered.

    Safe for concurrent writers; callers need no locking.
    """

    @property
    @abstractmethod
    def identifier(self) -> str:
        """Location of the store, for operational wiring."""

    @abstractmethod
    async def put(self, key: str, body: bytes, metadata: Optional[Mapping[str, str]] = None) -> None:
        """Store ``body`` under ``key``, replacing any existing object."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the object stored under ``key`` (KeyError if missing)."""

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> List[str]:
        """Keys starting with ``prefix``, sorted."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; no-op if it does not exist."""


class RecordQueue(ABC):
    """At-least-once, unordered record buffer.

    Received records are hidden for a visibility timeout and become
    receivable again unless deleted with their receipt before it expires.
    """

    @abstractmethod
    async def send(self, body: bytes, attributes: Optional[Mapping[str, str]] = None) -> str:
        """Enqueue a message; returns its message id."""

    @abstractmethod
    async def receive(self, max_records: int, wait_sec: float) -> List[Record]:
        """Return up to ``max_records`` records, waiting at most ``wait_sec``."""

    @abstractmethod
    async def delete(self, receipts: Sequence[str]) -> None:
        """Acknowledge records by receipt; unknown or expired receipts are ignored."""
