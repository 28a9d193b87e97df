"""
Data model for the forwarding pipeline.

Record and BackupObject are immutable. Batch is append-only while OPEN and
frozen once sealed; its lifecycle is an explicit state machine. Retry state
lives per batch in DeliveryAttempt, held in a DeliveryAttemptArena owned by
the pipeline.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional

from .config import CompressionFormat
from .errors import InvariantViolation
from .utils import generate_id


@dataclass(frozen=True)
class Record:
    """One message received from the record queue.

    Attributes:
        body: Raw message bytes (expected to be a JSON document for the sink)
        receipt: Token used to acknowledge (delete) the message upstream
        enqueued_at: Epoch seconds at which the producer pushed the message
        message_id: Queue-assigned message id
        attributes: Message attributes (read-only)
    """

    body: bytes
    receipt: str = field(default_factory=generate_id)
    enqueued_at: float = field(default_factory=time.time)
    message_id: str = field(default_factory=generate_id)
    attributes: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        if not isinstance(self.body, (bytes, bytearray)):
            raise TypeError("Record.body must be bytes")
        object.__setattr__(self, "body", bytes(self.body))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def size(self) -> int:
        return len(self.body)


class BatchState(str, Enum):
    OPEN = "open"
    SEALED = "sealed"
    DELIVERING = "delivering"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    BACKED_UP = "backed_up"


class SealReason(str, Enum):
    SIZE = "size"
    INTERVAL = "interval"
    SHUTDOWN = "shutdown"
    MANUAL = "manual"


_TRANSITIONS: Dict[BatchState, frozenset] = {
    BatchState.OPEN: frozenset({BatchState.SEALED}),
    BatchState.SEALED: frozenset({BatchState.DELIVERING}),
    BatchState.DELIVERING: frozenset(
        {BatchState.DELIVERED, BatchState.RETRYING, BatchState.BACKED_UP}
    ),
    BatchState.RETRYING: frozenset({BatchState.DELIVERING, BatchState.BACKED_UP}),
    BatchState.DELIVERED: frozenset(),
    BatchState.BACKED_UP: frozenset(),
}

TERMINAL_STATES = frozenset({BatchState.DELIVERED, BatchState.BACKED_UP})


@dataclass(eq=False)
class Batch:
    """Records buffered together for one delivery, in arrival order."""

    batch_id: str = field(default_factory=generate_id)
    opened_at: float = field(default_factory=time.monotonic)
    records: List[Record] = field(default_factory=list)
    size_bytes: int = 0
    state: BatchState = BatchState.OPEN
    seal_reason: Optional[SealReason] = None
    sealed_at: Optional[float] = None

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    @property
    def is_open(self) -> bool:
        return self.state is BatchState.OPEN

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def append(self, record: Record) -> None:
        if self.state is not BatchState.OPEN:
            raise InvariantViolation(
                f"append to batch {self.batch_id} in state {self.state.value}"
            )
        self.records.append(record)
        self.size_bytes += record.size

    def seal(self, reason: SealReason, now: Optional[float] = None) -> None:
        self.transition(BatchState.SEALED)
        self.seal_reason = reason
        self.sealed_at = time.monotonic() if now is None else now

    def transition(self, new_state: BatchState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvariantViolation(
                f"batch {self.batch_id}: illegal transition "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state


@dataclass
class DeliveryAttempt:
    """Attempt bookkeeping for one sealed batch.

    Exhaustion is decided by elapsed time since the first attempt, not by
    the attempt count.
    """

    batch_id: str
    attempts: int = 0
    first_attempt_at: Optional[float] = None
    last_error: Optional[str] = None

    def begin(self, now: float) -> None:
        self.attempts += 1
        if self.first_attempt_at is None:
            self.first_attempt_at = now

    def record_failure(self, exc: BaseException) -> None:
        self.last_error = f"{type(exc).__name__}: {exc}"

    def elapsed(self, now: float) -> float:
        if self.first_attempt_at is None:
            return 0.0
        return max(0.0, now - self.first_attempt_at)


class DeliveryAttemptArena:
    """DeliveryAttempt records for in-flight batches, keyed by batch id."""

    def __init__(self) -> None:
        self._attempts: Dict[str, DeliveryAttempt] = {}

    def open(self, batch_id: str) -> DeliveryAttempt:
        if batch_id in self._attempts:
            raise InvariantViolation(f"batch {batch_id} already has an attempt in flight")
        attempt = DeliveryAttempt(batch_id=batch_id)
        self._attempts[batch_id] = attempt
        return attempt

    def get(self, batch_id: str) -> Optional[DeliveryAttempt]:
        return self._attempts.get(batch_id)

    def close(self, batch_id: str) -> Optional[DeliveryAttempt]:
        return self._attempts.pop(batch_id, None)

    def __len__(self) -> int:
        return len(self._attempts)

    def __contains__(self, batch_id: object) -> bool:
        return batch_id in self._attempts


@dataclass(frozen=True)
class BackupObject:
    """A serialized, compressed batch as written to the backup store."""

    key: str
    body: bytes
    compression: CompressionFormat
    batch_id: str
    record_count: int
