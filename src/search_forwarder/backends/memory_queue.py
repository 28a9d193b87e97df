from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from ..models import Record
from ..pipeline.types import RecordQueue
from ..utils import generate_id


@dataclass
class _Message:
    message_id: str
    body: bytes
    attributes: Dict[str, str]
    enqueued_at: float
    receive_count: int = 0
    visible_at: float = 0.0
    receipt: Optional[str] = None


class InMemoryRecordQueue(RecordQueue):
    """Process-local queue with visibility-timeout semantics.

    Received messages stay in the queue, hidden, until they are deleted with
    their current receipt or the visibility timeout lapses (then they are
    redelivered with a new receipt). Deleting with a stale receipt is a
    no-op, as with hosted queues.
    """

    def __init__(
        self,
        *,
        visibility_timeout_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if visibility_timeout_sec <= 0:
            raise ValueError("visibility_timeout_sec must be > 0")
        self._visibility = visibility_timeout_sec
        self._clock = clock
        self._messages: "OrderedDict[str, _Message]" = OrderedDict()
        self._by_receipt: Dict[str, str] = {}
        self._arrived = asyncio.Event()

    @property
    def identifier(self) -> str:
        return "memory://queue"

    def __len__(self) -> int:
        """Messages not yet deleted (visible or in flight)."""
        return len(self._messages)

    def visible_count(self) -> int:
        now = self._clock()
        return sum(1 for m in self._messages.values() if m.visible_at <= now)

    async def send(self, body: bytes, attributes: Optional[Mapping[str, str]] = None) -> str:
        msg = _Message(
            message_id=generate_id(),
            body=bytes(body),
            attributes=dict(attributes or {}),
            enqueued_at=time.time(),
        )
        self._messages[msg.message_id] = msg
        self._arrived.set()
        return msg.message_id

    async def receive(self, max_records: int, wait_sec: float) -> List[Record]:
        deadline = self._clock() + max(0.0, wait_sec)
        while True:
            records = self._take_visible(max_records)
            if records:
                return records
            remaining = deadline - self._clock()
            if remaining <= 0:
                return []
            self._arrived.clear()
            try:
                # wake on new messages; poll at most every 50ms for expired visibility
                await asyncio.wait_for(self._arrived.wait(), timeout=min(remaining, 0.05))
            except asyncio.TimeoutError:
                pass

    async def delete(self, receipts: Sequence[str]) -> None:
        for receipt in receipts:
            message_id = self._by_receipt.pop(receipt, None)
            if message_id is None:
                continue
            msg = self._messages.get(message_id)
            if msg is not None and msg.receipt == receipt:
                del self._messages[message_id]

    def _take_visible(self, max_records: int) -> List[Record]:
        now = self._clock()
        out: List[Record] = []
        for msg in self._messages.values():
            if len(out) >= max_records:
                break
            if msg.visible_at > now:
                continue
            if msg.receipt is not None:
                self._by_receipt.pop(msg.receipt, None)
            msg.receipt = generate_id()
            msg.receive_count += 1
            msg.visible_at = now + self._visibility
            self._by_receipt[msg.receipt] = msg.message_id
            out.append(
                Record(
                    body=msg.body,
                    receipt=msg.receipt,
                    enqueued_at=msg.enqueued_at,
                    message_id=msg.message_id,
                    attributes=msg.attributes,
                )
            )
        return out
