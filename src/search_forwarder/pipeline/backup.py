"""
Backup path for batches that could not be delivered.

Serialization is NDJSON, one line per record in arrival order, with the raw
bytes base64-encoded so any payload survives a round trip. The object is
compressed per the configured format and stored under
``{prefix}{batch_id}{extension}``.

The backup write is the last line of defence for the no-loss guarantee, so
BackupWriter retries it indefinitely. Past ``alert_after_failures``
consecutive failures each further failure is logged as CRITICAL. Only once a
give-up deadline has been armed (at shutdown) and passed does it raise
BackupStoreError.
"""

from __future__ import annotations

import asyncio
import base64
import json
import time
from typing import Callable, List, Optional, Tuple

from loguru import logger

from .. import compression
from ..config import CompressionFormat
from ..errors import BackupStoreError
from ..metrics.registry import BACKUP_WRITE_FAILURES_TOTAL
from ..models import BackupObject, Batch, Record
from .policy import RetryPolicy
from .types import BackupStore, Sink


def serialize_batch(batch: Batch) -> bytes:
    """Encode a batch as NDJSON (one record per line, arrival order)."""
    lines = []
    for record in batch.records:
        doc = {
            "batch_id": batch.batch_id,
            "message_id": record.message_id,
            "receipt": record.receipt,
            "enqueued_at": record.enqueued_at,
            "attributes": dict(record.attributes),
            "data": base64.b64encode(record.body).decode("ascii"),
        }
        lines.append(json.dumps(doc, separators=(",", ":")))
    return ("\n".join(lines) + "\n").encode("utf-8") if lines else b""


def deserialize_records(payload: bytes) -> List[Record]:
    """Decode NDJSON produced by serialize_batch back into Records."""
    records: List[Record] = []
    for line in payload.decode("utf-8").splitlines():
        if not line.strip():
            continue
        doc = json.loads(line)
        records.append(
            Record(
                body=base64.b64decode(doc["data"]),
                receipt=doc.get("receipt", ""),
                enqueued_at=float(doc.get("enqueued_at", 0.0)),
                message_id=doc.get("message_id", ""),
                attributes=doc.get("attributes") or {},
            )
        )
    return records


def build_backup_object(
    batch: Batch, prefix: str, fmt: CompressionFormat | str
) -> BackupObject:
    fmt = CompressionFormat(fmt)
    body = compression.compress(serialize_batch(batch), fmt)
    return BackupObject(
        key=f"{prefix}{batch.batch_id}{compression.extension_for(fmt)}",
        body=body,
        compression=fmt,
        batch_id=batch.batch_id,
        record_count=len(batch),
    )


async def load_backup(
    store: BackupStore, key: str, fmt: Optional[CompressionFormat | str] = None
) -> List[Record]:
    """Read a backup object and return its records (format guessed from the key if omitted)."""
    fmt = CompressionFormat(fmt) if fmt is not None else compression.detect_format(key)
    raw = await store.get(key)
    return deserialize_records(compression.decompress(raw, fmt))


async def replay_backups(
    store: BackupStore,
    sink: Sink,
    *,
    prefix: str = "backup/",
    delete: bool = False,
) -> Tuple[int, int]:
    """Re-deliver backed-up records to ``sink``, one object per bulk write.

    Objects that fail to write are left in place; with ``delete=True``
    replayed objects are removed. Returns (objects replayed, records replayed).
    """
    objects = records_total = 0
    for key in await store.list_keys(prefix):
        records = await load_backup(store, key)
        if not records:
            continue
        batch = Batch(records=list(records), size_bytes=sum(r.size for r in records))
        try:
            await sink.write(batch)
        except Exception as exc:
            logger.warning(f"Replay of {key} failed, leaving it in place: {type(exc).__name__}: {exc}")
            continue
        objects += 1
        records_total += len(records)
        if delete:
            await store.delete(key)
        logger.info(f"Replayed {len(records)} records from {key}")
    return objects, records_total


class BackupWriter:
    """Writes exhausted batches to a BackupStore, retrying until it succeeds."""

    def __init__(
        self,
        store: BackupStore,
        *,
        prefix: str = "backup/",
        compression_format: CompressionFormat | str = CompressionFormat.UNCOMPRESSED,
        retry_policy: Optional[RetryPolicy] = None,
        alert_after_failures: int = 5,
        pipeline_id: str = "forwarder",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.prefix = prefix
        self.compression_format = CompressionFormat(compression_format)
        self._retry = retry_policy or RetryPolicy(initial_backoff_ms=200, max_backoff_ms=10_000)
        self._alert_after = max(1, alert_after_failures)
        self._pipeline_id = pipeline_id
        self._clock = clock
        self._give_up_at: Optional[float] = None
        self._deadline_armed = asyncio.Event()

    def give_up_after(self, seconds: float) -> None:
        """Arm a deadline after which a failing backup raises BackupStoreError.

        A backup already sleeping between attempts wakes up and retries
        at once, so it never outlives the deadline by a full backoff step.
        """
        self._give_up_at = self._clock() + max(0.0, seconds)
        self._deadline_armed.set()

    def deadline_passed(self) -> bool:
        return self._give_up_at is not None and self._clock() >= self._give_up_at

    async def persist(self, batch: Batch, reason: Optional[BaseException] = None) -> BackupObject:
        obj = build_backup_object(batch, self.prefix, self.compression_format)
        metadata = {
            "batch_id": batch.batch_id,
            "record_count": str(obj.record_count),
            "compression": obj.compression.value,
        }
        if reason is not None:
            metadata["reason"] = f"{type(reason).__name__}: {reason}"[:1024]

        failures = 0
        while True:
            try:
                await self.store.put(obj.key, obj.body, metadata)
            except Exception as exc:
                failures += 1
                BACKUP_WRITE_FAILURES_TOTAL.labels(pipeline=self._pipeline_id).inc()
                msg = (
                    f"Backup write failed for batch {batch.batch_id} "
                    f"(attempt {failures}, key={obj.key}): {type(exc).__name__}: {exc}"
                )
                if failures >= self._alert_after:
                    logger.critical(msg)
                else:
                    logger.error(msg)
                if self.deadline_passed():
                    raise BackupStoreError(
                        f"giving up on backup of batch {batch.batch_id} "
                        f"({obj.record_count} records) after {failures} attempts"
                    ) from exc
                await self._backoff(self._retry.next_backoff_sec(failures))
                continue

            logger.info(
                f"Backed up batch {batch.batch_id}: {obj.record_count} records -> {obj.key}"
            )
            return obj

    async def _backoff(self, delay: float) -> None:
        if self._give_up_at is not None:
            delay = min(delay, max(0.0, self._give_up_at - self._clock()))
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self._deadline_armed.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
