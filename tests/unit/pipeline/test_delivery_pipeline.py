"""
Unit tests for DeliveryPipeline: batching, delivery, backup and shutdown.
"""

import asyncio
import time

import pytest

from search_forwarder import compression
from search_forwarder.backends import InMemoryBackupStore
from search_forwarder.config import CompressionFormat, ForwarderSettings
from search_forwarder.errors import BackupStoreError, IngestionCapacityError, PipelineClosedError
from search_forwarder.models import Batch, Record, SealReason
from search_forwarder.pipeline import DeliveryPipeline, RetryPolicy, deserialize_records
from search_forwarder.sinks import InMemorySink

FAST = RetryPolicy(initial_backoff_ms=5, max_backoff_ms=20)


class TimedSink(InMemorySink):
    """Always fails; remembers when the first write happened."""

    def __init__(self):
        super().__init__(fail_first=-1)
        self.first_write_at = None

    async def _write(self, batch: Batch) -> None:
        if self.first_write_at is None:
            self.first_write_at = time.monotonic()
        await super()._write(batch)


class TimedStore(InMemoryBackupStore):
    def __init__(self):
        super().__init__()
        self.put_at = None

    async def put(self, key, body, metadata=None):
        self.put_at = time.monotonic()
        await super().put(key, body, metadata)


def _pipeline(sink, store, **kwargs):
    opts = dict(
        size_threshold_bytes=10_000,
        interval_sec=0.1,
        retry_duration_sec=1.0,
        retry_policy=FAST,
        backup_retry_policy=FAST,
        pipeline_id="test",
    )
    opts.update(kwargs)
    return DeliveryPipeline(sink, store, **opts)


async def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_interval_flush_delivers_small_batch(make_records):
    sink, store = InMemorySink(), InMemoryBackupStore()
    async with _pipeline(sink, store) as pipeline:
        assert await pipeline.ingest(make_records(3)) == 3
        await _wait_for(lambda: len(sink.batches) == 1)
        assert pipeline.health().batches_delivered == 1

    assert [r.body for r in sink.batches[0]] == [b'{"id":"r0"}', b'{"id":"r1"}', b'{"id":"r2"}']
    assert store.objects == {}


@pytest.mark.asyncio
async def test_size_threshold_delivers_without_waiting_for_interval(make_records):
    sink, store = InMemorySink(), InMemoryBackupStore()
    pipeline = _pipeline(sink, store, size_threshold_bytes=50, interval_sec=3600)
    await pipeline.start()
    try:
        await pipeline.ingest(make_records(5))  # 55 bytes
        await _wait_for(lambda: len(sink.batches) == 1, timeout=1.0)
        assert len(sink.batches[0]) == 5
    finally:
        await pipeline.stop()


@pytest.mark.asyncio
async def test_failing_sink_backs_up_every_record(make_records):
    sink = InMemorySink(fail_first=-1)
    store = InMemoryBackupStore()
    records = make_records(7)
    async with _pipeline(
        sink, store, retry_duration_sec=0.1, backup_compression=CompressionFormat.GZIP
    ) as pipeline:
        await pipeline.ingest(records)
        await _wait_for(lambda: len(store.objects) == 1)

    (key,) = store.objects
    assert key.startswith("backup/") and key.endswith(".gz")
    restored = deserialize_records(
        compression.decompress(store.objects[key], CompressionFormat.GZIP)
    )
    assert [r.body for r in restored] == [r.body for r in records]
    assert sink.write_calls >= 2


@pytest.mark.asyncio
async def test_backup_lands_within_one_backoff_of_retry_duration(make_records):
    sink, store = TimedSink(), TimedStore()
    duration = 0.3
    policy = RetryPolicy(initial_backoff_ms=50, max_backoff_ms=100, jitter=False)
    async with _pipeline(
        sink, store, interval_sec=0.02, retry_duration_sec=duration, retry_policy=policy
    ) as pipeline:
        await pipeline.ingest(make_records(1))
        await _wait_for(lambda: store.put_at is not None)

    waited = store.put_at - sink.first_write_at
    assert waited >= duration
    assert waited < duration + 0.1 + 0.2


@pytest.mark.asyncio
async def test_shutdown_seals_and_delivers_open_batch(make_records):
    sink, store = InMemorySink(), InMemoryBackupStore()
    pipeline = _pipeline(sink, store, interval_sec=3600)
    await pipeline.start()
    await pipeline.ingest(make_records(4))
    assert sink.batches == []

    await pipeline.stop()

    assert len(sink.records) == 4
    health = pipeline.health()
    assert not health.running
    assert health.open_records == 0
    assert health.records_delivered == 4


@pytest.mark.asyncio
async def test_shutdown_sends_failing_batches_to_backup_promptly(make_records):
    sink, store = InMemorySink(fail_first=-1), InMemoryBackupStore()
    pipeline = _pipeline(sink, store, interval_sec=3600, retry_duration_sec=300)
    await pipeline.start()
    await pipeline.ingest(make_records(2))

    started = time.monotonic()
    await asyncio.wait_for(pipeline.stop(), timeout=5)

    assert time.monotonic() - started < 2
    assert len(store.objects) == 1
    assert pipeline.health().records_backed_up == 2


@pytest.mark.asyncio
async def test_every_ingested_record_is_delivered_or_backed_up(make_records):
    sink = InMemorySink(fail_first=3)
    store = InMemoryBackupStore()
    pipeline = _pipeline(
        sink, store, size_threshold_bytes=40, retry_duration_sec=0.02, workers=2, max_pending_batches=50
    )
    await pipeline.start()
    total = 0
    for n in range(10):
        total += await pipeline.ingest(make_records(n % 4 + 1, prefix=f"b{n}-"))
    await pipeline.stop()

    health = pipeline.health()
    backed_up = sum(
        len(deserialize_records(body)) for body in store.objects.values()
    )
    assert health.records_delivered + health.records_backed_up == total
    assert len(sink.records) == health.records_delivered
    assert backed_up == health.records_backed_up
    assert health.inflight_batches == 0


@pytest.mark.asyncio
async def test_ingest_rejected_when_pending_queue_full(make_records):
    sink = InMemorySink(latency_sec=0.5)
    store = InMemoryBackupStore()
    pipeline = _pipeline(sink, store, size_threshold_bytes=10, max_pending_batches=1, interval_sec=3600)
    await pipeline.start()
    try:
        await pipeline.ingest(make_records(1))  # taken by the worker
        await asyncio.sleep(0.1)
        await pipeline.ingest(make_records(1))  # waits in the pending queue
        with pytest.raises(IngestionCapacityError):
            await pipeline.ingest(make_records(1))
        assert pipeline.health().open_records == 0
    finally:
        await pipeline.stop()
    assert len(sink.records) == 2


@pytest.mark.asyncio
async def test_ingest_rejected_when_not_running(make_records):
    pipeline = _pipeline(InMemorySink(), InMemoryBackupStore())
    with pytest.raises(PipelineClosedError):
        await pipeline.ingest(make_records(1))

    await pipeline.start()
    await pipeline.stop()
    with pytest.raises(PipelineClosedError):
        await pipeline.ingest(make_records(1))


@pytest.mark.asyncio
async def test_manual_flush(make_records):
    sink = InMemorySink()
    async with _pipeline(sink, InMemoryBackupStore(), interval_sec=3600) as pipeline:
        await pipeline.ingest(make_records(2))
        batch = await pipeline.flush()
        assert batch.seal_reason is SealReason.MANUAL
        await _wait_for(lambda: len(sink.batches) == 1)
        assert await pipeline.flush() is None


@pytest.mark.asyncio
async def test_unwritable_backup_surfaces_on_stop(make_records):
    sink = InMemorySink(fail_first=-1)
    store = InMemoryBackupStore(fail_first=-1)
    pipeline = _pipeline(sink, store, retry_duration_sec=0, shutdown_timeout_sec=0.1)
    await pipeline.start()
    await pipeline.ingest(make_records(1))
    await _wait_for(lambda: store.put_calls > 0)

    with pytest.raises(BackupStoreError):
        await asyncio.wait_for(pipeline.stop(), timeout=3)


@pytest.mark.asyncio
async def test_stop_raises_when_store_down_and_pending_queue_full(make_records, log_messages):
    sink = InMemorySink(fail_first=-1)
    store = InMemoryBackupStore(fail_first=-1)
    pipeline = _pipeline(
        sink,
        store,
        size_threshold_bytes=10,
        interval_sec=3600,
        retry_duration_sec=60,
        max_pending_batches=1,
        workers=1,
        shutdown_timeout_sec=0.1,
    )
    await pipeline.start()
    await pipeline.ingest(make_records(1))  # batch A, held by the worker
    await _wait_for(lambda: sink.write_calls > 0)
    await pipeline.ingest(make_records(1))  # batch B, fills the pending queue
    await pipeline.ingest([Record(body=b"x")])  # stays in the open batch

    with pytest.raises(BackupStoreError):
        await asyncio.wait_for(pipeline.stop(), timeout=3)

    health = pipeline.health()
    assert health.workers_alive == 0
    assert health.pending_batches == 0
    assert health.fatal_error.startswith("BackupStoreError")
    assert any(
        m.startswith("CRITICAL|") and "3 records neither delivered nor backed up" in m
        for m in log_messages
    )
    with pytest.raises(PipelineClosedError):
        await pipeline.flush()


@pytest.mark.asyncio
async def test_stop_cancels_other_workers_once_one_fails(make_records, log_messages):
    store = InMemoryBackupStore(fail_first=-1)
    sink = InMemorySink(fail_first=-1)
    pipeline = _pipeline(
        sink,
        store,
        size_threshold_bytes=10,
        interval_sec=3600,
        retry_duration_sec=60,
        workers=2,
        shutdown_timeout_sec=0.1,
    )
    await pipeline.start()
    await pipeline.ingest(make_records(1))
    await pipeline.ingest(make_records(1))
    await _wait_for(lambda: pipeline.health().inflight_batches == 2)

    started = time.monotonic()
    with pytest.raises(BackupStoreError):
        await asyncio.wait_for(pipeline.stop(), timeout=3)
    assert time.monotonic() - started < 1.0
    assert pipeline.health().workers_alive == 0
    assert any("2 records neither delivered nor backed up" in m for m in log_messages)


@pytest.mark.asyncio
async def test_from_settings(make_records):
    settings = ForwarderSettings(
        buffer_size_bytes=20,
        buffer_interval_sec=3600,
        max_pending_batches=2,
        retry_duration_sec=5,
        backup_prefix="dead/",
    )
    sink = InMemorySink()
    pipeline = DeliveryPipeline.from_settings(settings, sink, InMemoryBackupStore(), pipeline_id="cfg")
    async with pipeline:
        await pipeline.ingest(make_records(2))
        await _wait_for(lambda: len(sink.batches) == 1)
        assert pipeline.health().capacity == 2
