"""
Demo script for the EventForwarder.

Shows size/interval batching, retry against a flaky sink, backup of batches
that keep failing, and graceful shutdown.
"""

import asyncio
import json
import tempfile

from loguru import logger

from search_forwarder import ForwarderSettings
from search_forwarder.backends import FileBackupStore, InMemoryRecordQueue
from search_forwarder.pipeline import EventForwarder, load_backup
from search_forwarder.sinks import InMemorySink


async def main():
    settings = ForwarderSettings(
        buffer_size_bytes=2_000,
        buffer_interval_sec=0.5,
        retry_duration_sec=1,
        retry_initial_backoff_ms=50,
        retry_max_backoff_ms=200,
        poll_wait_sec=0.2,
        backup_compression="GZIP",
    )
    queue = InMemoryRecordQueue()
    sink = InMemorySink(fail_first=6)  # fails long enough for some batches to be backed up
    store = FileBackupStore(tempfile.mkdtemp(prefix="forwarder-backup-"))

    logger.info("🚀 Starting forwarder demo - producing 500 events")
    for i in range(500):
        await queue.send(json.dumps({"event_id": i, "kind": "click"}).encode(), {"source": "demo"})

    async with EventForwarder(queue, sink, store, settings=settings) as fwd:
        while len(queue):
            h = fwd.health()
            logger.info(
                f"Progress: queue={len(queue)} acked={h.records_acked} "
                f"pending={h.pipeline.pending_batches}/{h.pipeline.capacity} "
                f"delivered={h.pipeline.records_delivered} backed_up={h.pipeline.records_backed_up}"
            )
            await asyncio.sleep(0.2)

    h = fwd.health().pipeline
    logger.info(
        f"Final: delivered={h.records_delivered} backed_up={h.records_backed_up} "
        f"(sink writes={sink.write_calls})"
    )
    for key in await store.list_keys(settings.backup_prefix):
        records = await load_backup(store, key)
        logger.info(f"Backup {key}: {len(records)} records")

    logger.info(f"✅ Forwarder demo complete, outputs: {fwd.outputs()}")


if __name__ == "__main__":
    asyncio.run(main())
