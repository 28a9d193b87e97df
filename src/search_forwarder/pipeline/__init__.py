"""Delivery pipeline.

Record queue → BatchConsumer → DeliveryPipeline → Sink, with:
- BatchBuffer sealing on size or interval under a single lock
- BoundedQueue of sealed batches (watermarks, capacity rejection)
- RetryPolicy / RetryBudget for time-bounded sink retries
- DeliveryWorker driving each batch to DELIVERED or BACKED_UP
- BackupWriter with indefinite retry for the failure path
- EventForwarder orchestration & health
"""

from .types import Sink, BackupStore, RecordQueue, BackpressureCallback, QueueFullError
from .policy import RetryPolicy, RetryBudget, default_retry_classifier
from .queue import BoundedQueue
from .buffer import BatchBuffer
from .backup import (
    BackupWriter,
    build_backup_object,
    deserialize_records,
    load_backup,
    replay_backups,
    serialize_batch,
)
from .worker import DeliveryWorker
from .delivery import DeliveryPipeline, PipelineHealth
from .consumer import BatchConsumer
from .forwarder import EventForwarder, ForwarderHealth

__all__ = [
    # interfaces
    "Sink",
    "BackupStore",
    "RecordQueue",
    "BackpressureCallback",
    "QueueFullError",
    # policies
    "RetryPolicy",
    "RetryBudget",
    "default_retry_classifier",
    # runtime
    "BoundedQueue",
    "BatchBuffer",
    "DeliveryWorker",
    "DeliveryPipeline",
    "PipelineHealth",
    "BatchConsumer",
    "EventForwarder",
    "ForwarderHealth",
    # backup
    "BackupWriter",
    "build_backup_object",
    "serialize_batch",
    "deserialize_records",
    "load_backup",
    "replay_backups",
]
