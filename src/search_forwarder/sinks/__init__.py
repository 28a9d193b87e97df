"""Sink implementations. All record write counts/latency under SINK_WRITES_TOTAL / SINK_WRITE_LATENCY."""

from ..metrics.registry import SINK_WRITES_TOTAL, SINK_WRITE_LATENCY
from .base import MeteredSink
from .elasticsearch import ElasticsearchBulkSink
from .memory import InMemorySink

__all__ = [
    "SINK_WRITES_TOTAL",
    "SINK_WRITE_LATENCY",
    "MeteredSink",
    "ElasticsearchBulkSink",
    "InMemorySink",
]
