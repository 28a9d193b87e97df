"""
Pytest configuration and fixtures for search-forwarder.

Provides cross-platform event loop configuration and test utilities.
"""

import asyncio
import sys
from typing import List

import pytest
from loguru import logger

from search_forwarder.models import Batch, Record

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_records():
    """Factory for JSON-document records: make_records(3) -> 3 records of ~20 bytes."""

    def _make(n: int, prefix: str = "r") -> List[Record]:
        return [Record(body=f'{{"id":"{prefix}{i}"}}'.encode()) for i in range(n)]

    return _make


@pytest.fixture
def sealed_batch(make_records):
    """Factory for a batch already in SEALED state."""
    from search_forwarder.models import SealReason

    def _make(n: int = 3) -> Batch:
        batch = Batch()
        for r in make_records(n):
            batch.append(r)
        batch.seal(SealReason.MANUAL)
        return batch

    return _make


@pytest.fixture
def log_messages():
    """Capture loguru output as "LEVEL|message" strings."""
    messages: List[str] = []
    handler_id = logger.add(lambda m: messages.append(str(m).rstrip("\n")), format="{level}|{message}")
    yield messages
    logger.remove(handler_id)
