"""
Unit tests for records, batches and delivery attempt bookkeeping.
"""

import dataclasses

import pytest

from search_forwarder.errors import InvariantViolation
from search_forwarder.models import (
    Batch,
    BatchState,
    DeliveryAttempt,
    DeliveryAttemptArena,
    Record,
    SealReason,
)


def test_record_is_immutable():
    r = Record(body=bytearray(b'{"a":1}'), attributes={"k": "v"})
    assert r.body == b'{"a":1}' and isinstance(r.body, bytes)
    assert r.size == 7
    with pytest.raises(dataclasses.FrozenInstanceError):
        r.body = b"x"
    with pytest.raises(TypeError):
        r.attributes["k"] = "changed"


def test_record_requires_bytes():
    with pytest.raises(TypeError):
        Record(body='{"a":1}')


def test_batch_tracks_size_in_order():
    batch = Batch()
    a, b = Record(body=b"aaa"), Record(body=b"bb")
    batch.append(a)
    batch.append(b)
    assert list(batch) == [a, b]
    assert batch.size_bytes == 5
    assert batch.is_open


def test_sealed_batch_rejects_appends():
    batch = Batch()
    batch.append(Record(body=b"x"))
    batch.seal(SealReason.SIZE, now=42.0)
    assert batch.state is BatchState.SEALED
    assert batch.sealed_at == 42.0
    with pytest.raises(InvariantViolation):
        batch.append(Record(body=b"y"))
    assert len(batch) == 1


def test_legal_lifecycle_with_retries():
    batch = Batch()
    batch.seal(SealReason.INTERVAL)
    for state in (
        BatchState.DELIVERING,
        BatchState.RETRYING,
        BatchState.DELIVERING,
        BatchState.RETRYING,
        BatchState.BACKED_UP,
    ):
        batch.transition(state)
    assert batch.is_terminal


@pytest.mark.parametrize(
    "path",
    [
        [BatchState.DELIVERING],  # OPEN -> DELIVERING skips sealing
        [BatchState.SEALED, BatchState.DELIVERED],
        [BatchState.SEALED, BatchState.DELIVERING, BatchState.DELIVERED, BatchState.DELIVERING],
        [BatchState.SEALED, BatchState.DELIVERING, BatchState.BACKED_UP, BatchState.RETRYING],
    ],
)
def test_illegal_transitions(path):
    batch = Batch()
    with pytest.raises(InvariantViolation):
        for state in path:
            batch.transition(state)


def test_delivery_attempt_elapsed_from_first_attempt():
    attempt = DeliveryAttempt(batch_id="b1")
    assert attempt.elapsed(100.0) == 0.0
    attempt.begin(100.0)
    attempt.begin(103.0)
    attempt.record_failure(TimeoutError("slow"))
    assert attempt.attempts == 2
    assert attempt.elapsed(104.5) == pytest.approx(4.5)
    assert attempt.last_error == "TimeoutError: slow"


def test_arena_one_attempt_per_batch():
    arena = DeliveryAttemptArena()
    attempt = arena.open("b1")
    assert "b1" in arena and arena.get("b1") is attempt
    with pytest.raises(InvariantViolation):
        arena.open("b1")
    assert arena.close("b1") is attempt
    assert len(arena) == 0
    assert arena.close("b1") is None
