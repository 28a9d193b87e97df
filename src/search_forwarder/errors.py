"""
Exception taxonomy for the search forwarder.

Sink failures are absorbed by the delivery pipeline (retry or backup); only
backup-store failures and invariant violations are meant to reach an operator.
"""

from __future__ import annotations


class ForwarderError(Exception):
    """Base error for the search forwarder."""

    pass


class TransientSinkError(ForwarderError):
    """Timeout, throttling or temporary unavailability of the sink."""

    pass


class PartialBatchError(TransientSinkError):
    """Bulk write reported per-item failures; treated as a whole-batch failure."""

    def __init__(self, message: str, failed_items: int = 0):
        super().__init__(message)
        self.failed_items = failed_items


class SinkRejectedError(ForwarderError):
    """Sink refused the request in a way retrying cannot fix (4xx other than 429)."""

    pass


class RetryExhaustedError(ForwarderError):
    """Retry budget spent without a successful sink write."""

    def __init__(self, message: str, attempts: int = 0, elapsed: float = 0.0):
        super().__init__(message)
        self.attempts = attempts
        self.elapsed = elapsed


class BackupStoreError(ForwarderError):
    """Backup write could not be completed. Fatal: records would be lost."""

    pass


class QueuePollError(ForwarderError):
    """Polling the record queue failed. Transient, retried by the consumer."""

    pass


class IngestionRejectedError(ForwarderError):
    """Pipeline did not accept records; the caller must not acknowledge them."""

    pass


class IngestionCapacityError(IngestionRejectedError):
    """Pending sealed batches are at capacity."""

    pass


class PipelineClosedError(IngestionRejectedError):
    """Pipeline is not running (not started yet, or shutting down)."""

    pass


class InvariantViolation(ForwarderError):
    """Internal state machine was driven into an illegal state."""

    pass


class FilterPolicyError(ForwarderError, ValueError):
    """Malformed subscription filter policy."""

    pass


def map_http_error(e: Exception) -> ForwarderError:
    """Map an httpx exception (or HTTP status error) onto the forwarder taxonomy."""
    import httpx

    if isinstance(e, ForwarderError):
        return e
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        if status == 429 or status >= 500:
            return TransientSinkError(f"HTTP {status}: {e}")
        return SinkRejectedError(f"HTTP {status}: {e}")
    if isinstance(e, (httpx.TimeoutException, httpx.TransportError)):
        return TransientSinkError(f"{type(e).__name__}: {e}")
    return TransientSinkError(str(e))
