from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from ..pipeline.types import BackupStore


class InMemoryBackupStore(BackupStore):
    """Dict-backed backup store.

    ``fail_first`` makes the first N puts raise ConnectionError; a negative
    value fails every put until ``fail_next(0)``.
    """

    def __init__(self, *, fail_first: int = 0):
        self.objects: Dict[str, bytes] = {}
        self.metadata: Dict[str, Dict[str, str]] = {}
        self.put_calls = 0
        self._fail_remaining = fail_first

    @property
    def identifier(self) -> str:
        return "memory://backup"

    def fail_next(self, n: int) -> None:
        self._fail_remaining = n

    async def put(self, key: str, body: bytes, metadata: Optional[Mapping[str, str]] = None) -> None:
        self.put_calls += 1
        if self._fail_remaining != 0:
            if self._fail_remaining > 0:
                self._fail_remaining -= 1
            raise ConnectionError("simulated backup store outage")
        self.objects[key] = bytes(body)
        self.metadata[key] = dict(metadata or {})

    async def get(self, key: str) -> bytes:
        return self.objects[key]

    async def list_keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)
        self.metadata.pop(key, None)
