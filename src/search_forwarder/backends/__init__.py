"""Backend implementations for the record queue and backup store interfaces."""

from .file_backup import FileBackupStore
from .memory_backup import InMemoryBackupStore
from .memory_queue import InMemoryRecordQueue

__all__ = ["FileBackupStore", "InMemoryBackupStore", "InMemoryRecordQueue"]
