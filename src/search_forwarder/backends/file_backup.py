from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import List, Mapping, Optional

from loguru import logger

from ..pipeline.types import BackupStore

_META_SUFFIX = ".meta.json"


class FileBackupStore(BackupStore):
    """Backup store rooted at a local (or mounted) directory.

    Keys map to relative paths (``backup/abc.gz`` -> ``<root>/backup/abc.gz``).
    Objects are written to a temp file, fsynced and renamed into place, so a
    reader never sees a partial object. Metadata goes to a ``.meta.json``
    sidecar.
    """

    def __init__(self, root: str | Path, *, mkdirs: bool = True):
        self.root = Path(root).resolve()
        if mkdirs:
            self.root.mkdir(parents=True, exist_ok=True)

    @property
    def identifier(self) -> str:
        return self.root.as_uri()

    def path_for(self, key: str) -> Path:
        if not key or key.endswith("/"):
            raise ValueError(f"invalid backup key: {key!r}")
        path = (self.root / key).resolve()
        if self.root != path and self.root not in path.parents:
            raise ValueError(f"backup key escapes store root: {key!r}")
        return path

    async def put(self, key: str, body: bytes, metadata: Optional[Mapping[str, str]] = None) -> None:
        path = self.path_for(key)
        await asyncio.to_thread(self._write_atomic, path, bytes(body))
        if metadata:
            meta = json.dumps(dict(metadata), sort_keys=True).encode("utf-8")
            await asyncio.to_thread(self._write_atomic, path.with_name(path.name + _META_SUFFIX), meta)
        logger.debug(f"FileBackupStore wrote {len(body)} bytes to {path}")

    async def get(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise KeyError(key) from None

    async def get_metadata(self, key: str) -> dict:
        meta_path = self.path_for(key + _META_SUFFIX)
        if not meta_path.exists():
            return {}
        return json.loads(await asyncio.to_thread(meta_path.read_text, "utf-8"))

    async def list_keys(self, prefix: str = "") -> List[str]:
        return await asyncio.to_thread(self._list, prefix)

    async def delete(self, key: str) -> None:
        path = self.path_for(key)
        for p in (path, path.with_name(path.name + _META_SUFFIX)):
            try:
                await asyncio.to_thread(p.unlink)
            except FileNotFoundError:
                pass

    def _list(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for p in self.root.rglob("*"):
            if not p.is_file() or p.name.endswith(_META_SUFFIX) or p.name.startswith(".tmp-"):
                continue
            key = p.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".tmp-{path.name}-{os.getpid()}-{id(data)}")
        with open(tmp, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
