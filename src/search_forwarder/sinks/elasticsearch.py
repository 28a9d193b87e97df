"""
Elasticsearch / OpenSearch bulk sink over httpx.

A sealed batch becomes one ``POST /_bulk`` request: an ``index`` action line
per record (target index resolved per rotation period, optional ``_type``)
followed by the record body as the document. The bulk API can partially
succeed; any item error fails the whole batch (PartialBatchError) so the
batch is retried or backed up as a unit.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from loguru import logger

from ..config import ForwarderSettings, IndexRotationPeriod
from ..errors import PartialBatchError, map_http_error
from ..models import Batch
from ..utils import rotated_index_name, utc_now
from .base import MeteredSink


def _document_line(body: bytes) -> bytes:
    doc = body.strip()
    if b"\n" in doc or b"\r" in doc:
        # bulk bodies are newline-delimited; compact multi-line JSON onto one line
        doc = json.dumps(json.loads(doc), separators=(",", ":")).encode("utf-8")
    return doc


class ElasticsearchBulkSink(MeteredSink):
    """Writes batches to ``{index}/{type}`` through the bulk API."""

    name = "elasticsearch"

    def __init__(
        self,
        url: str,
        index_name: str,
        *,
        type_name: Optional[str] = None,
        rotation: IndexRotationPeriod | str = IndexRotationPeriod.NO_ROTATION,
        timeout_sec: float = 10.0,
        auth: Optional[Tuple[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.url = url.rstrip("/")
        self.index_name = index_name
        self.type_name = type_name
        self.rotation = IndexRotationPeriod(rotation)
        self.timeout_sec = timeout_sec
        self._auth = auth
        self._client = client
        self._owns_client = client is None
        self._now = now

    @classmethod
    def from_settings(cls, settings: ForwarderSettings, **kwargs) -> "ElasticsearchBulkSink":
        auth = None
        if settings.sink_username:
            auth = (settings.sink_username, settings.sink_password or "")
        return cls(
            settings.sink_url,
            settings.index_name,
            type_name=settings.type_name,
            rotation=settings.index_rotation_period,
            timeout_sec=settings.sink_request_timeout_sec,
            auth=auth,
            **kwargs,
        )

    @property
    def identifier(self) -> str:
        return self.url

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.url, timeout=self.timeout_sec, auth=self._auth
            )
            self._owns_client = True
            logger.debug(f"[{self.name}] HTTP client opened for {self.url}")

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def target_index(self) -> str:
        return rotated_index_name(self.index_name, self.rotation, self._now())

    def build_bulk_body(self, batch: Batch) -> bytes:
        meta: Dict[str, Any] = {"_index": self.target_index()}
        if self.type_name:
            meta["_type"] = self.type_name
        action = json.dumps({"index": meta}, separators=(",", ":")).encode("utf-8")
        lines = []
        for record in batch.records:
            lines.append(action)
            lines.append(_document_line(record.body))
        return b"\n".join(lines) + b"\n"

    async def _write(self, batch: Batch) -> None:
        if not batch.records:
            return
        if self._client is None:
            await self.start()
        body = self.build_bulk_body(batch)
        try:
            resp = await self._client.post(
                "/_bulk",
                content=body,
                headers={"Content-Type": "application/x-ndjson"},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise map_http_error(exc) from exc

        payload = resp.json()
        if payload.get("errors"):
            failed = [
                item
                for item in payload.get("items", [])
                for op in item.values()
                if isinstance(op, dict) and op.get("error")
            ]
            first = next(iter(failed[0].values())).get("error") if failed else None
            raise PartialBatchError(
                f"bulk write to {self.target_index()} had {len(failed)}/{len(batch)} "
                f"failed items; first error: {first}",
                failed_items=len(failed),
            )
