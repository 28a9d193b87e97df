from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Iterable, Optional

import typer
from loguru import logger
from prometheus_client import start_http_server
from pydantic import ValidationError

from .backends import FileBackupStore, InMemoryRecordQueue
from .config import ForwarderSettings
from .errors import ForwarderError
from .filter_policy import FilterPolicySetter, JsonFileSubscriptionRegistry
from .pipeline import EventForwarder, load_backup, replay_backups
from .sinks import ElasticsearchBulkSink, InMemorySink

app = typer.Typer(help="search-forwarder operational CLI")

# ---------------------------
# Common options
# ---------------------------


def backup_dir_opt() -> str:
    return typer.Option(
        ".backup", "--backup-dir", envvar="FORWARDER_BACKUP_DIR", help="Backup store directory"
    )


def backup_prefix_opt() -> str:
    return typer.Option(
        "backup/", "--prefix", envvar="FORWARDER_BACKUP_PREFIX", help="Backup key prefix"
    )


def _settings(**overrides) -> ForwarderSettings:
    """Settings from FORWARDER_* env/.env, with explicitly passed CLI values on top."""
    return ForwarderSettings(**{k: v for k, v in overrides.items() if v is not None})


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", envvar="FORWARDER_LOG_LEVEL"),
):
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())


# ---------------------------
# Forwarding
# ---------------------------


def _read_lines(path: str) -> Iterable[bytes]:
    fh = sys.stdin.buffer if path == "-" else open(path, "rb")
    try:
        for line in fh:
            line = line.rstrip(b"\r\n")
            if line.strip():
                yield line
    finally:
        if fh is not sys.stdin.buffer:
            fh.close()


async def _forward(path: str, settings: ForwarderSettings, dry_run: bool) -> dict:
    queue = InMemoryRecordQueue(visibility_timeout_sec=settings.visibility_timeout_sec)
    sent = 0
    for line in _read_lines(path):
        await queue.send(line)
        sent += 1

    sink = InMemorySink() if dry_run else ElasticsearchBulkSink.from_settings(settings)
    store = FileBackupStore(settings.backup_dir)
    fwd = EventForwarder(queue, sink, store, settings=settings)
    await fwd.start()
    try:
        while len(queue):
            await asyncio.sleep(0.1)
    finally:
        await fwd.stop()

    h = fwd.health().pipeline
    return {
        "records_sent": sent,
        "records_delivered": h.records_delivered,
        "records_backed_up": h.records_backed_up,
        "batches_delivered": h.batches_delivered,
        "batches_backed_up": h.batches_backed_up,
        **fwd.outputs(),
    }


@app.command("forward")
def forward(
    path: str = typer.Argument(..., help="NDJSON file of documents, or '-' for stdin"),
    sink_url: Optional[str] = typer.Option(None, "--sink-url", envvar="FORWARDER_SINK_URL"),
    index_name: Optional[str] = typer.Option(None, "--index", envvar="FORWARDER_INDEX_NAME"),
    type_name: Optional[str] = typer.Option(None, "--type", envvar="FORWARDER_TYPE_NAME"),
    rotation: Optional[str] = typer.Option(
        None,
        "--rotation",
        envvar="FORWARDER_INDEX_ROTATION_PERIOD",
        help="NoRotation, OneHour, OneDay, OneWeek, OneMonth (or none, hourly, daily, weekly, monthly)",
    ),
    retry_duration_sec: Optional[int] = typer.Option(
        None, "--retry-duration", min=0, max=7200, envvar="FORWARDER_RETRY_DURATION_SEC"
    ),
    backup_dir: Optional[str] = typer.Option(None, "--backup-dir", envvar="FORWARDER_BACKUP_DIR"),
    backup_prefix: Optional[str] = typer.Option(
        None, "--backup-prefix", envvar="FORWARDER_BACKUP_PREFIX"
    ),
    compression: Optional[str] = typer.Option(
        None,
        "--compression",
        envvar="FORWARDER_BACKUP_COMPRESSION",
        help="UNCOMPRESSED, GZIP, ZIP or Snappy (case-insensitive)",
    ),
    buffer_size_bytes: Optional[int] = typer.Option(
        None, "--buffer-size", help="Seal when buffered bytes reach this size"
    ),
    buffer_interval_sec: Optional[float] = typer.Option(
        None, "--buffer-interval", help="Seal when a batch has been open this long"
    ),
    metrics_port: Optional[int] = typer.Option(None, "--metrics-port", help="Expose /metrics"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Deliver to an in-memory sink"),
):
    """Forward documents from a file through the pipeline into the search index."""
    try:
        settings = _settings(
            sink_url=sink_url,
            index_name=index_name,
            type_name=type_name,
            index_rotation_period=rotation,
            retry_duration_sec=retry_duration_sec,
            backup_dir=backup_dir,
            backup_prefix=backup_prefix,
            backup_compression=compression,
            buffer_size_bytes=buffer_size_bytes,
            buffer_interval_sec=buffer_interval_sec,
            poll_wait_sec=1.0,
        )
    except ValidationError as exc:
        typer.echo(f"invalid settings: {exc}", err=True)
        raise typer.Exit(code=1)
    if metrics_port:
        start_http_server(metrics_port)
        logger.info(f"Prometheus metrics on :{metrics_port}/metrics")
    try:
        summary = asyncio.run(_forward(path, settings, dry_run))
    except ForwarderError as exc:
        logger.critical(f"Forwarding aborted: {exc}")
        raise typer.Exit(code=2)
    typer.echo(json.dumps(summary, indent=2))


# ---------------------------
# Backups
# ---------------------------


@app.command("list-backups")
def list_backups(backup_dir: str = backup_dir_opt(), prefix: str = backup_prefix_opt()):
    store = FileBackupStore(backup_dir, mkdirs=False)
    for key in asyncio.run(store.list_keys(prefix)):
        typer.echo(key)


@app.command("show-backup")
def show_backup(
    key: str = typer.Argument(..., help="Backup object key"),
    backup_dir: str = backup_dir_opt(),
    compression: Optional[str] = typer.Option(
        None, "--compression", help="Override format detection from the key suffix"
    ),
):
    """Print the records of one backup object as JSON lines."""
    store = FileBackupStore(backup_dir, mkdirs=False)
    try:
        records = asyncio.run(load_backup(store, key, compression))
    except KeyError:
        typer.echo(f"no such backup object: {key}", err=True)
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.echo(f"cannot read {key}: {exc}", err=True)
        raise typer.Exit(code=1)
    for r in records:
        typer.echo(
            json.dumps(
                {
                    "message_id": r.message_id,
                    "enqueued_at": r.enqueued_at,
                    "attributes": dict(r.attributes),
                    "body": r.body.decode("utf-8", errors="replace"),
                }
            )
        )


@app.command("replay-backups")
def replay(
    backup_dir: str = backup_dir_opt(),
    prefix: str = backup_prefix_opt(),
    sink_url: Optional[str] = typer.Option(None, "--sink-url", envvar="FORWARDER_SINK_URL"),
    index_name: Optional[str] = typer.Option(None, "--index", envvar="FORWARDER_INDEX_NAME"),
    delete: bool = typer.Option(False, "--delete", help="Remove objects once replayed"),
):
    """Re-deliver backed-up records to the search index."""
    settings = _settings(sink_url=sink_url, index_name=index_name)
    store = FileBackupStore(backup_dir, mkdirs=False)

    async def _run():
        async with ElasticsearchBulkSink.from_settings(settings) as sink:
            return await replay_backups(store, sink, prefix=prefix, delete=delete)

    objects, records = asyncio.run(_run())
    typer.echo(json.dumps({"objects_replayed": objects, "records_replayed": records}, indent=2))


# ---------------------------
# Deployment helpers
# ---------------------------


@app.command("set-filter-policy")
def set_filter_policy(
    subscription_id: str = typer.Option(..., "--subscription-id", envvar="FORWARDER_SUBSCRIPTION_ID"),
    policy: str = typer.Option(
        ..., "--policy", envvar="FORWARDER_SUBSCRIPTION_FILTER_POLICY", help="Filter policy JSON"
    ),
    registry: Path = typer.Option(
        Path("subscriptions.json"), "--registry", help="Subscription attribute file"
    ),
):
    """Attach a filter policy to a subscription (no-op when unchanged)."""
    if not policy.strip():
        typer.echo(json.dumps({"changed": False, "reason": "no filter policy configured"}))
        return
    setter = FilterPolicySetter(JsonFileSubscriptionRegistry(registry))
    try:
        changed = asyncio.run(setter.apply(subscription_id, policy))
    except ValueError as exc:
        typer.echo(f"invalid filter policy: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps({"changed": changed, "subscription_id": subscription_id}))


@app.command("outputs")
def outputs(
    backup_dir: Optional[str] = typer.Option(None, "--backup-dir", envvar="FORWARDER_BACKUP_DIR"),
    sink_url: Optional[str] = typer.Option(None, "--sink-url", envvar="FORWARDER_SINK_URL"),
):
    """Print identifiers of the backup store and search sink."""
    settings = _settings(backup_dir=backup_dir, sink_url=sink_url)
    typer.echo(
        json.dumps(
            {
                "backup_store": FileBackupStore(settings.backup_dir, mkdirs=False).identifier,
                "sink": ElasticsearchBulkSink.from_settings(settings).identifier,
                "index_name": settings.index_name,
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    app()
