"""
Unit tests for the search-forwarder CLI.
"""

import asyncio
import json
import sys

import pytest
from loguru import logger
from typer.testing import CliRunner

from search_forwarder import cli
from search_forwarder.backends import FileBackupStore
from search_forwarder.config import CompressionFormat, IndexRotationPeriod
from search_forwarder.models import Batch, Record, SealReason
from search_forwarder.pipeline import BackupWriter
from search_forwarder.sinks import InMemorySink

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    yield
    # the CLI callback rebinds loguru to the runner's stderr
    logger.remove()
    logger.add(sys.stderr)


def _backup(root, bodies, fmt="GZIP"):
    batch = Batch()
    for body in bodies:
        batch.append(Record(body=body))
    batch.seal(SealReason.MANUAL)
    obj = asyncio.run(BackupWriter(FileBackupStore(root), compression_format=fmt).persist(batch))
    return obj.key


def test_forward_dry_run(tmp_path):
    src = tmp_path / "events.ndjson"
    src.write_text('{"a":1}\n\n{"a":2}\n{"a":3}\n')

    result = runner.invoke(
        cli.app,
        ["--log-level", "CRITICAL", "forward", str(src), "--dry-run", "--backup-dir", str(tmp_path / "bk")],
    )

    assert result.exit_code == 0, result.output
    summary = json.loads(result.output)
    assert summary["records_sent"] == 3
    assert summary["records_delivered"] == 3
    assert summary["records_backed_up"] == 0
    assert summary["sink"] == "memory://sink"


def test_list_and_show_backups(tmp_path):
    key = _backup(tmp_path / "bk", [b'{"a":1}', b'{"a":2}'])

    result = runner.invoke(cli.app, ["--log-level", "CRITICAL", "list-backups", "--backup-dir", str(tmp_path / "bk")])
    assert result.exit_code == 0
    assert result.output.split() == [key]

    result = runner.invoke(
        cli.app, ["--log-level", "CRITICAL", "show-backup", key, "--backup-dir", str(tmp_path / "bk")]
    )
    assert result.exit_code == 0
    lines = [json.loads(line) for line in result.output.splitlines()]
    assert [line["body"] for line in lines] == ['{"a":1}', '{"a":2}']


def test_show_missing_backup(tmp_path):
    result = runner.invoke(cli.app, ["show-backup", "backup/nope", "--backup-dir", str(tmp_path)])
    assert result.exit_code == 1


def test_replay_backups(tmp_path, monkeypatch):
    root = tmp_path / "bk"
    _backup(root, [b'{"a":1}'])
    _backup(root, [b'{"a":2}', b'{"a":3}'], fmt="Snappy")
    sink = InMemorySink()
    monkeypatch.setattr(
        cli.ElasticsearchBulkSink, "from_settings", classmethod(lambda cls, settings, **kw: sink)
    )

    result = runner.invoke(
        cli.app, ["--log-level", "CRITICAL", "replay-backups", "--backup-dir", str(root), "--delete"]
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"objects_replayed": 2, "records_replayed": 3}
    assert len(sink.records) == 3
    assert asyncio.run(FileBackupStore(root).list_keys()) == []


def test_set_filter_policy_is_idempotent(tmp_path):
    registry = tmp_path / "subs.json"
    args = [
        "--log-level",
        "CRITICAL",
        "set-filter-policy",
        "--subscription-id",
        "sub-1",
        "--policy",
        '{"type": ["order"]}',
        "--registry",
        str(registry),
    ]

    first = runner.invoke(cli.app, args)
    second = runner.invoke(cli.app, args)

    assert first.exit_code == 0 and json.loads(first.output)["changed"] is True
    assert second.exit_code == 0 and json.loads(second.output)["changed"] is False


def test_set_filter_policy_invalid(tmp_path):
    result = runner.invoke(
        cli.app,
        ["set-filter-policy", "--subscription-id", "s", "--policy", "[1]", "--registry", str(tmp_path / "r.json")],
    )
    assert result.exit_code == 1
    assert not (tmp_path / "r.json").exists()


def test_outputs(tmp_path, monkeypatch):
    monkeypatch.setenv("FORWARDER_SINK_URL", "http://search:9200")
    result = runner.invoke(cli.app, ["outputs", "--backup-dir", str(tmp_path / "bk")])

    assert result.exit_code == 0
    out = json.loads(result.output)
    assert out["sink"] == "http://search:9200"
    assert out["backup_store"].startswith("file://")


@pytest.mark.parametrize(
    "rotation,compression",
    [("weekly", "gzip"), ("OneWeek", "GZIP"), ("hourly", "snappy")],
)
def test_forward_accepts_setting_aliases(monkeypatch, rotation, compression):
    seen = {}

    async def fake_forward(path, settings, dry_run):
        seen["settings"] = settings
        return {}

    monkeypatch.setattr(cli, "_forward", fake_forward)
    result = runner.invoke(
        cli.app,
        ["forward", "-", "--dry-run", "--rotation", rotation, "--compression", compression],
    )

    assert result.exit_code == 0, result.output
    assert seen["settings"].index_rotation_period is IndexRotationPeriod(rotation)
    assert seen["settings"].backup_compression is CompressionFormat(compression)


def test_forward_rejects_unknown_compression():
    result = runner.invoke(cli.app, ["forward", "-", "--dry-run", "--compression", "lz4"])
    assert result.exit_code == 1


def test_show_backup_accepts_lower_case_format(tmp_path):
    key = _backup(tmp_path / "bk", [b'{"a":1}'], fmt="Snappy")

    result = runner.invoke(
        cli.app,
        [
            "--log-level",
            "CRITICAL",
            "show-backup",
            key,
            "--backup-dir",
            str(tmp_path / "bk"),
            "--compression",
            "snappy",
        ],
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["body"] == '{"a":1}'
