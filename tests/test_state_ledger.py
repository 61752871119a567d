"""Tests for the local resource ledger."""
from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from genesys.state import IAMLink, LedgerError, ResourceRecord, StateLedger


def _record(resource_id: str, name: str, kind: str = "bucket", **extra: object) -> ResourceRecord:
    return ResourceRecord(
        id=resource_id,
        name=name,
        kind=kind,
        provider=str(extra.pop("provider", "aws")),
        region=str(extra.pop("region", "us-east-1")),
        **extra,  # type: ignore[arg-type]
    )


def test_missing_ledger_loads_empty(tmp_path: Path) -> None:
    """A ledger that was never written has no records."""
    ledger = StateLedger.load(tmp_path / "state.json")
    assert len(ledger) == 0
    assert ledger.resources == ()
    assert not (tmp_path / "state.json").exists()


def test_add_persists_and_stamps_created_at(tmp_path: Path) -> None:
    """Adding a record flushes the document and stamps the creation time."""
    path = tmp_path / "state.json"
    ledger = StateLedger.load(path)
    ledger.add(_record("assets", "assets", iam=IAMLink("genesys-bucket-assets")))

    document = json.loads(path.read_text(encoding="utf-8"))
    (entry,) = document["resources"]
    assert entry["id"] == "assets"
    assert entry["kind"] == "bucket"
    assert entry["created_at"].endswith("Z")
    assert entry["iam"] == {"role_name": "genesys-bucket-assets", "managed_by": "genesys", "auto_cleanup": True}
    assert stat.S_IMODE(path.stat().st_mode) == 0o644

    reloaded = StateLedger.load(path)
    assert reloaded.find(("aws", "us-east-1", "bucket", "assets")) == ledger.resources[0]


def test_reload_picks_up_external_writes(tmp_path: Path) -> None:
    """A second handle sees records written by another after reload."""
    path = tmp_path / "state.json"
    reader = StateLedger.load(path)
    StateLedger.load(path).add(_record("assets", "assets"))

    assert len(reader) == 0
    reader.reload()
    assert [record.name for record in reader.resources] == ["assets"]


def test_add_replaces_record_with_same_identity(tmp_path: Path) -> None:
    """Re-recording the same resource never creates a duplicate."""
    ledger = StateLedger.load(tmp_path / "state.json")
    ledger.add(_record("assets", "assets", created_at="2024-01-01T00:00:00Z"))
    ledger.add(_record("assets", "assets", created_at="2024-01-01T00:00:00Z", tags={"team": "web"}))
    ledger.add(_record("assets", "assets", region="eu-west-1"))

    assert len(ledger) == 2
    record = ledger.find(("aws", "us-east-1", "bucket", "assets"))
    assert record is not None
    assert record.tags == {"team": "web"}


def test_incomplete_records_are_rejected(tmp_path: Path) -> None:
    """Every stored record carries an id, a name and a kind."""
    ledger = StateLedger.load(tmp_path / "state.json")
    with pytest.raises(LedgerError):
        ledger.add(_record("", "assets"))
    assert len(ledger) == 0


def test_queries_filter_and_stats(tmp_path: Path) -> None:
    """Lookup helpers and grouped counts reflect the stored records."""
    ledger = StateLedger.load(tmp_path / "state.json")
    ledger.add(_record("assets", "assets", config_file=str(tmp_path / "web.toml")))
    ledger.add(_record("i-1", "web", kind="instance", region="eu-west-1"))
    ledger.add(_record("orders", "orders", kind="table", provider="gcp", region="us-central1"))

    assert ledger.find_by_id("i-1") is not None
    assert [record.id for record in ledger.find_by_name("assets", kind="bucket")] == ["assets"]
    assert ledger.find_by_name("assets", kind="table") == []
    assert [record.id for record in ledger.find_by_config(tmp_path / "web.toml")] == ["assets"]
    assert [record.id for record in ledger.filter(kind="INSTANCE")] == ["i-1"]
    assert [record.id for record in ledger.filter(provider="aws", region="us-east-1")] == ["assets"]

    stats = ledger.stats()
    assert stats["by_kind"] == {"bucket": 1, "instance": 1, "table": 1}
    assert stats["by_provider"] == {"aws": 2, "gcp": 1}
    assert stats["by_region"] == {"eu-west-1": 1, "us-central1": 1, "us-east-1": 1}


def test_remove_uses_full_identity(tmp_path: Path) -> None:
    """Only the record with the same provider, region, kind and id is dropped."""
    ledger = StateLedger.load(tmp_path / "state.json")
    ledger.add(_record("shared", "shared"))
    ledger.add(_record("shared", "shared", kind="table"))
    ledger.add(_record("shared", "shared", region="eu-west-1"))
    ledger.add(_record("shared", "shared", provider="mock"))

    assert ledger.remove(("aws", "us-east-1", "bucket", "shared")) is True
    remaining = sorted((record.provider, record.region, record.kind) for record in ledger.resources)
    assert remaining == [
        ("aws", "eu-west-1", "bucket"),
        ("aws", "us-east-1", "table"),
        ("mock", "us-east-1", "bucket"),
    ]
    assert ledger.remove(("aws", "us-east-1", "bucket", "shared")) is False
    assert len(StateLedger.load(tmp_path / "state.json")) == 3


def test_clean_dry_run_and_apply(tmp_path: Path) -> None:
    """Incomplete records are reported in dry runs and dropped otherwise."""
    path = tmp_path / "state.json"
    path.write_text(
        json.dumps(
            {
                "resources": [
                    {"id": "assets", "name": "assets", "type": "bucket", "provider": "aws"},
                    {"id": "", "name": "ghost", "kind": "bucket"},
                    {"name": "", "kind": ""},
                ]
            }
        ),
        encoding="utf-8",
    )
    ledger = StateLedger.load(path)
    before = path.read_bytes()

    outcomes = ledger.clean(dry_run=True)
    assert [outcome.removed for outcome in outcomes] == [False, True, True]
    assert outcomes[1].reason == "missing id"
    assert outcomes[2].reason == "missing id, name, kind"
    assert path.read_bytes() == before

    ledger.clean()
    assert [record.id for record in StateLedger.load(path).resources] == ["assets"]
    # The legacy ``type`` key is read as the kind.
    assert ledger.resources[0].kind == "bucket"


def test_export_and_import(tmp_path: Path) -> None:
    """Exports can be imported wholesale or merged without duplicates."""
    source = StateLedger.load(tmp_path / "source.json")
    source.add(_record("assets", "assets"))
    source.add(_record("logs", "logs"))
    exported = source.export(tmp_path / "backup" / "export.json")
    assert exported.exists()

    target = StateLedger.load(tmp_path / "target.json")
    target.add(_record("assets", "assets"))
    target.add(_record("other", "other"))

    merged = target.import_from(exported, merge=True)
    assert (merged.added, merged.total, merged.merged) == (1, 3, True)

    replaced = target.import_from(exported)
    assert (replaced.added, replaced.total) == (2, 2)
    assert sorted(record.id for record in StateLedger.load(tmp_path / "target.json").resources) == [
        "assets",
        "logs",
    ]


def test_import_missing_file_raises(tmp_path: Path) -> None:
    """Importing from a non-existent file fails without touching the ledger."""
    ledger = StateLedger.load(tmp_path / "state.json")
    with pytest.raises(LedgerError):
        ledger.import_from(tmp_path / "nope.json")
    assert not ledger.path.exists()


def test_corrupt_ledger_raises(tmp_path: Path) -> None:
    """Unreadable JSON is reported rather than silently discarded."""
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(LedgerError):
        StateLedger.load(path)
