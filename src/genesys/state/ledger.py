"""Local ledger of resources genesys has deployed.

The ledger (``~/.genesys-state.json`` by default) is a single JSON document
with a top-level ``resources`` array. It is single-writer: every mutation
rewrites the whole document through a temporary file and an atomic rename,
and readers only ever see what was last flushed. No file lock is taken.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections import Counter
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path

LEDGER_MODE = 0o644
DEFAULT_LEDGER_PATH = Path("~/.genesys-state.json")


class LedgerError(RuntimeError):
    """Raised when the ledger cannot be read or written."""


@dataclass(frozen=True, slots=True)
class IAMLink:
    """IAM role association stored alongside a ledger record."""

    role_name: str
    managed_by: str = "genesys"
    auto_cleanup: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "role_name": self.role_name,
            "managed_by": self.managed_by,
            "auto_cleanup": self.auto_cleanup,
        }


@dataclass(frozen=True, slots=True)
class ResourceRecord:
    """A resource known to exist, as recorded after a successful apply."""

    id: str
    name: str
    kind: str
    provider: str
    region: str
    config_file: str = ""
    created_at: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    iam: IAMLink | None = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        """Identity of the record: ``(provider, region, kind, id)``."""
        return (self.provider, self.region, self.kind, self.id)

    @property
    def complete(self) -> bool:
        return bool(self.id and self.name and self.kind)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "provider": self.provider,
            "region": self.region,
            "config_file": self.config_file,
            "created_at": self.created_at,
            "tags": dict(sorted(self.tags.items())),
        }
        if self.iam is not None:
            payload["iam"] = self.iam.to_dict()
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> ResourceRecord:
        """Build a record from its JSON form (accepts legacy ``type``)."""
        kind = raw.get("kind", raw.get("type", ""))
        tags_raw = raw.get("tags") or {}
        tags = (
            {str(key): str(value) for key, value in tags_raw.items()}
            if isinstance(tags_raw, Mapping)
            else {}
        )
        iam_raw = raw.get("iam")
        iam = None
        if isinstance(iam_raw, Mapping) and iam_raw.get("role_name"):
            iam = IAMLink(
                role_name=str(iam_raw["role_name"]),
                managed_by=str(iam_raw.get("managed_by") or "genesys"),
                auto_cleanup=bool(iam_raw.get("auto_cleanup", True)),
            )
        return cls(
            id=_text(raw.get("id")),
            name=_text(raw.get("name")),
            kind=_text(kind),
            provider=_text(raw.get("provider")),
            region=_text(raw.get("region")),
            config_file=_text(raw.get("config_file")),
            created_at=_text(raw.get("created_at")),
            tags=tags,
            iam=iam,
        )


@dataclass(frozen=True, slots=True)
class CleanOutcome:
    """Result for one record inspected by :meth:`StateLedger.clean`."""

    record: ResourceRecord
    removed: bool
    reason: str = ""


@dataclass(frozen=True, slots=True)
class ImportResult:
    """Summary of an import."""

    added: int
    total: int
    merged: bool


@dataclass(slots=True)
class StateLedger:
    """In-memory view of the ledger file plus its mutation operations."""

    path: Path
    _records: list[ResourceRecord] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Normalise the ledger path after initialisation."""
        self.path = Path(self.path).expanduser()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    @classmethod
    def load(cls, path: Path | str = DEFAULT_LEDGER_PATH) -> StateLedger:
        """Read the ledger at *path*; a missing file yields an empty ledger."""
        ledger = cls(Path(path))
        ledger._records = _read_records(ledger.path)
        return ledger

    def reload(self) -> None:
        """Discard in-memory state and re-read the file."""
        self._records = _read_records(self.path)

    def save(self) -> None:
        """Atomically write the ledger document."""
        _write_document(self.path, self.to_document())

    def to_document(self) -> dict[str, object]:
        """Return the JSON document written to disk."""
        return {"resources": [record.to_dict() for record in self._records]}

    # ------------------------------------------------------------------
    # Queries (copy-on-read)
    # ------------------------------------------------------------------
    @property
    def resources(self) -> tuple[ResourceRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def find(self, key: tuple[str, str, str, str]) -> ResourceRecord | None:
        """Return the record with the given ``(provider, region, kind, id)``."""
        for record in self._records:
            if record.key == key:
                return record
        return None

    def find_by_id(self, resource_id: str) -> ResourceRecord | None:
        for record in self._records:
            if record.id == resource_id:
                return record
        return None

    def find_by_name(self, name: str, *, kind: str | None = None) -> list[ResourceRecord]:
        """Return records named *name*, optionally restricted to *kind*."""
        return [
            record
            for record in self._records
            if record.name == name and (kind is None or record.kind == kind)
        ]

    def find_by_config(self, config_file: Path | str) -> list[ResourceRecord]:
        """Return records created from *config_file*."""
        wanted = _normalise_config_path(config_file)
        return [
            record
            for record in self._records
            if record.config_file and _normalise_config_path(record.config_file) == wanted
        ]

    def filter(
        self,
        *,
        kind: str | None = None,
        provider: str | None = None,
        region: str | None = None,
    ) -> list[ResourceRecord]:
        """Return records matching every supplied filter (case-insensitive)."""
        def _matches(value: str, wanted: str | None) -> bool:
            return wanted is None or value.lower() == wanted.lower()

        return [
            record
            for record in self._records
            if _matches(record.kind, kind)
            and _matches(record.provider, provider)
            and _matches(record.region, region)
        ]

    def stats(self) -> dict[str, dict[str, int]]:
        """Return record counts grouped by kind, provider and region."""
        return {
            "by_kind": dict(sorted(Counter(r.kind or "unknown" for r in self._records).items())),
            "by_provider": dict(
                sorted(Counter(r.provider or "unknown" for r in self._records).items())
            ),
            "by_region": dict(sorted(Counter(r.region or "unknown" for r in self._records).items())),
        }

    # ------------------------------------------------------------------
    # Mutations (each flushes the document)
    # ------------------------------------------------------------------
    def add(self, record: ResourceRecord) -> None:
        """Insert *record*, replacing any record with the same identity."""
        if not record.complete:
            raise LedgerError("Ledger records require an id, a name and a kind.")
        stamped = record if record.created_at else replace(record, created_at=_now_iso())
        self._records = [existing for existing in self._records if existing.key != stamped.key]
        self._records.append(stamped)
        self.save()

    def remove(self, key: tuple[str, str, str, str]) -> bool:
        """Remove the record with *key* ``(provider, region, kind, id)``; return True when one was dropped."""
        kept = [record for record in self._records if record.key != key]
        if len(kept) == len(self._records):
            return False
        self._records = kept
        self.save()
        return True

    def clean(self, *, dry_run: bool = False) -> list[CleanOutcome]:
        """Drop records missing an id, a name or a kind."""
        outcomes: list[CleanOutcome] = []
        kept: list[ResourceRecord] = []
        for record in self._records:
            missing = [
                label
                for label, value in (("id", record.id), ("name", record.name), ("kind", record.kind))
                if not value
            ]
            if missing:
                outcomes.append(
                    CleanOutcome(record, removed=True, reason=f"missing {', '.join(missing)}")
                )
            else:
                outcomes.append(CleanOutcome(record, removed=False))
                kept.append(record)
        if not dry_run and len(kept) != len(self._records):
            self._records = kept
            self.save()
        return outcomes

    def export(self, destination: Path | str) -> Path:
        """Write a copy of the ledger document to *destination*."""
        target = Path(destination).expanduser()
        _write_document(target, self.to_document())
        return target

    def import_from(self, source: Path | str, *, merge: bool = False) -> ImportResult:
        """Replace the ledger with *source*, or merge it deduplicating by id."""
        incoming = _read_records(Path(source).expanduser(), missing_ok=False)
        if merge:
            known = {record.id for record in self._records}
            added = 0
            for record in incoming:
                if record.id in known:
                    continue
                self._records.append(record)
                known.add(record.id)
                added += 1
        else:
            self._records = list(incoming)
            added = len(incoming)
        self.save()
        return ImportResult(added=added, total=len(self._records), merged=merge)


# ------------------------------------------------------------------
# Module helpers
# ------------------------------------------------------------------


def _text(value: object) -> str:
    return "" if value is None else str(value)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _normalise_config_path(value: Path | str) -> str:
    return str(Path(value).expanduser().resolve(strict=False))


def _read_records(path: Path, *, missing_ok: bool = True) -> list[ResourceRecord]:
    if not path.exists():
        if missing_ok:
            return []
        raise LedgerError(f"Ledger file {path} does not exist.")
    try:
        document = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, json.JSONDecodeError) as exc:
        raise LedgerError(f"Failed to read ledger {path}: {exc}") from exc
    if not isinstance(document, Mapping):
        raise LedgerError(f"Ledger {path} must contain a JSON object.")
    entries = document.get("resources") or []
    if not isinstance(entries, list):
        raise LedgerError(f"Ledger {path} 'resources' must be an array.")
    return [
        ResourceRecord.from_dict(deepcopy(entry))
        for entry in entries
        if isinstance(entry, Mapping)
    ]


def _write_document(path: Path, document: Mapping[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_path, path)
        os.chmod(path, LEDGER_MODE)
    except OSError as exc:
        raise LedgerError(f"Failed to write ledger {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "CleanOutcome",
    "DEFAULT_LEDGER_PATH",
    "IAMLink",
    "ImportResult",
    "LedgerError",
    "ResourceRecord",
    "StateLedger",
]
