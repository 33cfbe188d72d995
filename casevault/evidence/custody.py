"""
Chain-of-custody ledger: one append-only JSON file per evidence item.

Each entry carries the hash of the entry before it (``previous_hash``,
all zeros for the first) and its own ``entry_hash``, a sha256 over the
canonical JSON of every other field. Editing, removing or reordering an
entry breaks the chain and shows up in ``verify_chain``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import secrets
import threading
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from casevault.engine.errors import VaultIntegrityError, VaultValidationError

logger = logging.getLogger("casevault.evidence.custody")

GENESIS_HASH = "0" * 64
LEDGER_SUFFIX = "_chain.json"


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class ChainOfCustodyEntry:
    id: str
    evidence_id: str
    action: str
    performed_by: str
    performed_at: str
    location: Optional[str] = None
    notes: Optional[str] = None
    signature: Optional[str] = None
    previous_hash: str = GENESIS_HASH
    entry_hash: str = ""

    def compute_hash(self) -> str:
        payload = asdict(self)
        payload.pop("entry_hash")
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @property
    def performed_at_dt(self) -> datetime:
        return as_utc(datetime.fromisoformat(self.performed_at))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainOfCustodyEntry":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


class CustodyLedger:
    """
    Ledger files under ``directory`` named ``{evidence_id}_chain.json``.

    Appends to the same ledger are serialized by a per-ledger lock and
    written with a temp file + ``os.replace`` so readers never see a
    half-written file.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def path_for(self, evidence_id: str) -> Path:
        if not evidence_id or any(c in evidence_id for c in ("/", "\\")) or evidence_id.startswith("."):
            raise VaultValidationError(
                f"Invalid evidence id: {evidence_id!r}",
                object_ref="evidence.custody",
            )
        return self.directory / f"{evidence_id}{LEDGER_SUFFIX}"

    def _lock_for(self, evidence_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[evidence_id]

    def append(
        self,
        evidence_id: str,
        action: str,
        performed_by: str,
        location: Optional[str] = None,
        notes: Optional[str] = None,
        signature: Optional[str] = None,
        performed_at: Optional[datetime] = None,
    ) -> ChainOfCustodyEntry:
        """Append one entry and return it with its hashes filled in."""
        path = self.path_for(evidence_id)
        with self._lock_for(evidence_id):
            entries = self._load(path)
            entry = ChainOfCustodyEntry(
                id=f"CUSTODY_{datetime.now(timezone.utc):%Y%m%d%H%M%S%f}_{secrets.token_hex(4)}",
                evidence_id=evidence_id,
                action=action,
                performed_by=performed_by,
                performed_at=as_utc(performed_at or datetime.now(timezone.utc)).isoformat(),
                location=location,
                notes=notes,
                signature=signature,
                previous_hash=entries[-1]["entry_hash"] if entries else GENESIS_HASH,
            )
            entry.entry_hash = entry.compute_hash()
            entries.append(entry.to_dict())
            self._write(path, entries)
        logger.debug(f"Custody entry {entry.action} for {evidence_id} by {performed_by}")
        return entry

    def read(self, evidence_id: str) -> List[ChainOfCustodyEntry]:
        """Entries oldest first; an evidence item with no ledger has none."""
        path = self.path_for(evidence_id)
        try:
            return [ChainOfCustodyEntry.from_dict(e) for e in self._load(path)]
        except (TypeError, AttributeError) as e:
            raise VaultIntegrityError(
                f"Custody ledger {path.name} has a malformed entry: {e}",
                object_ref=f"evidence.{evidence_id}",
            )

    def verify_chain(self, evidence_id: str) -> List[str]:
        """Problems found walking the hash chain; empty when intact."""
        issues: List[str] = []
        expected_previous = GENESIS_HASH
        for index, entry in enumerate(self.read(evidence_id)):
            if entry.previous_hash != expected_previous:
                issues.append(f"Custody entry {index + 1} does not link to the previous entry")
            if entry.compute_hash() != entry.entry_hash:
                issues.append(f"Custody entry {index + 1} hash mismatch")
            expected_previous = entry.entry_hash
        return issues

    def exists(self, evidence_id: str) -> bool:
        return self.path_for(evidence_id).is_file()

    @staticmethod
    def _load(path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise VaultIntegrityError(
                f"Custody ledger {path.name} is unreadable: {e}",
                object_ref=f"evidence.{path.name}",
            )
        if not isinstance(data, list):
            raise VaultIntegrityError(
                f"Custody ledger {path.name} is not a list",
                object_ref=f"evidence.{path.name}",
            )
        return data

    def _write(self, path: Path, entries: List[Dict[str, Any]]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(entries, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
