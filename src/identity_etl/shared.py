"""identity_etl.shared

Shared utilities used by every entity import: the exception taxonomy,
RejectWriter, RunCounters, header normalization and report writing.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportFatalError(Exception):
    """Process-level failure raised before any row is processed."""


class UnknownEntityError(ImportFatalError):
    """Raised when no registered entity matches the requested name."""

    def __init__(self, name: str, known: list[str]) -> None:
        self.name = name
        self.known = known
        super().__init__(f"Unknown entity {name!r}. Known: {', '.join(known)}")


class ConfigError(ImportFatalError):
    """Raised when import settings are missing or malformed."""


class UnsupportedProviderError(ConfigError):
    """Raised when the configured store provider is not recognized."""


class ImportCancelled(Exception):
    """Raised when the cancel token fires mid-run."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    With path=None rejects are only counted.
    """

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    @property
    def path(self) -> Path | None:
        return self._path

    def write(self, row: dict[str, Any], reason: str) -> None:
        self.count += 1
        if self._path is None:
            return
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Core tuple reported on every progress line
    read: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    invalid: int = 0
    duplicate: int = 0
    # Supplementary
    unchanged: int = 0
    role_links_inserted: int = 0
    batches_flushed: int = 0
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"read={self.read}, inserted={self.inserted}, updated={self.updated}, "
            f"skipped={self.skipped}, invalid={self.invalid}, "
            f"duplicate={self.duplicate}"
        )

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str | None, Any]) -> dict[str, Any]:
    """Return a new dict with header keys whitespace-stripped.

    DictReader files overflow cells under a None key; those are dropped.
    """
    return {k.strip(): v for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    entity: str,
    source_path: str,
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "entity": entity,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "source_path": source_path,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
