"""fleet_etl.shared

Shared utilities used by the extraction, reconciliation and CLI layers.
Includes the exception taxonomy, RejectWriter, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourceError(Exception):
    """A whole source table could not be read."""


class SourceAuthError(SourceError):
    """The source rejected our credentials (401/403)."""


class SourceUnavailableError(SourceError):
    """Network failure, or retries exhausted on 429/5xx."""


class StoreUnavailableError(Exception):
    """The relational store cannot be reached at all; fatal for the run."""


class UnresolvedReferenceError(LookupError):
    """A record points at an entity that is not in the store."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected records."""

    FIELDNAMES = ["entity_type", "record_id", "label", "_reject_reason"]

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(
                self._fh, fieldnames=self.FIELDNAMES, extrasaction="ignore"
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
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    report_dir: Path,
    run_id: str,
    mode: str,
    payload: dict[str, Any],
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "written_at": datetime.utcnow().isoformat(),
        **payload,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
