"""fleet_etl.pipeline

Import orchestrator and the import status report.

run_import():
  1. ping the store (an unreachable store fails the run before extraction)
  2. extract every table concurrently into one ExtractionSnapshot
  3. reconcile each entity type sequentially in ENTITY_ORDER:
       departments → vehicles (+ drivers, links) → members
       → service_records → repair_requests → appointments
  4. return an ImportSummary with a result for every entity type

Only StoreUnavailableError escapes; table and record failures are data in
the summary.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from fleet_etl.airtable import TableReader
from fleet_etl.classify import DEFAULT_CLASSIFIER_RULES, ClassifierRules
from fleet_etl.extract import TABLE_NAMES, extract_all
from fleet_etl.models import ENTITY_ORDER, ImportSummary, RecordError, ReconcileResult
from fleet_etl.reconcile import Reconciler
from fleet_etl.resolve import EntityResolver
from fleet_etl.shared import RejectWriter
from fleet_etl.store import STATUS_TABLES, RelationalStore

log = logging.getLogger(__name__)


def _selected_types(entity_types: Iterable[str] | None) -> set[str]:
    if not entity_types:
        return set(ENTITY_ORDER)
    selected = set(entity_types)
    unknown = selected - set(ENTITY_ORDER)
    if unknown:
        raise ValueError(f"Unknown entity types: {sorted(unknown)}")
    return selected


def run_import(
    reader: TableReader,
    store: RelationalStore,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
    entity_types: Iterable[str] | None = None,
    run_id: str = "",
    dry_run: bool = False,
    rejects: RejectWriter | None = None,
) -> ImportSummary:
    """Extract everything, reconcile the selected entity types, summarize.

    Unselected entity types are still extracted and appear in the summary
    with zero counts.  dry_run is recorded in the summary; rolling the
    writes back is the store's job.
    """
    selected = _selected_types(entity_types)
    summary = ImportSummary(
        run_id=run_id,
        started_at=datetime.utcnow().isoformat(),
        dry_run=dry_run,
    )

    store.ping()

    snapshot = extract_all(reader, rules)
    summary.extracted = snapshot.counts
    summary.extraction_failures = dict(snapshot.failures)

    resolver = EntityResolver(store)
    reconciler = Reconciler(store, resolver, rejects)

    for entity_type in ENTITY_ORDER:
        if entity_type in selected:
            result = reconciler.reconcile(entity_type, snapshot.get(entity_type))
        else:
            result = ReconcileResult()
        failure = snapshot.failures.get(entity_type)
        if failure is not None:
            result.errors.insert(0, RecordError(
                TABLE_NAMES[entity_type], entity_type, f"extraction failed: {failure}",
            ))
        summary.results[entity_type] = result

    summary.drivers_created = resolver.drivers_created
    summary.finished_at = datetime.utcnow().isoformat()
    log.info(
        "Import finished: imported=%d errors=%d drivers_created=%d",
        summary.total_imported, summary.total_errors, summary.drivers_created,
    )
    return summary


def import_status(store: RelationalStore) -> dict[str, Any]:
    """Per-table Airtable vs legacy row counts, plus duplicate emails and VINs."""
    tables: dict[str, dict[str, int]] = {}
    for table in STATUS_TABLES:
        total = store.count_rows(table)
        from_airtable = store.count_rows(table, where_external=True)
        tables[table] = {
            "total": total,
            "from_airtable": from_airtable,
            "legacy": max(total - from_airtable, 0),
        }
    return {
        "tables": tables,
        "duplicates": {
            "emails": [
                {"value": value, "count": count}
                for value, count in store.find_duplicates("users", "email")
            ],
            "vins": [
                {"value": value, "count": count}
                for value, count in store.find_duplicates("vehicles", "vin")
            ],
        },
    }


def build_import_report(summary: ImportSummary) -> str:
    lines = [
        f"Import {'(DRY RUN) ' if summary.dry_run else ''}run {summary.run_id}",
        f"  drivers created: {summary.drivers_created}",
    ]
    for entity_type in ENTITY_ORDER:
        result = summary.results.get(entity_type, ReconcileResult())
        lines.append(
            f"  {entity_type:<16} extracted={summary.extracted.get(entity_type, 0):<5} "
            f"imported={result.imported:<5} skipped={result.skipped:<5} errors={len(result.errors)}"
        )
    for entity_type, failure in summary.extraction_failures.items():
        lines.append(f"  ! {entity_type} extraction failed: {failure}")
    lines.append(f"  total imported={summary.total_imported} errors={summary.total_errors}")
    return "\n".join(lines)


def build_status_report(status: dict[str, Any]) -> str:
    lines = ["Import status"]
    for table, counts in status["tables"].items():
        lines.append(
            f"  {table:<16} total={counts['total']:<6} "
            f"from_airtable={counts['from_airtable']:<6} legacy={counts['legacy']}"
        )
    dupes = status["duplicates"]
    lines.append(f"  duplicate emails: {len(dupes['emails'])}")
    lines.append(f"  duplicate VINs:   {len(dupes['vins'])}")
    return "\n".join(lines)
