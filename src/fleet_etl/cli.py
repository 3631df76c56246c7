"""fleet_etl.cli

Administrative entrypoint for the Airtable fleet import.

Modes (--mode):
  import: extract every Airtable table and reconcile into PostgreSQL (default)
  status: report Airtable-linked vs legacy row counts and duplicates

Usage (import):
    export AIRTABLE_API_KEY=pat...
    fleet-etl \\
        --mode import \\
        --db-dsn "$DB_DSN" \\
        --base-id appXXXXXXXXXXXXXX \\
        --rules-file config/status_rules.yml \\
        --dry-run

Usage (status):
    fleet-etl --mode status --db-dsn "$DB_DSN"
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from pathlib import Path

import click

from fleet_etl.airtable import AirtableClient
from fleet_etl.classify import (
    DEFAULT_CLASSIFIER_RULES,
    RuleSetValidationError,
    load_classifier_rules,
)
from fleet_etl.models import ENTITY_ORDER
from fleet_etl.pipeline import (
    build_import_report,
    build_status_report,
    import_status,
    run_import,
)
from fleet_etl.shared import (
    RejectWriter,
    SourceAuthError,
    StoreUnavailableError,
    write_run_report,
)
from fleet_etl.store import PostgresStore


@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(["import", "status"]),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
# import flags
@click.option("--base-id", default=None, envvar="AIRTABLE_BASE_ID", help="[import] Airtable base id (env AIRTABLE_BASE_ID)")
@click.option("--api-key-env", default="AIRTABLE_API_KEY", show_default=True, help="[import] Env var name holding the Airtable token")
@click.option(
    "--entity-type",
    "entity_types",
    multiple=True,
    type=click.Choice(ENTITY_ORDER),
    help="[import] Entity type to reconcile (repeatable; default all)",
)
@click.option("--rules-file", default=None, type=click.Path(), help="[import] YAML classifier keyword rules")
@click.option("--request-timeout", default=30.0, type=float, show_default=True, help="[import] Airtable request timeout in seconds")
@click.option("--max-retries", default=5, type=int, show_default=True, help="[import] Retries on Airtable 429/5xx")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/fleet_rejects.csv",
    show_default=True,
)
@click.option("--report-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    base_id: str | None,
    api_key_env: str,
    entity_types: tuple[str, ...],
    rules_file: str | None,
    request_timeout: float,
    max_retries: int,
    dry_run: bool,
    rejects_path: str,
    report_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Airtable → PostgreSQL fleet import CLI."""
    run_id = run_id or str(uuid.uuid4())
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "status":
        _run_status(db_dsn, run_id, Path(report_dir))
        return

    if not base_id:
        click.echo(f"[{run_id}] FATAL: import mode requires --base-id or AIRTABLE_BASE_ID", err=True)
        sys.exit(1)
    api_key = os.environ.get(api_key_env, "")
    if not api_key:
        click.echo(f"[{run_id}] FATAL: env var {api_key_env} is not set", err=True)
        sys.exit(1)

    rules = DEFAULT_CLASSIFIER_RULES
    if rules_file:
        try:
            rules = load_classifier_rules(Path(rules_file))
        except (RuleSetValidationError, FileNotFoundError) as exc:
            click.echo(f"[{run_id}] FATAL: invalid rules file {rules_file}: {exc}", err=True)
            sys.exit(1)
        click.echo(f"[{run_id}] Loaded classifier rules {rules_file} (sha256={rules.source_hash})")

    try:
        reader = AirtableClient(api_key, base_id, timeout=request_timeout, max_retries=max_retries)
    except SourceAuthError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    rejects = RejectWriter(Path(rejects_path))
    try:
        store = PostgresStore.connect(db_dsn, dry_run=dry_run)
        try:
            summary = run_import(
                reader,
                store,
                rules=rules,
                entity_types=entity_types or None,
                run_id=run_id,
                dry_run=dry_run,
                rejects=rejects,
            )
        finally:
            store.close()
    except StoreUnavailableError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    finally:
        rejects.close()

    click.echo(build_import_report(summary))
    if dry_run:
        click.echo(f"[{run_id}] DRY RUN, all writes rolled back.")

    payload = summary.to_dict()
    payload["rules_file"] = rules_file
    payload["rules_sha256"] = rules.source_hash
    report_path = write_run_report(Path(report_dir), run_id, mode, payload)
    click.echo(f"[{run_id}] Run report: {report_path}")
    if summary.total_errors:
        click.echo(f"[{run_id}] {summary.total_errors} record errors; see {rejects_path}", err=True)


def _run_status(db_dsn: str, run_id: str, report_dir: Path) -> None:
    try:
        with PostgresStore.connect(db_dsn) as store:
            status = import_status(store)
    except StoreUnavailableError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    click.echo(build_status_report(status))
    report_path = write_run_report(report_dir, run_id, "status", status)
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
