"""fleet_etl.store

Relational store over PostgreSQL (psycopg 3).

Normal runs use an autocommit connection: every record_scope() is its own
transaction, so a record's insert/update/link commits or rolls back on its
own and earlier records stay written if a later one fails.

Dry runs use a non-autocommit connection.  connect() pings the server,
which opens the outer transaction; each record_scope() is then a
SAVEPOINT inside it, and close() rolls the whole run back.

Any psycopg error that leaves the connection closed or broken is raised as
StoreUnavailableError; all other database errors propagate unchanged so the
caller can record them against the offending record.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Protocol

import psycopg
from psycopg import sql

from fleet_etl.shared import StoreUnavailableError

EXTERNAL_ID_COLUMN = "airtable_id"

# Writable columns per table.  Identifiers outside this map are rejected.
TABLE_COLUMNS: dict[str, frozenset[str]] = {
    "departments": frozenset({
        "name", "description", "manager", "vehicle_count", "airtable_id",
    }),
    "users": frozenset({
        "name", "email", "phone", "role", "approval_status", "department",
        "supervisor", "hire_date", "airtable_id",
    }),
    "mechanics": frozenset({
        "user_id", "name", "email", "phone", "specializations", "availability",
        "airtable_id",
    }),
    "vehicles": frozenset({
        "make", "model", "year", "vin", "license_plate", "vehicle_number",
        "vehicle_type", "department", "status", "mileage", "driver_id",
        "supervisor", "loan_lender", "tag_expiry", "first_aid_fire", "title",
        "photo_urls", "last_service_date", "next_service_due", "airtable_id",
    }),
    "vehicle_drivers": frozenset({"vehicle_id", "driver_id", "is_primary"}),
    "service_records": frozenset({
        "vehicle_id", "date", "checked_in_date", "checked_in_mileage",
        "service_type", "description", "cost", "mechanic_name", "status",
        "next_service_due", "classification", "airtable_id",
    }),
    "repair_requests": frozenset({
        "driver_id", "vehicle_id", "driver_name", "driver_phone", "driver_email",
        "vehicle_identifier", "description", "urgency", "status", "location",
        "odometer", "division", "photo_urls", "ai_category", "ai_summary",
        "incident_date", "incident_at", "airtable_id",
    }),
    "bookings": frozenset({
        "vehicle_id", "mechanic_id", "customer_name", "customer_email",
        "customer_phone", "service_type", "scheduled_date", "scheduled_time",
        "status", "notes", "estimated_duration", "airtable_id",
    }),
}

# Tables maintaining an updated_at column.
_TIMESTAMPED = frozenset(TABLE_COLUMNS) - {"vehicle_drivers"}

# Tables reported by the import status report.
STATUS_TABLES = (
    "vehicles", "users", "mechanics", "bookings",
    "service_records", "departments", "repair_requests",
)


class RelationalStore(Protocol):
    def find_by_natural_key(
        self, table: str, column: str, value: Any, case_insensitive: bool = False,
    ) -> Any | None: ...

    def find_by_external_id(self, table: str, external_id: str) -> Any | None: ...

    def insert(self, table: str, values: dict[str, Any]) -> Any: ...

    def update(self, table: str, row_id: Any, values: dict[str, Any]) -> None: ...

    def find_link(self, table: str, values: dict[str, Any]) -> Any | None: ...

    def insert_link(self, table: str, values: dict[str, Any]) -> Any: ...

    def update_links(
        self, table: str, where: dict[str, Any], values: dict[str, Any], exclude_id: Any = None,
    ) -> int: ...

    def record_scope(self) -> Any: ...

    def count_rows(self, table: str, where_external: bool = False) -> int: ...

    def find_duplicates(self, table: str, column: str) -> list[tuple[Any, int]]: ...

    def ping(self) -> None: ...


# ---------------------------------------------------------------------------
# Identifier checks
# ---------------------------------------------------------------------------

def _check_table(table: str) -> None:
    if table not in TABLE_COLUMNS:
        raise ValueError(f"Unknown table: {table!r}")


def _check_columns(table: str, columns: Any) -> None:
    _check_table(table)
    unknown = set(columns) - TABLE_COLUMNS[table]
    if unknown:
        raise ValueError(f"Unknown columns for {table}: {sorted(unknown)}")


# ---------------------------------------------------------------------------
# PostgresStore
# ---------------------------------------------------------------------------

class PostgresStore:
    def __init__(self, conn: psycopg.Connection, dry_run: bool = False) -> None:
        self.conn = conn
        self.dry_run = dry_run

    @classmethod
    def connect(cls, dsn: str, dry_run: bool = False) -> "PostgresStore":
        try:
            conn = psycopg.connect(dsn, autocommit=not dry_run)
        except psycopg.OperationalError as exc:
            raise StoreUnavailableError(f"Cannot connect to PostgreSQL: {exc}") from exc
        store = cls(conn, dry_run=dry_run)
        store.ping()
        return store

    def close(self) -> None:
        if self.conn.closed:
            return
        if self.dry_run:
            self.conn.rollback()
        self.conn.close()

    def __enter__(self) -> "PostgresStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- execution ---------------------------------------------------------

    def _unavailable(self, exc: Exception) -> bool:
        return self.conn.closed or self.conn.broken or isinstance(exc, psycopg.InterfaceError)

    def _execute(self, query: Any, params: Any = None) -> psycopg.Cursor:
        try:
            return self.conn.execute(query, params)
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            if self._unavailable(exc):
                raise StoreUnavailableError(f"PostgreSQL connection lost: {exc}") from exc
            raise

    def ping(self) -> None:
        self._execute("SELECT 1").fetchone()

    @contextmanager
    def record_scope(self) -> Iterator[None]:
        """One atomic unit of work: a transaction, or a savepoint in dry runs."""
        try:
            with self.conn.transaction():
                yield
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            if self._unavailable(exc):
                raise StoreUnavailableError(f"PostgreSQL connection lost: {exc}") from exc
            raise

    # -- lookups -----------------------------------------------------------

    def find_by_natural_key(
        self,
        table: str,
        column: str,
        value: Any,
        case_insensitive: bool = False,
    ) -> Any | None:
        """Return the id of the oldest row whose column equals value, else None."""
        _check_columns(table, [column])
        if value is None:
            return None
        if case_insensitive:
            where = sql.SQL("lower({col}) = lower(%s)").format(col=sql.Identifier(column))
        else:
            where = sql.SQL("{col} = %s").format(col=sql.Identifier(column))
        query = sql.SQL("SELECT id FROM {table} WHERE {where} ORDER BY created_at, id LIMIT 1").format(
            table=sql.Identifier(table), where=where,
        )
        row = self._execute(query, (value,)).fetchone()
        return row[0] if row else None

    def find_by_external_id(self, table: str, external_id: str) -> Any | None:
        return self.find_by_natural_key(table, EXTERNAL_ID_COLUMN, external_id)

    # -- writes ------------------------------------------------------------

    def insert(self, table: str, values: dict[str, Any]) -> Any:
        _check_columns(table, values)
        columns = list(values)
        query = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals}) RETURNING id").format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        return self._execute(query, [values[c] for c in columns]).fetchone()[0]

    def update(self, table: str, row_id: Any, values: dict[str, Any]) -> None:
        _check_columns(table, values)
        if not values:
            return
        columns = list(values)
        assignments = [
            sql.SQL("{col} = %s").format(col=sql.Identifier(c)) for c in columns
        ]
        if table in _TIMESTAMPED:
            assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL("UPDATE {table} SET {sets} WHERE id = %s").format(
            table=sql.Identifier(table),
            sets=sql.SQL(", ").join(assignments),
        )
        self._execute(query, [values[c] for c in columns] + [row_id])

    def find_link(self, table: str, values: dict[str, Any]) -> Any | None:
        """Return the id of a row matching every column in values, else None."""
        _check_columns(table, values)
        columns = list(values)
        query = sql.SQL("SELECT id FROM {table} WHERE {where} LIMIT 1").format(
            table=sql.Identifier(table),
            where=sql.SQL(" AND ").join(
                sql.SQL("{col} = %s").format(col=sql.Identifier(c)) for c in columns
            ),
        )
        row = self._execute(query, [values[c] for c in columns]).fetchone()
        return row[0] if row else None

    def insert_link(self, table: str, values: dict[str, Any]) -> Any:
        return self.insert(table, values)

    def update_links(
        self,
        table: str,
        where: dict[str, Any],
        values: dict[str, Any],
        exclude_id: Any = None,
    ) -> int:
        """Set values on every row matching where, except exclude_id; return the count."""
        _check_columns(table, [*where, *values])
        conditions = [sql.SQL("{col} = %s").format(col=sql.Identifier(c)) for c in where]
        params = [where[c] for c in where]
        if exclude_id is not None:
            conditions.append(sql.SQL("id <> %s"))
            params.append(exclude_id)
        query = sql.SQL("UPDATE {table} SET {sets} WHERE {where}").format(
            table=sql.Identifier(table),
            sets=sql.SQL(", ").join(
                sql.SQL("{col} = %s").format(col=sql.Identifier(c)) for c in values
            ),
            where=sql.SQL(" AND ").join(conditions),
        )
        return self._execute(query, [values[c] for c in values] + params).rowcount

    # -- reporting ---------------------------------------------------------

    def count_rows(self, table: str, where_external: bool = False) -> int:
        _check_table(table)
        query = sql.SQL("SELECT count(*) FROM {table}").format(table=sql.Identifier(table))
        if where_external:
            query = sql.SQL("{q} WHERE {col} IS NOT NULL").format(
                q=query, col=sql.Identifier(EXTERNAL_ID_COLUMN),
            )
        return self._execute(query).fetchone()[0]

    def find_duplicates(self, table: str, column: str) -> list[tuple[Any, int]]:
        """Non-blank values of column appearing on more than one row."""
        _check_columns(table, [column])
        query = sql.SQL(
            """
            SELECT {col}, count(*) FROM {table}
            WHERE {col} IS NOT NULL AND {col} <> ''
            GROUP BY {col}
            HAVING count(*) > 1
            ORDER BY count(*) DESC, {col}
            """
        ).format(table=sql.Identifier(table), col=sql.Identifier(column))
        return [(row[0], row[1]) for row in self._execute(query).fetchall()]
