"""Normalized entity records and pipeline result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

# Entity type keys, in reconciliation dependency order.
DEPARTMENTS = "departments"
VEHICLES = "vehicles"
MEMBERS = "members"
SERVICE_RECORDS = "service_records"
REPAIR_REQUESTS = "repair_requests"
APPOINTMENTS = "appointments"

ENTITY_ORDER = [
    DEPARTMENTS,
    VEHICLES,
    MEMBERS,
    SERVICE_RECORDS,
    REPAIR_REQUESTS,
    APPOINTMENTS,
]

MAX_REPORTED_ERRORS = 50


# ---------------------------------------------------------------------------
# Normalized entities
# ---------------------------------------------------------------------------

@dataclass
class Department:
    external_id: str
    name: str
    description: str | None = None
    manager: str | None = None
    vehicle_count: int = 0

    @property
    def label(self) -> str:
        return self.name


@dataclass
class Vehicle:
    external_id: str
    make: str
    model: str
    year: int
    vin: str
    license_plate: str | None = None
    vehicle_number: str | None = None
    vehicle_type: str | None = None
    department: str | None = None
    service_status: str = "active"
    current_mileage: Decimal = Decimal("0")
    driver_name: str | None = None
    driver_email: str | None = None
    driver_phone: str | None = None
    supervisor: str | None = None
    tag_expiry: str | None = None
    last_service_date: str | None = None
    next_service_due: str | None = None
    loan_lender: str | None = None
    title: str | None = None
    first_aid_fire: str | None = None
    photo_urls: list[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return " ".join(p for p in (self.make, self.model) if p) or self.external_id


@dataclass
class ServiceRecord:
    external_id: str
    vehicle_external_id: str | None
    service_date: str | None = None
    checked_in_date: str | None = None
    checked_in_mileage: Decimal | None = None
    approximate_cost: Decimal | None = None
    description: str | None = None
    service_type: str | None = None
    mechanic_name: str | None = None
    status: str = "completed"
    next_service_due: str | None = None
    classification: str | None = None

    @property
    def label(self) -> str:
        return f"service record {self.external_id}"


@dataclass
class Member:
    external_id: str
    name: str | None
    email: str | None = None
    phone: str | None = None
    role: str = "customer"
    department: str | None = None
    supervisor: str | None = None
    hire_date: str | None = None
    is_active: bool = True
    specializations: list[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.name or self.email or self.external_id


@dataclass
class RepairRequest:
    external_id: str
    driver_name: str
    driver_phone: str | None = None
    driver_email: str | None = None
    vehicle_identifier: str | None = None
    description: str = "No description provided"
    urgency: str = "low"
    status: str = "submitted"
    requires_immediate_attention: bool = False
    location: str | None = None
    odometer: Decimal | None = None
    division: str | None = None
    photo_urls: list[str] = field(default_factory=list)
    ai_category: str | None = None
    ai_summary: str | None = None
    incident_date: str | None = None
    incident_at: str | None = None

    @property
    def label(self) -> str:
        return self.driver_name


@dataclass
class Appointment:
    external_id: str
    vehicle_external_id: str | None
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    service_type: str | None = None
    scheduled_date: str | None = None
    scheduled_time: str | None = None
    status: str = "pending"
    mechanic_name: str | None = None
    notes: str | None = None
    estimated_duration: str | None = None

    @property
    def label(self) -> str:
        return self.customer_name or self.external_id


# ---------------------------------------------------------------------------
# Extraction snapshot
# ---------------------------------------------------------------------------

@dataclass
class ExtractionSnapshot:
    """All normalized entity lists from one extraction pass."""

    entities: dict[str, list[Any]] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def get(self, entity_type: str) -> list[Any]:
        return self.entities.get(entity_type, [])

    @property
    def counts(self) -> dict[str, int]:
        return {et: len(self.get(et)) for et in ENTITY_ORDER}


# ---------------------------------------------------------------------------
# Reconciliation results
# ---------------------------------------------------------------------------

@dataclass
class RecordError:
    record_id: str
    label: str
    message: str

    def __str__(self) -> str:
        return f"{self.label} ({self.record_id}): {self.message}"


@dataclass
class ReconcileResult:
    imported: int = 0
    skipped: int = 0
    inserted: int = 0
    updated: int = 0
    links_inserted: int = 0
    errors: list[RecordError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "inserted": self.inserted,
            "updated": self.updated,
            "links_inserted": self.links_inserted,
            "error_count": len(self.errors),
            "errors": [str(e) for e in self.errors[:MAX_REPORTED_ERRORS]],
        }


@dataclass
class ImportSummary:
    run_id: str
    started_at: str
    finished_at: str | None = None
    dry_run: bool = False
    extracted: dict[str, int] = field(default_factory=dict)
    extraction_failures: dict[str, str] = field(default_factory=dict)
    drivers_created: int = 0
    results: dict[str, ReconcileResult] = field(default_factory=dict)

    @property
    def total_imported(self) -> int:
        return sum(r.imported for r in self.results.values())

    @property
    def total_errors(self) -> int:
        return sum(len(r.errors) for r in self.results.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dry_run": self.dry_run,
            "extracted": dict(self.extracted),
            "extraction_failures": dict(self.extraction_failures),
            "drivers_created": self.drivers_created,
            "results": {et: r.to_dict() for et, r in self.results.items()},
        }
