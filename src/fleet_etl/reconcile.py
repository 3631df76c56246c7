"""fleet_etl.reconcile

Reconciliation engine: merges normalized entity lists into the store.

Per record, inside one store.record_scope():
  1. Resolve references (driver email → users.id, vehicle external id → vehicles.id)
  2. Find an existing row by airtable_id
  3. Update it, or insert a new row carrying airtable_id
  4. Ensure the vehicle↔driver link row exists (checked before insert)

A failure in any step rolls back that record's scope, is appended to the
result's error list and the loop moves on.  StoreUnavailableError is the
exception: it aborts the batch and propagates to the caller.

Rows are never deleted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from fleet_etl.models import (
    APPOINTMENTS,
    DEPARTMENTS,
    MEMBERS,
    REPAIR_REQUESTS,
    SERVICE_RECORDS,
    VEHICLES,
    Appointment,
    Department,
    Member,
    RecordError,
    ReconcileResult,
    RepairRequest,
    ServiceRecord,
    Vehicle,
)
from fleet_etl.resolve import DEFAULT_APPROVAL_STATUS, EntityResolver
from fleet_etl.shared import RejectWriter, StoreUnavailableError, UnresolvedReferenceError
from fleet_etl.store import EXTERNAL_ID_COLUMN, RelationalStore

log = logging.getLogger(__name__)


@dataclass
class WriteOutcome:
    row_id: Any
    inserted: bool
    links_inserted: int = 0


class Reconciler:
    def __init__(
        self,
        store: RelationalStore,
        resolver: EntityResolver | None = None,
        rejects: RejectWriter | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver or EntityResolver(store)
        self.rejects = rejects
        self._writers: dict[str, Callable[[Any], WriteOutcome]] = {
            DEPARTMENTS: self.write_department,
            VEHICLES: self.write_vehicle,
            MEMBERS: self.write_member,
            SERVICE_RECORDS: self.write_service_record,
            REPAIR_REQUESTS: self.write_repair_request,
            APPOINTMENTS: self.write_appointment,
        }

    # -----------------------------------------------------------------------
    # Batch loop
    # -----------------------------------------------------------------------

    def reconcile(self, entity_type: str, records: Iterable[Any]) -> ReconcileResult:
        """Write every record of one entity type; never raises for a bad record."""
        write = self._writers[entity_type]
        result = ReconcileResult()
        for record in records:
            try:
                with self.store.record_scope():
                    outcome = write(record)
            except StoreUnavailableError:
                raise
            except Exception as exc:
                message = str(exc).strip() or exc.__class__.__name__
                error = RecordError(record.external_id, record.label, message)
                result.skipped += 1
                result.errors.append(error)
                log.warning("%s %s rejected: %s", entity_type, record.external_id, message)
                if self.rejects is not None:
                    self.rejects.write(
                        {
                            "entity_type": entity_type,
                            "record_id": record.external_id,
                            "label": record.label,
                        },
                        message,
                    )
                continue

            result.imported += 1
            if outcome.inserted:
                result.inserted += 1
            else:
                result.updated += 1
            result.links_inserted += outcome.links_inserted

        log.info(
            "%s: imported=%d skipped=%d (inserted=%d updated=%d links=%d)",
            entity_type, result.imported, result.skipped,
            result.inserted, result.updated, result.links_inserted,
        )
        return result

    # -----------------------------------------------------------------------
    # Upsert helpers
    # -----------------------------------------------------------------------

    def _upsert(
        self,
        table: str,
        external_id: str,
        values: dict[str, Any],
        fallback_id: Callable[[], Any | None] | None = None,
    ) -> WriteOutcome:
        """Update the row owning external_id, else a fallback match, else insert.

        A row matched by fallback (a natural key) is claimed by writing the
        external id onto it.
        """
        row_id = self.store.find_by_external_id(table, external_id)
        if row_id is None and fallback_id is not None:
            row_id = fallback_id()
        if row_id is None:
            row_id = self.store.insert(table, {**values, EXTERNAL_ID_COLUMN: external_id})
            return WriteOutcome(row_id, inserted=True)
        self.store.update(table, row_id, {**values, EXTERNAL_ID_COLUMN: external_id})
        return WriteOutcome(row_id, inserted=False)

    def _ensure_link(self, table: str, key: dict[str, Any], extra: dict[str, Any]) -> tuple[Any, int]:
        """Return (link id, 1 if the link was inserted else 0)."""
        link_id = self.store.find_link(table, key)
        if link_id is not None:
            return link_id, 0
        return self.store.insert_link(table, {**key, **extra}), 1

    def _require_vehicle(self, vehicle_external_id: str | None) -> Any:
        if vehicle_external_id is None:
            raise UnresolvedReferenceError("no vehicle reference")
        vehicle_id = self.store.find_by_external_id("vehicles", vehicle_external_id)
        if vehicle_id is None:
            raise UnresolvedReferenceError(f"vehicle {vehicle_external_id!r} not found")
        return vehicle_id

    # -----------------------------------------------------------------------
    # Per-entity writers
    # -----------------------------------------------------------------------

    def write_department(self, dept: Department) -> WriteOutcome:
        return self._upsert(
            "departments",
            dept.external_id,
            {
                "name": dept.name,
                "description": dept.description,
                "manager": dept.manager,
                "vehicle_count": dept.vehicle_count,
            },
            fallback_id=lambda: self.resolver.find_department(dept.external_id, dept.name),
        )

    def write_vehicle(self, vehicle: Vehicle) -> WriteOutcome:
        driver_id = self.resolver.resolve_driver(
            vehicle.driver_email, vehicle.driver_name, vehicle.driver_phone,
        )
        outcome = self._upsert("vehicles", vehicle.external_id, {
            "make": vehicle.make,
            "model": vehicle.model,
            "year": vehicle.year,
            "vin": vehicle.vin,
            "license_plate": vehicle.license_plate,
            "vehicle_number": vehicle.vehicle_number,
            "vehicle_type": vehicle.vehicle_type,
            "department": vehicle.department,
            "status": vehicle.service_status,
            "mileage": vehicle.current_mileage,
            "driver_id": driver_id,
            "supervisor": vehicle.supervisor,
            "loan_lender": vehicle.loan_lender,
            "tag_expiry": vehicle.tag_expiry,
            "first_aid_fire": vehicle.first_aid_fire,
            "title": vehicle.title,
            "photo_urls": vehicle.photo_urls,
            "last_service_date": vehicle.last_service_date,
            "next_service_due": vehicle.next_service_due,
        })
        if driver_id is not None:
            link_id, outcome.links_inserted = self._ensure_link(
                "vehicle_drivers",
                {"vehicle_id": outcome.row_id, "driver_id": driver_id},
                {"is_primary": True},
            )
            # One primary driver per vehicle: the current one.
            self.store.update_links(
                "vehicle_drivers",
                {"vehicle_id": outcome.row_id, "is_primary": True},
                {"is_primary": False},
                exclude_id=link_id,
            )
            self.store.update("vehicle_drivers", link_id, {"is_primary": True})
        return outcome

    def write_member(self, member: Member) -> WriteOutcome:
        if not member.name and not member.email:
            raise ValueError("member has neither a name nor an email")
        outcome = self._upsert(
            "users",
            member.external_id,
            {
                "name": member.name or member.email,
                "email": member.email,
                "phone": member.phone,
                "role": member.role,
                "approval_status": DEFAULT_APPROVAL_STATUS,
                "department": member.department,
                "supervisor": member.supervisor,
                "hire_date": member.hire_date,
            },
            fallback_id=lambda: self.resolver.find_user(member.email),
        )
        if member.role == "mechanic":
            self._upsert(
                "mechanics",
                member.external_id,
                {
                    "user_id": outcome.row_id,
                    "name": member.name or member.email,
                    "email": member.email,
                    "phone": member.phone,
                    "specializations": member.specializations,
                    "availability": "available" if member.is_active else "unavailable",
                },
                fallback_id=lambda: self.store.find_link("mechanics", {"user_id": outcome.row_id}),
            )
        return outcome

    def write_service_record(self, record: ServiceRecord) -> WriteOutcome:
        vehicle_id = self._require_vehicle(record.vehicle_external_id)
        return self._upsert("service_records", record.external_id, {
            "vehicle_id": vehicle_id,
            "date": record.service_date,
            "checked_in_date": record.checked_in_date,
            "checked_in_mileage": record.checked_in_mileage,
            "service_type": record.service_type,
            "description": record.description,
            "cost": record.approximate_cost,
            "mechanic_name": record.mechanic_name,
            "status": record.status,
            "next_service_due": record.next_service_due,
            "classification": record.classification,
        })

    def write_repair_request(self, request: RepairRequest) -> WriteOutcome:
        return self._upsert("repair_requests", request.external_id, {
            "driver_id": self.resolver.find_user(request.driver_email),
            "vehicle_id": self.resolver.find_vehicle(request.vehicle_identifier),
            "driver_name": request.driver_name,
            "driver_phone": request.driver_phone,
            "driver_email": request.driver_email,
            "vehicle_identifier": request.vehicle_identifier,
            "description": request.description,
            "urgency": request.urgency,
            "status": request.status,
            "location": request.location,
            "odometer": request.odometer,
            "division": request.division,
            "photo_urls": request.photo_urls,
            "ai_category": request.ai_category,
            "ai_summary": request.ai_summary,
            "incident_date": request.incident_date,
            "incident_at": request.incident_at,
        })

    def write_appointment(self, appt: Appointment) -> WriteOutcome:
        vehicle_id = self._require_vehicle(appt.vehicle_external_id)
        return self._upsert("bookings", appt.external_id, {
            "vehicle_id": vehicle_id,
            "mechanic_id": self.resolver.find_mechanic(appt.mechanic_name),
            "customer_name": appt.customer_name,
            "customer_email": appt.customer_email,
            "customer_phone": appt.customer_phone,
            "service_type": appt.service_type,
            "scheduled_date": appt.scheduled_date,
            "scheduled_time": appt.scheduled_time,
            "status": appt.status,
            "notes": appt.notes,
            "estimated_duration": appt.estimated_duration,
        })
