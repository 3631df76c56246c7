"""Unit tests for fleet_etl.reconcile and fleet_etl.resolve (in-memory store)."""

from __future__ import annotations

import csv

import pytest

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
    RepairRequest,
    ServiceRecord,
    Vehicle,
)
from fleet_etl.reconcile import Reconciler
from fleet_etl.resolve import EntityResolver
from fleet_etl.shared import RejectWriter, StoreUnavailableError

from fleet_fakes import InMemoryStore


def _vehicle(external_id: str, vin: str | None = "VIN", **kwargs) -> Vehicle:
    return Vehicle(external_id, "Ford", "F-150", 2019, vin, **kwargs)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def reconciler(store):
    return Reconciler(store)


# ---------------------------------------------------------------------------
# EntityResolver
# ---------------------------------------------------------------------------

class TestResolver:
    def test_no_email_resolves_to_none(self, store):
        resolver = EntityResolver(store)
        assert resolver.resolve_driver(None, "Dana") is None
        assert store.rows("users") == []

    def test_creates_then_reuses(self, store):
        resolver = EntityResolver(store)
        first = resolver.resolve_driver("Dana@Example.com", "Dana", "555-123-4567")
        second = resolver.resolve_driver("dana@example.com")
        assert first == second
        assert resolver.drivers_created == 1
        row = store.row("users", first)
        assert row["email"] == "dana@example.com"
        assert row["phone"] == "+15551234567"
        assert row["role"] == "driver"
        assert row["approval_status"] == "approved"

    def test_name_defaults_to_email(self, store):
        user_id = EntityResolver(store).resolve_driver("x@example.com")
        assert store.row("users", user_id)["name"] == "x@example.com"

    def test_find_vehicle_by_number_plate_or_external_id(self, store):
        vid = store.insert("vehicles", {
            "make": "Ford", "model": "F-150", "year": 2019, "vin": "V",
            "vehicle_number": "V-1", "license_plate": "ABC123", "airtable_id": "recVEH1",
        })
        resolver = EntityResolver(store)
        assert resolver.find_vehicle(" V-1 ") == vid
        assert resolver.find_vehicle("ABC123") == vid
        assert resolver.find_vehicle("recVEH1") == vid
        assert resolver.find_vehicle("nope") is None
        assert resolver.find_vehicle(None) is None

    def test_find_mechanic_is_case_insensitive(self, store):
        mid = store.insert("mechanics", {"name": "Mo Mechanic"})
        assert EntityResolver(store).find_mechanic("mo  MECHANIC") == mid


# ---------------------------------------------------------------------------
# Departments
# ---------------------------------------------------------------------------

class TestDepartments:
    def test_insert(self, store, reconciler):
        result = reconciler.reconcile(DEPARTMENTS, [Department("dept-salvage", "Salvage")])
        assert (result.imported, result.inserted, result.updated) == (1, 1, 0)
        assert store.rows("departments")[0]["airtable_id"] == "dept-salvage"

    def test_legacy_row_claimed_by_name(self, store, reconciler):
        legacy = store.insert("departments", {"name": "Construction"})
        result = reconciler.reconcile(DEPARTMENTS, [Department("dept-construction", "Construction", vehicle_count=2)])
        assert (result.inserted, result.updated) == (0, 1)
        assert len(store.rows("departments")) == 1
        assert store.row("departments", legacy)["airtable_id"] == "dept-construction"
        assert store.row("departments", legacy)["vehicle_count"] == 2


# ---------------------------------------------------------------------------
# Vehicles and driver links
# ---------------------------------------------------------------------------

class TestVehicles:
    def test_shared_driver_creates_one_user_two_links(self, store, reconciler):
        vehicles = [
            _vehicle("recV1", vin="VIN1", driver_email="dana@example.com", driver_name="Dana"),
            _vehicle("recV2", vin="VIN2", driver_email="dana@example.com", driver_name="Dana"),
        ]
        result = reconciler.reconcile(VEHICLES, vehicles)
        assert result.imported == 2
        assert result.links_inserted == 2
        assert len(store.rows("users")) == 1
        assert len(store.rows("vehicle_drivers")) == 2
        assert all(link["is_primary"] for link in store.rows("vehicle_drivers"))
        assert reconciler.resolver.drivers_created == 1

    def test_rerun_updates_without_new_links(self, store, reconciler):
        vehicles = [_vehicle("recV1", driver_email="dana@example.com")]
        reconciler.reconcile(VEHICLES, vehicles)
        result = reconciler.reconcile(VEHICLES, vehicles)
        assert (result.inserted, result.updated, result.links_inserted) == (0, 1, 0)
        assert len(store.rows("vehicles")) == 1
        assert len(store.rows("vehicle_drivers")) == 1

    def test_changed_driver_takes_over_primary_link(self, store, reconciler):
        reconciler.reconcile(VEHICLES, [_vehicle("recV1", driver_email="dana@example.com")])
        result = reconciler.reconcile(VEHICLES, [_vehicle("recV1", driver_email="lee@example.com")])
        assert result.links_inserted == 1

        links = store.rows("vehicle_drivers")
        assert len(links) == 2
        primary = [link for link in links if link["is_primary"]]
        assert len(primary) == 1
        assert primary[0]["driver_id"] == store.rows("vehicles")[0]["driver_id"]
        assert store.row("users", primary[0]["driver_id"])["email"] == "lee@example.com"

    def test_returning_driver_regains_primary_link(self, store, reconciler):
        for email in ("dana@example.com", "lee@example.com", "dana@example.com"):
            reconciler.reconcile(VEHICLES, [_vehicle("recV1", driver_email=email)])

        links = store.rows("vehicle_drivers")
        assert len(links) == 2
        primary = [link for link in links if link["is_primary"]]
        assert len(primary) == 1
        assert store.row("users", primary[0]["driver_id"])["email"] == "dana@example.com"

    def test_vehicle_without_driver(self, store, reconciler):
        result = reconciler.reconcile(VEHICLES, [_vehicle("recV3")])
        assert result.links_inserted == 0
        assert store.rows("vehicles")[0]["driver_id"] is None
        assert store.rows("users") == []

    def test_failed_record_rolls_back_its_driver(self, store, reconciler):
        result = reconciler.reconcile(VEHICLES, [
            _vehicle("recBAD", vin=None, driver_email="ghost@example.com"),
            _vehicle("recOK", vin="VIN2"),
        ])
        assert (result.imported, result.skipped) == (1, 1)
        assert "vin" in result.errors[0].message
        assert result.errors[0].record_id == "recBAD"
        assert store.rows("users") == []
        assert [v["airtable_id"] for v in store.rows("vehicles")] == ["recOK"]


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------

class TestMembers:
    def test_member_claims_driver_row_by_email(self, store, reconciler):
        reconciler.reconcile(VEHICLES, [_vehicle("recV1", driver_email="dana@example.com")])
        result = reconciler.reconcile(MEMBERS, [
            Member("recMEM3", "Dana Driver", email="dana@example.com", role="driver"),
        ])
        assert (result.inserted, result.updated) == (0, 1)
        users = store.rows("users")
        assert len(users) == 1
        assert users[0]["airtable_id"] == "recMEM3"
        assert users[0]["name"] == "Dana Driver"

    def test_mechanic_gets_mechanics_row(self, store, reconciler):
        reconciler.reconcile(MEMBERS, [
            Member("recMEM1", "Mo", email="mo@example.com", role="mechanic", specializations=["Diesel"]),
        ])
        user = store.rows("users")[0]
        mechanic = store.rows("mechanics")[0]
        assert user["role"] == "mechanic"
        assert mechanic["user_id"] is not None
        assert mechanic["specializations"] == ["Diesel"]
        assert mechanic["availability"] == "available"

    def test_inactive_mechanic_unavailable(self, store, reconciler):
        reconciler.reconcile(MEMBERS, [
            Member("recMEM1", "Mo", email="mo@example.com", role="mechanic", is_active=False),
        ])
        assert store.rows("mechanics")[0]["availability"] == "unavailable"

    def test_mechanic_rerun_updates_single_row(self, store, reconciler):
        member = Member("recMEM1", "Mo", email="mo@example.com", role="mechanic")
        reconciler.reconcile(MEMBERS, [member])
        reconciler.reconcile(MEMBERS, [member])
        assert len(store.rows("mechanics")) == 1
        assert len(store.rows("users")) == 1

    def test_member_without_name_or_email_rejected(self, store, reconciler):
        result = reconciler.reconcile(MEMBERS, [Member("recMEM9", None)])
        assert result.skipped == 1
        assert "neither a name nor an email" in result.errors[0].message
        assert store.rows("users") == []


# ---------------------------------------------------------------------------
# Service records, repair requests, bookings
# ---------------------------------------------------------------------------

class TestDependentEntities:
    def test_service_record_with_unknown_vehicle(self, store, reconciler):
        result = reconciler.reconcile(SERVICE_RECORDS, [ServiceRecord("recSR2", "recMISSING")])
        assert result.skipped == 1
        assert "recMISSING" in result.errors[0].message

    def test_service_record_without_vehicle(self, reconciler):
        result = reconciler.reconcile(SERVICE_RECORDS, [ServiceRecord("recSR3", None)])
        assert result.errors[0].message == "no vehicle reference"

    def test_service_record_linked(self, store, reconciler):
        reconciler.reconcile(VEHICLES, [_vehicle("recV1")])
        reconciler.reconcile(SERVICE_RECORDS, [ServiceRecord("recSR1", "recV1", status="completed")])
        vehicle_id = store.find_by_external_id("vehicles", "recV1")
        assert store.rows("service_records")[0]["vehicle_id"] == vehicle_id

    def test_repair_request_links_are_lookup_only(self, store, reconciler):
        result = reconciler.reconcile(REPAIR_REQUESTS, [
            RepairRequest("recRR1", "Nobody", driver_email="nobody@example.com", vehicle_identifier="X-9"),
        ])
        assert result.imported == 1
        row = store.rows("repair_requests")[0]
        assert row["driver_id"] is None
        assert row["vehicle_id"] is None
        assert store.rows("users") == []

    def test_booking_requires_scheduled_date(self, store, reconciler):
        reconciler.reconcile(VEHICLES, [_vehicle("recV1")])
        result = reconciler.reconcile(APPOINTMENTS, [
            Appointment("recAP1", "recV1", scheduled_date="2024-03-10"),
            Appointment("recAP2", "recV1", customer_name="Sam"),
        ])
        assert (result.imported, result.skipped) == (1, 1)
        assert result.errors[0].label == "Sam"
        assert "scheduled_date" in result.errors[0].message


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

class TestErrorHandling:
    def test_rejects_csv(self, store, tmp_path):
        rejects = RejectWriter(tmp_path / "rejects.csv")
        reconciler = Reconciler(store, rejects=rejects)
        reconciler.reconcile(SERVICE_RECORDS, [ServiceRecord("recSR2", "recMISSING")])
        rejects.close()

        with open(tmp_path / "rejects.csv", newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert len(rows) == 1
        assert rows[0]["entity_type"] == "service_records"
        assert rows[0]["record_id"] == "recSR2"
        assert "not found" in rows[0]["_reject_reason"]

    def test_store_down_aborts_batch(self):
        store = InMemoryStore(down_after_inserts=1)
        reconciler = Reconciler(store)
        with pytest.raises(StoreUnavailableError):
            reconciler.reconcile(VEHICLES, [_vehicle("recV1", vin="A"), _vehicle("recV2", vin="B")])
        assert len(store.rows("vehicles")) == 1
