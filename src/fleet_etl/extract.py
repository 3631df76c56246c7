"""fleet_etl.extract

Entity extractors and the extraction coordinator.

Each extractor reads every record of one Airtable table through a
TableReader and maps it onto a normalized entity.  Field access goes
through fixed, ordered alias tuples: the first non-blank alias wins, and
fields not named here are ignored.

Extractors raise SourceError for whole-table failures; extract_all()
catches that, or any other error, per table, records it in
ExtractionSnapshot.failures and leaves that entity type with an empty
list, so one broken table never blocks the others.  Records without an id
are skipped with a warning.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from decimal import Decimal
from typing import Any, Callable

from fleet_etl.airtable import SourceRecord, TableReader
from fleet_etl.classify import (
    DEFAULT_CLASSIFIER_RULES,
    ClassifierRules,
    classify_booking_status,
    classify_member_role,
    classify_repair_status,
    classify_repair_urgency,
    classify_service_record_status,
    classify_vehicle_status,
)
from fleet_etl.models import (
    APPOINTMENTS,
    DEPARTMENTS,
    ENTITY_ORDER,
    MEMBERS,
    REPAIR_REQUESTS,
    SERVICE_RECORDS,
    VEHICLES,
    Appointment,
    Department,
    ExtractionSnapshot,
    Member,
    RepairRequest,
    ServiceRecord,
    Vehicle,
)
from fleet_etl.normalize import (
    as_text,
    extract_photo_urls,
    extract_year,
    normalize_email,
    normalize_phone,
    normalize_space,
    parse_bool,
    parse_date,
    parse_datetime,
    parse_int,
    parse_make_model,
    parse_numeric,
    parse_time,
    pick_field,
    pick_first,
    pick_text,
    slug_name,
    split_list,
    synthesize_vin,
)
from fleet_etl.shared import SourceError

log = logging.getLogger(__name__)

# Table names as they exist in the Airtable base.
TABLE_NAMES: dict[str, str] = {
    VEHICLES: "Equipment Inventory",
    DEPARTMENTS: "Departments",
    SERVICE_RECORDS: "Service recors",
    MEMBERS: "Members",
    REPAIR_REQUESTS: "Repair Requests",
    APPOINTMENTS: "Appointments",
}

_AIRTABLE_RECORD_ID_RE = re.compile(r"^rec[A-Za-z0-9]{14}$")


# ---------------------------------------------------------------------------
# Field aliases (first non-blank wins)
# ---------------------------------------------------------------------------

# Vehicles
VEHICLE_MAKE = ("Make", "Brand")
VEHICLE_MODEL = ("Model",)
VEHICLE_YEAR = ("Vehicle year", "Year")
VEHICLE_DESCRIPTION = ("Vehicle Year, Make and Model or Item Brand and Model", "* Unique ID")
VEHICLE_VIN = ("VIN", "Serial Number")
VEHICLE_LICENSE_PLATE = ("License plate", "License #", "License Plate")
VEHICLE_NUMBER = ("Vehicle number", "Asset Number")
VEHICLE_TYPE = ("Type",)
VEHICLE_DEPARTMENT = ("Department", "Division")
VEHICLE_STATUS = ("* Service Status", "Vehicle State", "Status")
VEHICLE_MILEAGE = ("* Current Mileage", "Vehicle Last Recorded Mileage", "Mileage")
VEHICLE_DRIVER_NAME = ("Driver Name", "Driver")
VEHICLE_DRIVER_EMAIL = ("Driver Email", "Driver email")
VEHICLE_DRIVER_PHONE = ("Driver Phone", "Driver phone")
VEHICLE_SUPERVISOR = ("Supervisor",)
VEHICLE_TAG_EXPIRY = ("Tag Exp", "Tag Expiration", "Tag Expiry")
VEHICLE_LAST_SERVICE = ("Last Maintenance Date", "Last Inspection Date")
VEHICLE_NEXT_SERVICE = ("Next service due date", "Next Service Due")
VEHICLE_LOAN_LENDER = ("Loan/Lender", "Lender")
VEHICLE_TITLE = ("Title",)
VEHICLE_FIRST_AID_FIRE = ("First Aid/Fire", "First Aid & Fire Extinguisher")
VEHICLE_PHOTOS = ("Photos", "Images")

# Departments
DEPARTMENT_NAME = ("Name", "Department")
DEPARTMENT_DESCRIPTION = ("Description",)
DEPARTMENT_MANAGER = ("Manager",)
DEPARTMENT_VEHICLE_COUNT = ("Vehicle Count",)

# Service records
SERVICE_VEHICLE = ("Vehicle ID", "Vehicle")
SERVICE_DATE = ("Date", "Service Date")
SERVICE_CHECKED_IN_DATE = ("Checked In Date", "Check-in Date")
SERVICE_CHECKED_IN_MILEAGE = ("Checked In Mileage", "Mileage")
SERVICE_COST = ("Approximate Cost", "Cost")
SERVICE_DESCRIPTION = ("Description", "Repair Description", "Notes")
SERVICE_TYPE = ("Service Type", "Type")
SERVICE_MECHANIC = ("Mechanic", "Technician")
SERVICE_STATUS = ("Status",)
SERVICE_NEXT_DUE = ("Next Service Due",)
SERVICE_CLASSIFICATION = ("Classification", "Category")

# Members
MEMBER_NAME = ("Name", "Full Name")
MEMBER_EMAIL = ("Email",)
MEMBER_PHONE = ("Phone", "Phone Number")
MEMBER_ROLE = ("Role", "Position")
MEMBER_DEPARTMENT = ("Department",)
MEMBER_SUPERVISOR = ("Supervisor",)
MEMBER_HIRE_DATE = ("Hire Date",)
MEMBER_STATUS = ("Status",)
MEMBER_SPECIALIZATIONS = ("Specializations",)

# Repair requests
REPAIR_DRIVER_NAME = ("Employee", "Driver Name", "Name")
REPAIR_DRIVER_PHONE = ("Phone Number", "Phone")
REPAIR_DRIVER_EMAIL = ("Email", "Driver Email")
# Priority order for the vehicle identifier.
REPAIR_VEHICLE_IDENTIFIER = (
    "Vehicle", "Vehicle Number", "Vehicle ID", "Asset Number", "License Plate", "Unit",
)
REPAIR_DESCRIPTION = ("Problem Description", "Description")
REPAIR_URGENCY = ("Urgency", "Priority")
REPAIR_IMMEDIATE = ("Requires Immediate Attention",)
# Most authoritative first.
REPAIR_STATUS_FIELDS = ("Current Status", "Repair Status", "Booking Status", "Status")
REPAIR_SERVICE_ID = ("Service ID",)
REPAIR_LOCATION = ("Location",)
REPAIR_ODOMETER = ("Odometer", "Mileage")
REPAIR_DIVISION = ("Division", "Department")
REPAIR_PHOTOS = ("Photos", "Images", "Attachments")
REPAIR_AI_CATEGORY = ("AI Category", "Category")
REPAIR_AI_SUMMARY = ("AI Summary", "Summary")
REPAIR_INCIDENT_DATE = ("Incident Date", "Date")
REPAIR_INCIDENT_AT = ("Incident Time", "Submitted At")

# Appointments
APPOINTMENT_VEHICLE = ("Vehicle ID", "Vehicle")
APPOINTMENT_CUSTOMER_NAME = ("Customer Name", "Customer")
APPOINTMENT_CUSTOMER_PHONE = ("Customer Phone",)
APPOINTMENT_CUSTOMER_EMAIL = ("Customer Email",)
APPOINTMENT_SERVICE_TYPE = ("Service Type",)
APPOINTMENT_DATE = ("Scheduled Date", "Date")
APPOINTMENT_TIME = ("Scheduled Time", "Time")
APPOINTMENT_STATUS = ("Status",)
APPOINTMENT_MECHANIC = ("Mechanic Assigned",)
APPOINTMENT_NOTES = ("Notes",)
APPOINTMENT_DURATION = ("Estimated Duration",)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fields(record: SourceRecord) -> dict[str, Any]:
    fields = record.get("fields")
    return fields if isinstance(fields, dict) else {}


def _source_records(reader: TableReader, entity_type: str) -> list[SourceRecord]:
    """Read one table, dropping records that carry no usable id."""
    table_name = TABLE_NAMES[entity_type]
    records = reader.list_records(table_name)
    kept: list[SourceRecord] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        record_id = as_text(record.get("id"))
        if record_id is None:
            continue
        kept.append({**record, "id": record_id})
    if len(kept) < len(records):
        log.warning("%s: skipped %d records without an id", table_name, len(records) - len(kept))
    return kept


def _person_name(value: Any) -> str | None:
    """Text of a person field; bare linked-record ids are not names."""
    name = normalize_space(value)
    if name and _AIRTABLE_RECORD_ID_RE.match(name):
        return None
    return name


def _non_negative(value: Decimal | None) -> Decimal | None:
    if value is None:
        return None
    return value if value >= 0 else Decimal("0")


# ---------------------------------------------------------------------------
# Record mappers (one raw record → one entity; never raise)
# ---------------------------------------------------------------------------

def map_vehicle(record: SourceRecord, rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES) -> Vehicle:
    fields = _fields(record)
    external_id = record["id"]
    description = pick_text(fields, VEHICLE_DESCRIPTION)
    parsed_make, parsed_model = parse_make_model(description)

    year = parse_int(pick_field(fields, VEHICLE_YEAR)) or extract_year(description)

    return Vehicle(
        external_id=external_id,
        make=pick_text(fields, VEHICLE_MAKE) or parsed_make or "Unknown",
        model=pick_text(fields, VEHICLE_MODEL) or parsed_model or "Unknown",
        year=year or date.today().year,
        vin=pick_text(fields, VEHICLE_VIN) or synthesize_vin(external_id),
        license_plate=pick_text(fields, VEHICLE_LICENSE_PLATE),
        vehicle_number=pick_text(fields, VEHICLE_NUMBER),
        vehicle_type=pick_text(fields, VEHICLE_TYPE),
        department=pick_text(fields, VEHICLE_DEPARTMENT),
        service_status=classify_vehicle_status(pick_field(fields, VEHICLE_STATUS), rules),
        current_mileage=_non_negative(parse_numeric(pick_field(fields, VEHICLE_MILEAGE))) or Decimal("0"),
        driver_name=_person_name(pick_field(fields, VEHICLE_DRIVER_NAME)),
        driver_email=normalize_email(pick_field(fields, VEHICLE_DRIVER_EMAIL)),
        driver_phone=normalize_phone(pick_field(fields, VEHICLE_DRIVER_PHONE)),
        supervisor=pick_text(fields, VEHICLE_SUPERVISOR),
        tag_expiry=parse_date(pick_field(fields, VEHICLE_TAG_EXPIRY)),
        last_service_date=parse_date(pick_field(fields, VEHICLE_LAST_SERVICE)),
        next_service_due=parse_date(pick_field(fields, VEHICLE_NEXT_SERVICE)),
        loan_lender=pick_text(fields, VEHICLE_LOAN_LENDER),
        title=pick_text(fields, VEHICLE_TITLE),
        first_aid_fire=pick_text(fields, VEHICLE_FIRST_AID_FIRE),
        photo_urls=extract_photo_urls(pick_field(fields, VEHICLE_PHOTOS)),
    )


def map_department(record: SourceRecord) -> Department:
    fields = _fields(record)
    return Department(
        external_id=record["id"],
        name=pick_text(fields, DEPARTMENT_NAME) or record["id"],
        description=pick_text(fields, DEPARTMENT_DESCRIPTION),
        manager=_person_name(pick_field(fields, DEPARTMENT_MANAGER)),
        vehicle_count=parse_int(pick_field(fields, DEPARTMENT_VEHICLE_COUNT)) or 0,
    )


def map_service_record(
    record: SourceRecord,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
) -> ServiceRecord:
    fields = _fields(record)
    return ServiceRecord(
        external_id=record["id"],
        vehicle_external_id=as_text(pick_field(fields, SERVICE_VEHICLE)),
        service_date=parse_date(pick_field(fields, SERVICE_DATE)),
        checked_in_date=parse_date(pick_field(fields, SERVICE_CHECKED_IN_DATE)),
        checked_in_mileage=_non_negative(parse_numeric(pick_field(fields, SERVICE_CHECKED_IN_MILEAGE))),
        approximate_cost=parse_numeric(pick_field(fields, SERVICE_COST)),
        description=pick_text(fields, SERVICE_DESCRIPTION),
        service_type=pick_text(fields, SERVICE_TYPE),
        mechanic_name=_person_name(pick_field(fields, SERVICE_MECHANIC)),
        status=classify_service_record_status(pick_field(fields, SERVICE_STATUS), rules),
        next_service_due=parse_date(pick_field(fields, SERVICE_NEXT_DUE)),
        classification=pick_text(fields, SERVICE_CLASSIFICATION),
    )


def map_member(record: SourceRecord, rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES) -> Member:
    fields = _fields(record)
    status = pick_text(fields, MEMBER_STATUS) or "active"
    return Member(
        external_id=record["id"],
        name=pick_text(fields, MEMBER_NAME),
        email=normalize_email(pick_field(fields, MEMBER_EMAIL)),
        phone=normalize_phone(pick_field(fields, MEMBER_PHONE)),
        role=classify_member_role(pick_field(fields, MEMBER_ROLE), rules),
        department=pick_text(fields, MEMBER_DEPARTMENT),
        supervisor=_person_name(pick_field(fields, MEMBER_SUPERVISOR)),
        hire_date=parse_date(pick_field(fields, MEMBER_HIRE_DATE)),
        is_active=status.lower() == "active",
        specializations=split_list(pick_field(fields, MEMBER_SPECIALIZATIONS)),
    )


def map_repair_request(
    record: SourceRecord,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
) -> RepairRequest | None:
    """Return None for a record with neither a service id nor a description."""
    fields = _fields(record)
    description = pick_text(fields, REPAIR_DESCRIPTION)
    if description is None and pick_text(fields, REPAIR_SERVICE_ID) is None:
        return None

    immediate = pick_field(fields, REPAIR_IMMEDIATE)
    incident_at = (
        parse_datetime(pick_field(fields, REPAIR_INCIDENT_AT))
        or parse_datetime(record.get("createdTime"))
    )
    return RepairRequest(
        external_id=record["id"],
        driver_name=_person_name(pick_field(fields, REPAIR_DRIVER_NAME)) or "Unknown",
        driver_phone=normalize_phone(pick_field(fields, REPAIR_DRIVER_PHONE)),
        driver_email=normalize_email(pick_field(fields, REPAIR_DRIVER_EMAIL)),
        vehicle_identifier=pick_first(fields.get(alias) for alias in REPAIR_VEHICLE_IDENTIFIER),
        description=description or "No description provided",
        urgency=classify_repair_urgency(pick_field(fields, REPAIR_URGENCY), immediate, rules),
        status=classify_repair_status((fields.get(f) for f in REPAIR_STATUS_FIELDS), rules),
        requires_immediate_attention=parse_bool(immediate),
        location=pick_text(fields, REPAIR_LOCATION),
        odometer=_non_negative(parse_numeric(pick_field(fields, REPAIR_ODOMETER))),
        division=pick_text(fields, REPAIR_DIVISION),
        photo_urls=extract_photo_urls(pick_field(fields, REPAIR_PHOTOS)),
        ai_category=pick_text(fields, REPAIR_AI_CATEGORY),
        ai_summary=pick_text(fields, REPAIR_AI_SUMMARY),
        incident_date=parse_date(pick_field(fields, REPAIR_INCIDENT_DATE)) or parse_date(incident_at),
        incident_at=incident_at,
    )


def map_appointment(
    record: SourceRecord,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
) -> Appointment:
    fields = _fields(record)
    return Appointment(
        external_id=record["id"],
        vehicle_external_id=as_text(pick_field(fields, APPOINTMENT_VEHICLE)),
        customer_name=_person_name(pick_field(fields, APPOINTMENT_CUSTOMER_NAME)),
        customer_phone=normalize_phone(pick_field(fields, APPOINTMENT_CUSTOMER_PHONE)),
        customer_email=normalize_email(pick_field(fields, APPOINTMENT_CUSTOMER_EMAIL)),
        service_type=pick_text(fields, APPOINTMENT_SERVICE_TYPE),
        scheduled_date=parse_date(pick_field(fields, APPOINTMENT_DATE)),
        scheduled_time=parse_time(pick_field(fields, APPOINTMENT_TIME)),
        status=classify_booking_status(pick_field(fields, APPOINTMENT_STATUS), rules),
        mechanic_name=_person_name(pick_field(fields, APPOINTMENT_MECHANIC)),
        notes=pick_text(fields, APPOINTMENT_NOTES),
        estimated_duration=pick_text(fields, APPOINTMENT_DURATION),
    )


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------

def extract_vehicles(reader: TableReader, rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES) -> list[Vehicle]:
    return [map_vehicle(r, rules) for r in _source_records(reader, VEHICLES)]


def extract_departments(reader: TableReader, rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES) -> list[Department]:
    return [map_department(r) for r in _source_records(reader, DEPARTMENTS)]


def extract_service_records(
    reader: TableReader,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
) -> list[ServiceRecord]:
    return [map_service_record(r, rules) for r in _source_records(reader, SERVICE_RECORDS)]


def extract_members(reader: TableReader, rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES) -> list[Member]:
    return [map_member(r, rules) for r in _source_records(reader, MEMBERS)]


def extract_repair_requests(
    reader: TableReader,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
) -> list[RepairRequest]:
    records = _source_records(reader, REPAIR_REQUESTS)
    mapped = [map_repair_request(r, rules) for r in records]
    kept = [m for m in mapped if m is not None]
    if len(kept) < len(records):
        log.info("Repair Requests: dropped %d blank records", len(records) - len(kept))
    return kept


def extract_appointments(
    reader: TableReader,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
) -> list[Appointment]:
    return [map_appointment(r, rules) for r in _source_records(reader, APPOINTMENTS)]


EXTRACTORS: dict[str, Callable[[TableReader, ClassifierRules], list[Any]]] = {
    DEPARTMENTS: extract_departments,
    VEHICLES: extract_vehicles,
    MEMBERS: extract_members,
    SERVICE_RECORDS: extract_service_records,
    REPAIR_REQUESTS: extract_repair_requests,
    APPOINTMENTS: extract_appointments,
}


# ---------------------------------------------------------------------------
# Department fallback
# ---------------------------------------------------------------------------

def departments_from_vehicles(vehicles: list[Vehicle]) -> list[Department]:
    """Derive departments from the distinct department names on vehicles."""
    counts = Counter(v.department for v in vehicles if v.department)
    departments: list[Department] = []
    for name in sorted(counts):
        departments.append(Department(
            external_id=f"dept-{slug_name(name) or 'unnamed'}",
            name=name,
            description=f"{name} Department",
            vehicle_count=counts[name],
        ))
    return departments


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

def extract_all(
    reader: TableReader,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
    max_workers: int | None = None,
) -> ExtractionSnapshot:
    """Run every extractor concurrently and wait for all of them.

    A table that fails for any reason yields an empty list and an entry in
    snapshot.failures; the other tables are still extracted.
    """
    snapshot = ExtractionSnapshot()
    with ThreadPoolExecutor(max_workers=max_workers or len(EXTRACTORS)) as executor:
        futures = {
            executor.submit(extractor, reader, rules): entity_type
            for entity_type, extractor in EXTRACTORS.items()
        }
        for future in as_completed(futures):
            entity_type = futures[future]
            try:
                snapshot.entities[entity_type] = future.result()
            except SourceError as exc:
                log.error("Extraction failed for %s: %s", entity_type, exc)
                snapshot.entities[entity_type] = []
                snapshot.failures[entity_type] = str(exc)
            except Exception as exc:
                log.error("Extraction failed for %s: %r", entity_type, exc, exc_info=True)
                snapshot.entities[entity_type] = []
                snapshot.failures[entity_type] = f"{exc.__class__.__name__}: {exc}"

    if not snapshot.get(DEPARTMENTS):
        derived = departments_from_vehicles(snapshot.get(VEHICLES))
        if derived:
            log.info("Departments table empty or unavailable; derived %d from vehicles", len(derived))
        snapshot.entities[DEPARTMENTS] = derived

    for entity_type in ENTITY_ORDER:
        log.info("Extracted %d %s", len(snapshot.get(entity_type)), entity_type)
    return snapshot
