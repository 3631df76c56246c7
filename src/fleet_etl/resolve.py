"""fleet_etl.resolve

Natural-key entity resolution against the relational store.

resolve_driver() is find-or-create: it looks the driver up by normalized
email and inserts a minimal approved driver row only when none exists.
There is no in-memory cache; the store is checked on every call, so a row
rolled back with a failed record is never handed out again.  The check is
not guarded against a second concurrent run creating the same email.

The find_* helpers are lookup-only and never write.
"""

from __future__ import annotations

import logging
from typing import Any

from fleet_etl.normalize import normalize_email, normalize_phone, normalize_space
from fleet_etl.store import RelationalStore

log = logging.getLogger(__name__)

DEFAULT_DRIVER_ROLE = "driver"
DEFAULT_APPROVAL_STATUS = "approved"


class EntityResolver:
    def __init__(self, store: RelationalStore) -> None:
        self.store = store
        self.drivers_created = 0

    def resolve_driver(
        self,
        email: str | None,
        name: str | None = None,
        phone: str | None = None,
    ) -> Any | None:
        """Return the users.id for email, inserting a driver row if needed.

        Returns None when email is absent: without a natural key there is
        nothing to resolve against.
        """
        email_norm = normalize_email(email)
        if email_norm is None:
            return None

        user_id = self.find_user(email_norm)
        if user_id is not None:
            return user_id

        user_id = self.store.insert("users", {
            "name": normalize_space(name) or email_norm,
            "email": email_norm,
            "phone": normalize_phone(phone),
            "role": DEFAULT_DRIVER_ROLE,
            "approval_status": DEFAULT_APPROVAL_STATUS,
        })
        self.drivers_created += 1
        log.info("Created driver %s", email_norm)
        return user_id

    def find_user(self, email: str | None) -> Any | None:
        email_norm = normalize_email(email)
        if email_norm is None:
            return None
        return self.store.find_by_natural_key("users", "email", email_norm)

    def find_vehicle(self, identifier: str | None) -> Any | None:
        """Match a free-text vehicle identifier by number, plate, then external id."""
        ident = normalize_space(identifier)
        if ident is None:
            return None
        for column in ("vehicle_number", "license_plate", "airtable_id"):
            vehicle_id = self.store.find_by_natural_key("vehicles", column, ident)
            if vehicle_id is not None:
                return vehicle_id
        return None

    def find_mechanic(self, name: str | None) -> Any | None:
        name_norm = normalize_space(name)
        if name_norm is None:
            return None
        return self.store.find_by_natural_key("mechanics", "name", name_norm, case_insensitive=True)

    def find_department(self, external_id: str, name: str) -> Any | None:
        dept_id = self.store.find_by_external_id("departments", external_id)
        if dept_id is None:
            dept_id = self.store.find_by_natural_key("departments", "name", name)
        return dept_id
