"""fleet_etl.airtable

Table Reader over the Airtable REST API.

    GET https://api.airtable.com/v0/{base_id}/{table}?pageSize=100[&offset=...]

Each page returns {"records": [...], "offset": "..."}; the last page omits
"offset".  Records are {"id", "fields", "createdTime"}.

Failure modes for a whole table:
  - 401/403                         → SourceAuthError
  - transport error, 429/5xx after
    max_retries, any other non-200  → SourceUnavailableError

A fresh requests.Session is opened per list_records() call so concurrent
extractors never share connection state.
"""

from __future__ import annotations

import logging
import random
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import requests

from fleet_etl.shared import SourceAuthError, SourceUnavailableError

log = logging.getLogger(__name__)

AIRTABLE_API_URL = "https://api.airtable.com/v0"
PAGE_SIZE = 100

SourceRecord = dict[str, Any]


class TableReader(Protocol):
    def list_records(self, table_name: str) -> list[SourceRecord]:
        ...


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Exponential backoff with jitter for 429/5xx retries."""

    base_delay: float = 1.0
    jitter: float = 0.25
    max_delay: float = 32.0
    _backoff_mult: float = field(default=1.0, init=False, repr=False)

    def sleep(self) -> None:
        """Block for base_delay * backoff_mult ± jitter seconds, capped at max_delay."""
        delay = self.base_delay * self._backoff_mult
        delay += random.uniform(-self.jitter, self.jitter)
        time.sleep(min(self.max_delay, max(0.0, delay)))

    def on_success(self) -> None:
        self._backoff_mult = 1.0

    def on_failure(self) -> None:
        self._backoff_mult = min(self._backoff_mult * 2.0, 32.0)

    @property
    def backoff_mult(self) -> float:
        return self._backoff_mult


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AirtableClient:
    def __init__(
        self,
        api_key: str,
        base_id: str,
        timeout: float = 30,
        max_retries: int = 5,
        rate_limiter_factory: Callable[[], RateLimiter] = RateLimiter,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        if not api_key:
            raise SourceAuthError("Airtable API key is empty")
        if not base_id:
            raise ValueError("Airtable base id is required")
        self.api_key = api_key
        self.base_id = base_id
        self.timeout = timeout
        self.max_retries = max_retries
        self._rate_limiter_factory = rate_limiter_factory
        self._session_factory = session_factory

    def table_url(self, table_name: str) -> str:
        return f"{AIRTABLE_API_URL}/{self.base_id}/{urllib.parse.quote(table_name, safe='')}"

    def list_records(self, table_name: str) -> list[SourceRecord]:
        """Return every record of a table, following pagination offsets."""
        url = self.table_url(table_name)
        records: list[SourceRecord] = []
        offset: str | None = None
        rate_limiter = self._rate_limiter_factory()
        session = self._session_factory()
        session.headers.update({"Authorization": f"Bearer {self.api_key}"})
        try:
            while True:
                params: dict[str, Any] = {"pageSize": PAGE_SIZE}
                if offset:
                    params["offset"] = offset
                payload = self._get_page(session, url, params, table_name, rate_limiter)
                page = payload.get("records") or []
                records.extend(page)
                offset = payload.get("offset")
                if not offset:
                    break
        finally:
            session.close()
        log.info("Fetched %d records from %s", len(records), table_name)
        return records

    def _get_page(
        self,
        session: requests.Session,
        url: str,
        params: dict[str, Any],
        table_name: str,
        rate_limiter: RateLimiter,
    ) -> dict[str, Any]:
        last_reason = ""
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                rate_limiter.sleep()

            try:
                resp = session.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as exc:
                last_reason = f"network error: {exc}"
                log.warning("%s: %s (attempt %d)", table_name, last_reason, attempt + 1)
                rate_limiter.on_failure()
                continue

            if resp.status_code in (401, 403):
                raise SourceAuthError(
                    f"{table_name}: Airtable rejected credentials (HTTP {resp.status_code})"
                )

            if resp.status_code == 429 or resp.status_code >= 500:
                last_reason = f"HTTP {resp.status_code}"
                log.warning("%s: %s, backing off (attempt %d)", table_name, last_reason, attempt + 1)
                rate_limiter.on_failure()
                continue

            if resp.status_code != 200:
                raise SourceUnavailableError(
                    f"{table_name}: unexpected HTTP {resp.status_code}: {resp.text[:200]}"
                )

            rate_limiter.on_success()
            try:
                payload = resp.json()
            except ValueError as exc:
                raise SourceUnavailableError(f"{table_name}: invalid JSON response") from exc
            if not isinstance(payload, dict) or not isinstance(payload.get("records", []), list):
                raise SourceUnavailableError(
                    f"{table_name}: unexpected response shape ({type(payload).__name__})"
                )
            return payload

        raise SourceUnavailableError(
            f"{table_name}: giving up after {self.max_retries + 1} attempts ({last_reason})"
        )
