"""Unit tests for fleet_etl.airtable (no network; sessions are mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from fleet_etl.airtable import AirtableClient, RateLimiter
from fleet_etl.shared import SourceAuthError, SourceError, SourceUnavailableError


def _resp(status: int, payload: dict | None = None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    resp.text = text
    return resp


def _client(session: MagicMock, **kwargs) -> AirtableClient:
    return AirtableClient(
        "key123",
        "appBASE",
        session_factory=lambda: session,
        rate_limiter_factory=lambda: RateLimiter(base_delay=0.0, jitter=0.0),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

class TestListRecords:
    def test_follows_offsets(self):
        a = {"id": "rec1", "fields": {"Make": "Ford"}, "createdTime": "2024-01-01T00:00:00.000Z"}
        b = {"id": "rec2", "fields": {}, "createdTime": "2024-01-02T00:00:00.000Z"}
        session = MagicMock()
        session.get.side_effect = [
            _resp(200, {"records": [a], "offset": "itr1"}),
            _resp(200, {"records": [b]}),
        ]
        records = _client(session).list_records("Equipment Inventory")

        assert records == [a, b]
        first, second = session.get.call_args_list
        assert "offset" not in first.kwargs["params"]
        assert first.kwargs["params"]["pageSize"] == 100
        assert second.kwargs["params"]["offset"] == "itr1"

    def test_bearer_auth_header(self):
        session = MagicMock()
        session.get.return_value = _resp(200, {"records": []})
        _client(session).list_records("Members")
        session.headers.update.assert_called_once_with({"Authorization": "Bearer key123"})

    def test_table_name_is_url_quoted(self):
        session = MagicMock()
        session.get.return_value = _resp(200, {"records": []})
        _client(session).list_records("Service recors")
        url = session.get.call_args.args[0]
        assert url == "https://api.airtable.com/v0/appBASE/Service%20recors"

    def test_session_closed(self):
        session = MagicMock()
        session.get.return_value = _resp(200, {"records": []})
        _client(session).list_records("Members")
        session.close.assert_called_once()

    def test_empty_table(self):
        session = MagicMock()
        session.get.return_value = _resp(200, {"records": []})
        assert _client(session).list_records("Departments") == []


# ---------------------------------------------------------------------------
# Failure modes
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failure(self, status):
        session = MagicMock()
        session.get.return_value = _resp(status)
        with pytest.raises(SourceAuthError):
            _client(session).list_records("Members")
        session.close.assert_called_once()

    def test_retries_rate_limit_then_succeeds(self):
        session = MagicMock()
        session.get.side_effect = [_resp(429), _resp(200, {"records": [{"id": "rec1", "fields": {}}]})]
        records = _client(session).list_records("Members")
        assert len(records) == 1
        assert session.get.call_count == 2

    def test_gives_up_after_max_retries(self):
        session = MagicMock()
        session.get.return_value = _resp(503)
        with pytest.raises(SourceUnavailableError, match="503"):
            _client(session, max_retries=2).list_records("Members")
        assert session.get.call_count == 3

    def test_network_error(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("boom")
        with pytest.raises(SourceUnavailableError, match="network error"):
            _client(session, max_retries=1).list_records("Members")

    def test_unexpected_status(self):
        session = MagicMock()
        session.get.return_value = _resp(404, text="NOT_FOUND")
        with pytest.raises(SourceUnavailableError, match="404"):
            _client(session).list_records("Nope")

    def test_invalid_json(self):
        session = MagicMock()
        resp = _resp(200)
        resp.json.side_effect = ValueError("no json")
        session.get.return_value = resp
        with pytest.raises(SourceUnavailableError, match="invalid JSON"):
            _client(session).list_records("Members")

    @pytest.mark.parametrize("payload", [[{"id": "rec1"}], {"records": "rec1"}, "records"])
    def test_unexpected_response_shape(self, payload):
        session = MagicMock()
        resp = _resp(200)
        resp.json.return_value = payload
        session.get.return_value = resp
        with pytest.raises(SourceUnavailableError, match="unexpected response shape"):
            _client(session).list_records("Members")

    def test_errors_are_source_errors(self):
        assert issubclass(SourceAuthError, SourceError)
        assert issubclass(SourceUnavailableError, SourceError)

    def test_empty_api_key(self):
        with pytest.raises(SourceAuthError):
            AirtableClient("", "appBASE")

    def test_missing_base_id(self):
        with pytest.raises(ValueError):
            AirtableClient("key", "")


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------

class TestRateLimiter:
    def test_backoff_doubles_and_caps(self):
        rl = RateLimiter()
        for _ in range(10):
            rl.on_failure()
        assert rl.backoff_mult == 32.0

    def test_success_resets(self):
        rl = RateLimiter()
        rl.on_failure()
        rl.on_failure()
        rl.on_success()
        assert rl.backoff_mult == 1.0

    def test_sleep_is_capped(self, monkeypatch):
        slept = []
        monkeypatch.setattr("fleet_etl.airtable.time.sleep", slept.append)
        rl = RateLimiter(base_delay=10.0, jitter=0.0, max_delay=15.0)
        rl.on_failure()
        rl.sleep()
        assert slept == [15.0]
