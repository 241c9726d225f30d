"""
tests/test_repository.py -- Tests for store/repository.py over an in-memory database.

Covers:
  - create / get / update / delete round trips
  - server-managed fields (id, timestamps, record numbers)
  - write validation before the backend is touched
  - search, filters and pagination invariants (no overlap, no gaps)
  - NotFound for missing and malformed ids, including double delete
  - Timeout and RepositoryError wrapping of backend failures
  - count_by / fetch_all aggregation helpers
  - date columns stored as UTC datetimes and matched by either bound form
"""

import asyncio
import math
import time
import uuid

import pytest
from sqlalchemy.exc import OperationalError

from core.errors import NotFound, RepositoryError, Timeout, ValidationError
from core.models import SearchRequest
from core.query import MAX_PAGE
from store.backend import SQLBackend
from store.entities import ASSETS, VULNERABILITIES
from store.repository import EntityRepository, GRCStore, validate_write

MISSING_ID = "00000000-0000-4000-8000-000000000000"


def _asset(**overrides):
    body = {
        "asset_id": "AST-0001",
        "name": "core-db-01",
        "asset_type": "database",
        "category": "infrastructure",
        "classification": "confidential",
        "criticality": "high",
    }
    body.update(overrides)
    return body


class TestCreateAndGet:
    def test_round_trip_preserves_caller_fields(self, store, vulnerability_payload):
        payload = vulnerability_payload(
            cve_id="CVE-2024-1234",
            cvss_score=9.8,
            discovery_date="2024-03-01T00:00:00+00:00",
            affected_systems=["web-01", "web-02"],
            exploit_available=True,
        )
        created = asyncio.run(store.vulnerabilities.create(payload))
        fetched = asyncio.run(store.vulnerabilities.get_by_id(created["id"]))

        for key, value in payload.items():
            assert fetched[key] == value, f"{key}: expected {value!r}, got {fetched[key]!r}"
        assert fetched == created

    def test_server_sets_id_and_equal_timestamps(self, store, vulnerability_payload):
        created = asyncio.run(store.vulnerabilities.create(vulnerability_payload()))
        assert len(created["id"]) == 36
        assert created["created_at"] == created["updated_at"]

    def test_defaults_are_applied(self, store, vulnerability_payload):
        created = asyncio.run(store.vulnerabilities.create(vulnerability_payload()))
        assert created["exploit_available"] is False
        assert created["affected_systems"] == []
        assert created["patched_date"] is None

    def test_incident_number_is_generated(self, store, incident_payload):
        created = asyncio.run(store.incidents.create(incident_payload()))
        assert created["incident_number"].startswith("INC-"), created["incident_number"]

    def test_incident_number_cannot_be_supplied(self, store, incident_payload):
        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(store.incidents.create(incident_payload(incident_number="INC-1")))
        assert exc_info.value.field == "incident_number"

    def test_get_missing_id_raises_not_found(self, store):
        with pytest.raises(NotFound):
            asyncio.run(store.vulnerabilities.get_by_id(MISSING_ID))

    def test_malformed_id_raises_not_found(self, store):
        with pytest.raises(NotFound):
            asyncio.run(store.vulnerabilities.get_by_id("42"))

    def test_duplicate_unique_code_is_a_validation_error(self, store):
        asyncio.run(store.assets.create(_asset()))
        with pytest.raises(ValidationError):
            asyncio.run(store.assets.create(_asset(name="core-db-02")))

    def test_date_only_value_is_stored_as_utc_datetime(self, store, vulnerability_payload):
        created = asyncio.run(store.vulnerabilities.create(vulnerability_payload(discovery_date="2024-03-01")))
        assert created["discovery_date"] == "2024-03-01T00:00:00+00:00"

    def test_create_stamps_are_set(self, store):
        framework_id = "11111111-1111-4111-8111-111111111111"
        requirement_id = "22222222-2222-4222-8222-222222222222"
        record = asyncio.run(
            store.repository("compliance-assessments").create(
                {"framework_id": framework_id, "requirement_id": requirement_id, "status": "unknown"}
            )
        )
        assert record["last_evaluated_at"] == record["created_at"]


class TestWriteValidation:
    def test_missing_required_fields(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_write(VULNERABILITIES, {"title": "x"}, creating=True)
        assert "description" in exc_info.value.message

    def test_unknown_field(self, vulnerability_payload):
        with pytest.raises(ValidationError) as exc_info:
            validate_write(VULNERABILITIES, vulnerability_payload(colour="red"), creating=True)
        assert exc_info.value.field == "colour"

    def test_enum_value_outside_vocabulary(self, vulnerability_payload):
        with pytest.raises(ValidationError) as exc_info:
            validate_write(VULNERABILITIES, vulnerability_payload(severity="severe"), creating=True)
        assert exc_info.value.field == "severity"

    def test_bad_date(self, vulnerability_payload):
        with pytest.raises(ValidationError):
            validate_write(VULNERABILITIES, vulnerability_payload(discovery_date="last tuesday"), creating=True)

    def test_bad_reference(self, vulnerability_payload):
        with pytest.raises(ValidationError):
            validate_write(VULNERABILITIES, vulnerability_payload(assigned_to="bob"), creating=True)

    def test_list_of_non_strings(self, vulnerability_payload):
        with pytest.raises(ValidationError):
            validate_write(VULNERABILITIES, vulnerability_payload(affected_systems=[1, 2]), creating=True)

    def test_string_too_long(self, vulnerability_payload):
        with pytest.raises(ValidationError):
            validate_write(VULNERABILITIES, vulnerability_payload(cve_id="C" * 31), creating=True)

    def test_boolean_must_be_boolean(self, vulnerability_payload):
        with pytest.raises(ValidationError):
            validate_write(VULNERABILITIES, vulnerability_payload(exploit_public="yes"), creating=True)

    def test_server_managed_field(self, vulnerability_payload):
        with pytest.raises(ValidationError) as exc_info:
            validate_write(VULNERABILITIES, vulnerability_payload(patched_date="2024-01-01"), creating=True)
        assert exc_info.value.field == "patched_date"

    def test_status_cannot_change_through_update(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_write(VULNERABILITIES, {"status": "closed"}, creating=False)
        assert exc_info.value.field == "status"


class TestUpdateAndDelete:
    def test_partial_update(self, store, vulnerability_payload):
        created = asyncio.run(store.vulnerabilities.create(vulnerability_payload()))
        updated = asyncio.run(store.vulnerabilities.update(created["id"], {"remediation_plan": "Upgrade OpenSSL"}))
        assert updated["remediation_plan"] == "Upgrade OpenSSL"
        assert updated["title"] == created["title"]
        assert updated["updated_at"] >= created["updated_at"]
        assert updated["created_at"] == created["created_at"]

    def test_empty_update_is_rejected(self, store, vulnerability_payload):
        created = asyncio.run(store.vulnerabilities.create(vulnerability_payload()))
        with pytest.raises(ValidationError):
            asyncio.run(store.vulnerabilities.update(created["id"], {}))

    def test_update_missing_record(self, store):
        with pytest.raises(NotFound):
            asyncio.run(store.vulnerabilities.update(MISSING_ID, {"remediation_plan": "x"}))

    def test_delete_then_delete_again(self, store, vulnerability_payload):
        created = asyncio.run(store.vulnerabilities.create(vulnerability_payload()))
        asyncio.run(store.vulnerabilities.delete(created["id"]))
        with pytest.raises(NotFound):
            asyncio.run(store.vulnerabilities.get_by_id(created["id"]))
        with pytest.raises(NotFound):
            asyncio.run(store.vulnerabilities.delete(created["id"]))


class TestSearchAndPaging:
    def _seed_vulnerabilities(self, store, vulnerability_payload):
        """25 vulnerabilities: 12 high/critical, 3 of those mention SQL, 5 mention it overall."""
        repo = store.vulnerabilities
        for i in range(25):
            if i < 12:
                severity = "critical" if i % 2 else "high"
            else:
                severity = "low" if i % 2 else "medium"
            title = f"Buffer overflow in parser {i}"
            description = "Generic memory corruption issue."
            if i in (0, 5):
                title = f"SQL injection in login form {i}"
            if i == 7:
                description = "Blind sql injection through the search parameter."
            if i in (14, 20):
                title = f"SQL error disclosure {i}"
            asyncio.run(
                repo.create(
                    vulnerability_payload(
                        vulnerability_id=f"VULN-{i:03d}",
                        title=title,
                        description=description,
                        severity=severity,
                    )
                )
            )

    def test_search_and_filter_are_combined(self, store, vulnerability_payload):
        self._seed_vulnerabilities(store, vulnerability_payload)
        page = asyncio.run(
            store.vulnerabilities.list(
                SearchRequest(query="SQL", filters={"severity": ["high", "critical"]}, page=1, page_size=10)
            )
        )
        assert page.total == 3, f"Expected 3 high/critical SQL matches, got {page.total}"
        assert len(page.data) == 3
        assert page.total_pages == 1
        assert all(r["severity"] in ("high", "critical") for r in page.data)

    def test_filter_total_counts_all_matches(self, store, vulnerability_payload):
        self._seed_vulnerabilities(store, vulnerability_payload)
        page = asyncio.run(
            store.vulnerabilities.list(SearchRequest(filters={"severity": ["high", "critical"]}, page_size=5))
        )
        assert page.total == 12
        assert len(page.data) == 5
        assert page.total_pages == 3

    def test_search_is_case_insensitive(self, store, vulnerability_payload):
        self._seed_vulnerabilities(store, vulnerability_payload)
        lower = asyncio.run(store.vulnerabilities.list(SearchRequest(query="sql")))
        upper = asyncio.run(store.vulnerabilities.list(SearchRequest(query="SQL")))
        assert lower.total == upper.total == 5

    def test_search_wildcards_are_literal(self, store, vulnerability_payload):
        self._seed_vulnerabilities(store, vulnerability_payload)
        page = asyncio.run(store.vulnerabilities.list(SearchRequest(query="%")))
        assert page.total == 0

    def test_pages_never_overlap_or_skip(self, store, vulnerability_payload):
        self._seed_vulnerabilities(store, vulnerability_payload)
        seen: list[str] = []
        page_size = 4
        for page_number in range(1, 8):
            page = asyncio.run(
                store.vulnerabilities.list(
                    SearchRequest(sort_by="severity", sort_order="asc", page=page_number, page_size=page_size)
                )
            )
            assert len(page.data) <= page_size
            assert page.total_pages == math.ceil(25 / page_size)
            seen.extend(r["id"] for r in page.data)
        assert len(seen) == 25, f"Expected 25 rows across pages, got {len(seen)}"
        assert len(set(seen)) == 25, "A row appeared on two pages"

    def test_page_beyond_end_is_empty(self, store, vulnerability_payload):
        self._seed_vulnerabilities(store, vulnerability_payload)
        page = asyncio.run(store.vulnerabilities.list(SearchRequest(page=99, page_size=10)))
        assert page.data == []
        assert page.total == 25
        assert page.page == 99

    def test_huge_page_number_is_clamped(self, store, vulnerability_payload):
        self._seed_vulnerabilities(store, vulnerability_payload)
        page = asyncio.run(store.vulnerabilities.list(SearchRequest(page=10**20, page_size=200)))
        assert page.data == []
        assert page.total == 25
        assert page.page == MAX_PAGE

    def test_oversized_page_size_is_clamped(self, store, vulnerability_payload):
        self._seed_vulnerabilities(store, vulnerability_payload)
        page = asyncio.run(store.vulnerabilities.list(SearchRequest(page_size=10_000)))
        assert page.page_size == 200
        assert len(page.data) == 25

    def test_default_order_is_newest_first(self, store, vulnerability_payload):
        for i in range(3):
            asyncio.run(store.vulnerabilities.create(vulnerability_payload(vulnerability_id=f"V-{i}")))
            time.sleep(0.002)
        page = asyncio.run(store.vulnerabilities.list())
        assert [r["vulnerability_id"] for r in page.data] == ["V-2", "V-1", "V-0"]

    def test_empty_table(self, store):
        page = asyncio.run(store.vulnerabilities.list())
        assert page.total == 0
        assert page.data == []
        assert page.total_pages == 0

    def test_invalid_filter_never_reaches_backend(self, store):
        with pytest.raises(ValidationError):
            asyncio.run(store.vulnerabilities.list(SearchRequest(filters={"severity": ["extreme"]})))

    def test_date_range_includes_end_day(self, store, incident_payload):
        asyncio.run(store.incidents.create(incident_payload(detected_at="2024-01-31T23:59:00+00:00")))
        asyncio.run(store.incidents.create(incident_payload(detected_at="2024-02-01T00:00:00+00:00")))
        page = asyncio.run(
            store.incidents.list(SearchRequest(filters={"date_range": {"start": "2024-01-01", "end": "2024-01-31"}}))
        )
        assert page.total == 1
        assert page.data[0]["detected_at"].startswith("2024-01-31")

    def test_datetime_bounds_match_date_only_value(self, store, vulnerability_payload):
        asyncio.run(store.vulnerabilities.create(vulnerability_payload(discovery_date="2024-03-01")))
        asyncio.run(store.vulnerabilities.create(vulnerability_payload(discovery_date="2024-03-02")))
        window = {"start": "2024-03-01T00:00:00", "end": "2024-03-01T23:59:59"}
        page = asyncio.run(store.vulnerabilities.list(SearchRequest(filters={"date_range": window})))
        assert page.total == 1
        assert page.data[0]["discovery_date"].startswith("2024-03-01")

    def test_date_bounds_match_datetime_value(self, store, vulnerability_payload):
        asyncio.run(store.vulnerabilities.create(vulnerability_payload(discovery_date="2024-03-01T18:30:00Z")))
        window = {"start": "2024-03-01", "end": "2024-03-01"}
        page = asyncio.run(store.vulnerabilities.list(SearchRequest(filters={"date_range": window})))
        assert page.total == 1


class TestAggregationHelpers:
    def test_count_by_groups_server_side(self, store, vulnerability_payload):
        for severity in ("high", "high", "low"):
            asyncio.run(store.vulnerabilities.create(vulnerability_payload(severity=severity)))
        counts = asyncio.run(store.vulnerabilities.count_by("severity"))
        assert counts == {"high": 2, "low": 1}

    def test_count_by_respects_filters(self, store, vulnerability_payload):
        asyncio.run(store.vulnerabilities.create(vulnerability_payload(severity="high", status="open")))
        asyncio.run(store.vulnerabilities.create(vulnerability_payload(severity="high", status="closed")))
        counts = asyncio.run(
            store.vulnerabilities.count_by("severity", SearchRequest(filters={"status": ["open"]}))
        )
        assert counts == {"high": 1}

    def test_count_by_rejects_non_enum_field(self, store):
        with pytest.raises(ValidationError):
            asyncio.run(store.vulnerabilities.count_by("title"))

    def test_fetch_all_is_capped(self, store, vulnerability_payload, caplog):
        for _ in range(4):
            asyncio.run(store.vulnerabilities.create(vulnerability_payload()))
        rows = asyncio.run(store.vulnerabilities.fetch_all(limit=3))
        assert len(rows) == 3
        assert any("capped" in r.getMessage() for r in caplog.records)


class TestControlTests:
    def _test(self, store, control_id, result, **overrides):
        body = {
            "test_id": f"CT-{uuid.uuid4().hex[:8]}",
            "control_id": control_id,
            "test_name": "Quarterly access review sample",
            "test_description": "Sample 25 accounts and confirm manager sign-off.",
            "test_type": "sampling",
            "test_date": "2024-04-15",
            "test_result": result,
            "tester_id": "33333333-3333-4333-8333-333333333333",
        }
        body.update(overrides)
        return asyncio.run(store.control_tests.create(body))

    def test_filter_by_control_and_result(self, store):
        control_a = str(uuid.uuid4())
        control_b = str(uuid.uuid4())
        self._test(store, control_a, "passed")
        self._test(store, control_a, "failed")
        self._test(store, control_b, "failed")

        page = asyncio.run(
            store.control_tests.list(SearchRequest(filters={"control": [control_a], "status": ["failed"]}))
        )
        assert page.total == 1
        assert page.data[0]["control_id"] == control_a
        assert page.data[0]["exceptions_found"] == 0

    def test_control_is_required(self, store):
        with pytest.raises(ValidationError) as exc_info:
            self._test(store, None, "passed")
        assert exc_info.value.field == "control_id"


class _SlowBackend(SQLBackend):
    def select_page(self, table, plan):
        time.sleep(0.5)
        return super().select_page(table, plan)


class _BrokenBackend(SQLBackend):
    def select_one(self, table, record_id):
        raise OperationalError("SELECT", {}, Exception("database is locked"))


class _DriverErrorBackend(SQLBackend):
    def select_one(self, table, record_id):
        raise OverflowError("Python int too large to convert to SQLite INTEGER")


class TestBackendFailures:
    def test_slow_backend_raises_timeout(self):
        backend = _SlowBackend("sqlite:///:memory:")
        repo = EntityRepository(backend, VULNERABILITIES, timeout=0.05)
        with pytest.raises(Timeout) as exc_info:
            asyncio.run(repo.list())
        assert exc_info.value.operation == "list"
        assert exc_info.value.entity == "vulnerabilities"
        backend.close()

    def test_backend_error_is_wrapped_with_cause(self):
        backend = _BrokenBackend("sqlite:///:memory:")
        repo = EntityRepository(backend, ASSETS)
        with pytest.raises(RepositoryError) as exc_info:
            asyncio.run(repo.get_by_id(MISSING_ID))
        assert exc_info.value.operation == "get_by_id"
        assert exc_info.value.entity == "assets"
        assert isinstance(exc_info.value.__cause__, OperationalError)
        backend.close()

    def test_driver_error_is_wrapped_with_cause(self):
        backend = _DriverErrorBackend("sqlite:///:memory:")
        repo = EntityRepository(backend, ASSETS)
        with pytest.raises(RepositoryError) as exc_info:
            asyncio.run(repo.get_by_id(MISSING_ID))
        assert isinstance(exc_info.value.__cause__, OverflowError)
        backend.close()


class TestGRCStore:
    def test_repositories_by_slug_and_attribute(self, store):
        assert store.repository("pci-assessments") is store.pci_assessments
        assert store.pci_assessments.entity == "pci-assessments"

    def test_unknown_slug(self, store):
        with pytest.raises(KeyError):
            store.repository("payroll")
        with pytest.raises(AttributeError):
            store.payroll

    def test_every_entity_has_a_repository(self, store):
        assert len(store.slugs) == 16
        assert {r.entity for r in store} == set(store.slugs)

    def test_ping(self, store):
        assert store.ping() is True

    def test_from_settings_uses_configured_limits(self, backend):
        from core.config import Settings

        settings = Settings(request_timeout_seconds=2.5, default_page_size=10, max_page_size=50)
        configured = GRCStore.from_settings(settings, backend=backend)
        repo = configured.repository("incidents")
        assert repo.timeout == 2.5
        assert repo.default_page_size == 10
        assert repo.max_page_size == 50
