"""
tests/test_status_transitions.py -- Status changes and their timestamp side effects.

Covers:
  - entering a stamped status sets its timestamp in the same write
    (incidents, vulnerabilities, alerts, risk assessments)
  - repeating a transition never moves an existing stamp
  - permitted extra fields travel with the status change; others are rejected
  - unknown statuses, status-less entities and missing records
  - a failed write rolls back status and stamp together
"""

import asyncio
import time

import pytest
from sqlalchemy.exc import OperationalError

from core.errors import NotFound, RepositoryError, ValidationError
from store.backend import SQLBackend
from store.repository import GRCStore

MISSING_ID = "00000000-0000-4000-8000-000000000000"


def _alert(**overrides):
    body = {
        "alert_id": "ALT-0001",
        "title": "Impossible travel sign-in",
        "description": "Sign-ins from two continents within ten minutes.",
        "alert_type": "suspicious_activity",
        "severity": "high",
        "status": "new",
        "source_system": "siem",
        "alert_time": "2024-06-01T12:00:00+00:00",
    }
    body.update(overrides)
    return body


def _risk_assessment(**overrides):
    body = {
        "assessment_number": "RA-2024-001",
        "title": "Annual cloud risk review",
        "description": "Review of the production cloud estate.",
        "assessment_type": "cloud",
        "scope": "AWS production accounts",
        "status": "planned",
        "start_date": "2024-04-01",
    }
    body.update(overrides)
    return body


class TestSideEffects:
    def test_patched_sets_patched_date(self, store, vulnerability_payload):
        repo = store.vulnerabilities
        created = asyncio.run(repo.create(vulnerability_payload()))
        assert created["patched_date"] is None

        updated = asyncio.run(repo.update_status(created["id"], "patched"))
        assert updated["status"] == "patched"
        assert updated["patched_date"] is not None

        stored = asyncio.run(repo.get_by_id(created["id"]))
        assert stored["status"] == "patched"
        assert stored["patched_date"] == updated["patched_date"]

    def test_repeated_transition_keeps_first_stamp(self, store, vulnerability_payload):
        repo = store.vulnerabilities
        created = asyncio.run(repo.create(vulnerability_payload()))
        first = asyncio.run(repo.update_status(created["id"], "patched"))
        time.sleep(0.002)
        again = asyncio.run(repo.update_status(created["id"], "patched"))
        assert again["patched_date"] == first["patched_date"], "A repeated transition moved the stamp"
        assert again["updated_at"] > first["updated_at"]

    def test_later_status_leaves_earlier_stamp(self, store, vulnerability_payload):
        repo = store.vulnerabilities
        created = asyncio.run(repo.create(vulnerability_payload()))
        patched = asyncio.run(repo.update_status(created["id"], "patched"))
        verified = asyncio.run(repo.update_status(created["id"], "verified"))
        assert verified["verified_date"] is not None
        assert verified["patched_date"] == patched["patched_date"]

    def test_unstamped_status_changes_only_status(self, store, vulnerability_payload):
        repo = store.vulnerabilities
        created = asyncio.run(repo.create(vulnerability_payload()))
        updated = asyncio.run(repo.update_status(created["id"], "investigating"))
        assert updated["status"] == "investigating"
        assert updated["patched_date"] is None
        assert updated["verified_date"] is None

    @pytest.mark.parametrize(
        "status, column",
        [("contained", "contained_at"), ("resolved", "resolved_at"), ("closed", "closed_at")],
    )
    def test_incident_stamps(self, store, incident_payload, status, column):
        created = asyncio.run(store.incidents.create(incident_payload()))
        updated = asyncio.run(store.incidents.update_status(created["id"], status))
        assert updated[column] is not None, f"{status} should stamp {column}"

    def test_alert_acknowledged_time(self, store):
        created = asyncio.run(store.alerts.create(_alert()))
        updated = asyncio.run(store.alerts.update_status(created["id"], "acknowledged"))
        assert updated["acknowledged_time"] is not None
        assert updated["resolved_time"] is None

    def test_created_in_stamped_status(self, store, incident_payload):
        created = asyncio.run(store.incidents.create(incident_payload(status="resolved")))
        assert created["resolved_at"] == created["created_at"]

    def test_risk_assessment_completed_date(self, store):
        repo = store.risk_assessments
        created = asyncio.run(repo.create(_risk_assessment()))
        assert created["completed_date"] is None

        in_progress = asyncio.run(repo.update_status(created["id"], "in_progress"))
        assert in_progress["completed_date"] is None

        completed = asyncio.run(repo.update_status(created["id"], "completed"))
        assert completed["completed_date"] is not None
        reviewed = asyncio.run(repo.update_status(created["id"], "reviewed"))
        assert reviewed["completed_date"] == completed["completed_date"]

    def test_risk_assessment_completed_date_is_server_managed(self, store):
        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(store.risk_assessments.create(_risk_assessment(completed_date="2024-04-30")))
        assert exc_info.value.field == "completed_date"

    def test_monitoring_status_has_no_stamp(self, store):
        created = asyncio.run(
            store.monitoring.create(
                {
                    "monitoring_id": "MON-001",
                    "title": "Perimeter IDS",
                    "description": "Inline IDS on the internet edge.",
                    "monitoring_type": "ids_ips",
                    "system_monitored": "edge-fw-01",
                }
            )
        )
        assert created["status"] == "active"
        assert created["alert_count_24h"] == 0
        updated = asyncio.run(store.monitoring.update_status(created["id"], "maintenance"))
        assert updated["status"] == "maintenance"
        with pytest.raises(ValidationError):
            asyncio.run(store.monitoring.update_status(created["id"], "retired"))

    def test_control_uses_implementation_status(self, store):
        created = asyncio.run(
            store.controls.create(
                {
                    "control_code": "AC-2",
                    "title": "Account management",
                    "description": "Accounts are reviewed quarterly.",
                    "control_type": "preventive",
                    "category": "access_control",
                    "implementation_status": "planned",
                    "testing_frequency": "quarterly",
                }
            )
        )
        updated = asyncio.run(
            store.controls.update_status(created["id"], "operational", {"effectiveness": "effective"})
        )
        assert updated["implementation_status"] == "operational"
        assert updated["effectiveness"] == "effective"


class TestExtraFields:
    def test_permitted_extra_is_written(self, store, incident_payload):
        created = asyncio.run(store.incidents.create(incident_payload()))
        updated = asyncio.run(
            store.incidents.update_status(created["id"], "closed", {"lessons_learned": "Enforce MFA on webmail."})
        )
        assert updated["lessons_learned"] == "Enforce MFA on webmail."
        assert updated["closed_at"] is not None

    def test_disallowed_extra_is_rejected(self, store, incident_payload):
        created = asyncio.run(store.incidents.create(incident_payload()))
        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(store.incidents.update_status(created["id"], "closed", {"title": "renamed"}))
        assert exc_info.value.field == "title"
        stored = asyncio.run(store.incidents.get_by_id(created["id"]))
        assert stored["status"] == "open"
        assert stored["closed_at"] is None

    def test_cmmc_level_extra_is_validated(self, store):
        created = asyncio.run(
            store.repository("cmmc-programs").create(
                {
                    "cmmc_id": "CMMC-1",
                    "title": "CMMC level 2 programme",
                    "description": "Prepare for level 2 certification.",
                    "target_level": 2,
                    "scope": "Engineering enclave",
                    "status": "planning",
                }
            )
        )
        assert created["current_level"] == 1
        updated = asyncio.run(
            store.repository("cmmc-programs").update_status(created["id"], "implementation", {"current_level": 2})
        )
        assert updated["current_level"] == 2
        with pytest.raises(ValidationError):
            asyncio.run(
                store.repository("cmmc-programs").update_status(created["id"], "assessment", {"current_level": 9})
            )


class TestRejections:
    def test_unknown_status(self, store, vulnerability_payload):
        created = asyncio.run(store.vulnerabilities.create(vulnerability_payload()))
        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(store.vulnerabilities.update_status(created["id"], "fixed"))
        assert exc_info.value.field == "status"

    def test_entity_without_status(self, store):
        with pytest.raises(ValidationError):
            asyncio.run(store.assets.update_status(MISSING_ID, "active"))
        with pytest.raises(ValidationError):
            asyncio.run(store.control_tests.update_status(MISSING_ID, "passed"))

    def test_missing_record(self, store):
        with pytest.raises(NotFound):
            asyncio.run(store.vulnerabilities.update_status(MISSING_ID, "patched"))

    def test_plan_transition_is_pure(self, store):
        transition = store.incidents.plan_transition(MISSING_ID, "resolved", {"lessons_learned": "n/a"})
        assert transition.new_status == "resolved"
        assert set(transition.side_effects) == {"resolved_at"}
        assert transition.extra == {"lessons_learned": "n/a"}


class _FailingUpdateBackend(SQLBackend):
    """Executes the UPDATE, then fails before the transaction commits."""

    def _update_row(self, table, record_id, assignments):
        with self.transaction() as conn:
            conn.execute(table.update().where(table.c.id == record_id).values(**assignments))
            raise OperationalError("UPDATE", {}, Exception("connection reset"))


class TestAtomicity:
    def test_status_and_stamp_are_never_split(self, store, vulnerability_payload):
        repo = store.vulnerabilities
        created = asyncio.run(repo.create(vulnerability_payload()))
        for status in ("investigating", "patched", "verified", "closed", "patched"):
            record = asyncio.run(repo.update_status(created["id"], status))
            stored = asyncio.run(repo.get_by_id(created["id"]))
            assert stored == record
            if stored["status"] == "patched":
                assert stored["patched_date"] is not None

    def test_failed_write_leaves_neither_status_nor_stamp(self, vulnerability_payload):
        backend = _FailingUpdateBackend("sqlite:///:memory:")
        repo = GRCStore(backend).vulnerabilities
        created = asyncio.run(repo.create(vulnerability_payload()))

        with pytest.raises(RepositoryError):
            asyncio.run(repo.update_status(created["id"], "patched"))

        stored = asyncio.run(repo.get_by_id(created["id"]))
        assert stored["status"] == "open"
        assert stored["patched_date"] is None
        backend.close()
