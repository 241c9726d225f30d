"""
store/entities.py -- Declarations for every entity the repository serves.

The repository is generic. Each entity contributes only a declaration: its
table, its FilterSpec (logical filter names -> columns and allowed values),
its status field and the timestamp each status stamps, and which fields the
server owns. Adding an entity means adding a table in store/schema.py and one
EntityDefinition here -- no per-entity query code.

Usage:
    definition = ENTITIES["incidents"]
    definition.choices["severity"]     # frozenset of allowed severities
    definition.side_effects["resolved"]  # "resolved_at"
"""

import secrets
import time
from dataclasses import dataclass, field
from functools import cached_property
from typing import Optional

from sqlalchemy import Boolean, Float, Integer, Table

from core.filters import FilterSpec, date_range, multi_enum, reference
from store import schema

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

SEVERITIES = ("low", "medium", "high", "critical")
URGENCIES = ("low", "medium", "high", "urgent")
CMMC_LEVELS = ("1", "2", "3", "4", "5")

FRAMEWORK_CATEGORIES = ("security", "privacy", "financial", "healthcare", "government", "industry", "other")
ASSESSMENT_STATUSES = (
    "unknown",
    "compliant",
    "partially_compliant",
    "non_compliant",
    "not_applicable",
    "under_review",
)
MAPPED_ENTITY_TYPES = ("risk", "control", "policy", "process", "asset")
MAPPING_TYPES = ("direct", "indirect", "supporting", "compensating")
MAPPING_STRENGTHS = ("weak", "moderate", "strong", "complete")

INCIDENT_STATUSES = ("open", "investigating", "contained", "resolved", "closed")
INCIDENT_TYPES = (
    "malware",
    "phishing",
    "data_breach",
    "ddos",
    "insider_threat",
    "physical_security",
    "social_engineering",
    "system_compromise",
    "network_intrusion",
    "application_vulnerability",
    "other",
)
VULNERABILITY_STATUSES = ("open", "investigating", "patching", "patched", "verified", "closed")
POLICY_STATUSES = ("draft", "review", "approved", "active", "archived")
POLICY_TYPES = (
    "access_control",
    "data_protection",
    "network_security",
    "incident_response",
    "business_continuity",
    "vendor_management",
    "acceptable_use",
    "password",
    "encryption",
    "backup",
    "other",
)
POLICY_CATEGORIES = ("technical", "administrative", "physical", "organizational")
CONTROL_STATUSES = ("planned", "in_progress", "implemented", "operational", "decommissioned")
CONTROL_TYPES = ("preventive", "detective", "corrective", "deterrent", "recovery", "compensating")
CONTROL_CATEGORIES = (
    "access_control",
    "network_security",
    "data_protection",
    "incident_response",
    "business_continuity",
    "monitoring",
    "compliance",
    "other",
)
CONTROL_FRAMEWORKS = ("nist_csf", "iso_27001", "cobit", "itil", "pci_dss", "cmmc", "custom")
TESTING_FREQUENCIES = ("continuous", "daily", "weekly", "monthly", "quarterly", "annually", "ad_hoc")
RISK_ASSESSMENT_STATUSES = ("planned", "in_progress", "completed", "reviewed", "approved")
RISK_ASSESSMENT_TYPES = (
    "infrastructure",
    "application",
    "network",
    "data",
    "cloud",
    "third_party",
    "comprehensive",
)
CONTROL_TEST_RESULTS = ("passed", "failed", "partially_passed", "not_applicable", "not_tested")
CONTROL_TEST_TYPES = ("automated", "manual", "interview", "observation", "documentation_review", "sampling")
MONITORING_STATUSES = ("active", "inactive", "maintenance", "decommissioned")
MONITORING_TYPES = ("siem", "ids_ips", "endpoint", "network", "application", "database", "cloud", "physical")
ALERT_STATUSES = ("new", "acknowledged", "investigating", "resolved", "closed")
ALERT_TYPES = (
    "malware_detection",
    "suspicious_activity",
    "failed_login",
    "data_exfiltration",
    "network_anomaly",
    "vulnerability_scan",
    "policy_violation",
    "system_compromise",
    "other",
)
ASSET_TYPES = (
    "server",
    "workstation",
    "network_device",
    "mobile_device",
    "application",
    "database",
    "cloud_service",
    "physical_asset",
    "other",
)
ASSET_CATEGORIES = ("infrastructure", "endpoint", "network", "application", "data", "cloud", "physical", "other")
ASSET_CLASSIFICATIONS = ("public", "internal", "confidential", "restricted")
PCI_STATUSES = ("planned", "in_progress", "completed", "failed", "remediated")
PCI_LEVELS = ("level_1", "level_2", "level_3", "level_4")
PCI_ASSESSMENT_TYPES = (
    "roc",
    "saq_a",
    "saq_a_ep",
    "saq_b",
    "saq_b_ip",
    "saq_c",
    "saq_c_vt",
    "saq_d",
    "saq_d_merchant",
    "saq_d_service_provider",
    "saq_p2pe",
)
ISMS_STATUSES = ("planning", "implementation", "certification", "maintenance", "surveillance")
ISMS_CERTIFICATION = ("not_certified", "in_progress", "certified", "surveillance", "recertification")
CMMC_STATUSES = ("planning", "implementation", "assessment", "certified", "maintenance")
CMMC_CERTIFICATION = ("not_certified", "in_progress", "certified", "surveillance")

# Non-scalar column kinds are stored as JSON text and are never sortable.
_NON_SCALAR_KINDS = {"list", "object"}


# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityDefinition:
    """Everything the generic repository needs to know about one entity.

    side_effects maps a status value to the timestamp column it stamps the
    first time the record enters that status. status_extras lists the
    non-status columns a status change may write alongside it (notes,
    certification status, ...). create_stamps are timestamp columns set to now
    on create.
    """

    name: str
    slug: str
    table: Table
    filters: FilterSpec
    status_field: Optional[str] = None
    side_effects: dict[str, str] = field(default_factory=dict)
    status_extras: tuple[str, ...] = ()
    code_field: Optional[str] = None
    code_prefix: str = ""
    create_stamps: tuple[str, ...] = ()
    enums: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @cached_property
    def columns(self) -> dict:
        return {c.name: c for c in self.table.columns}

    @cached_property
    def choices(self) -> dict[str, frozenset[str]]:
        """Column -> allowed values, from the filter declarations plus write-only enums."""
        merged = dict(self.filters.choices())
        for column, values in self.enums.items():
            merged[column] = frozenset(values)
        return merged

    @property
    def status_values(self) -> frozenset[str]:
        if self.status_field is None:
            return frozenset()
        return self.choices.get(self.status_field, frozenset())

    @cached_property
    def sortable(self) -> frozenset[str]:
        return frozenset(
            c.name for c in self.table.columns if c.info.get("kind") not in _NON_SCALAR_KINDS
        )

    @cached_property
    def unique(self) -> frozenset[str]:
        return frozenset(c.name for c in self.table.columns if c.primary_key or c.unique)

    @cached_property
    def server_managed(self) -> frozenset[str]:
        managed = {"id", "created_at", "updated_at"}
        managed.update(self.side_effects.values())
        managed.update(self.create_stamps)
        if self.code_field:
            managed.add(self.code_field)
        return frozenset(managed)

    @cached_property
    def required(self) -> frozenset[str]:
        """Columns a caller must supply on create."""
        return frozenset(
            c.name
            for c in self.table.columns
            if not c.nullable
            and c.default is None
            and c.server_default is None
            and c.name not in self.server_managed
        )

    def generate_code(self) -> Optional[str]:
        """Human-facing record number, e.g. INC-1718000000000-9F2C01AB."""
        if not self.code_field:
            return None
        return f"{self.code_prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"

    def column_kind(self, name: str) -> str:
        """Validation kind of a column: date/ref/list/object, or bool/int/float/str from its SQL type."""
        column = self.columns[name]
        kind = column.info.get("kind")
        if kind:
            return kind
        if isinstance(column.type, Boolean):
            return "bool"
        if isinstance(column.type, Integer):
            return "int"
        if isinstance(column.type, Float):
            return "float"
        return "str"

    def describe(self) -> dict:
        return {
            "slug": self.slug,
            "name": self.name,
            "status_field": self.status_field,
            "statuses": sorted(self.status_values),
            "filters": self.filters.describe(),
            "search_columns": list(self.filters.search_columns),
            "sortable": sorted(self.sortable),
        }


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

FRAMEWORKS = EntityDefinition(
    name="framework",
    slug="frameworks",
    table=schema.compliance_frameworks,
    filters=FilterSpec(
        "frameworks",
        [
            multi_enum("category", FRAMEWORK_CATEGORIES),
            date_range("date_range", column="created_at"),
        ],
        search_columns=("name", "code", "description", "authority"),
    ),
)

REQUIREMENTS = EntityDefinition(
    name="requirement",
    slug="requirements",
    table=schema.compliance_requirements,
    filters=FilterSpec(
        "requirements",
        [
            reference("framework", column="framework_id"),
            multi_enum("priority", SEVERITIES),
            date_range("date_range", column="created_at"),
        ],
        search_columns=("requirement_code", "title", "text", "description"),
    ),
)

MAPPINGS = EntityDefinition(
    name="mapping",
    slug="mappings",
    table=schema.compliance_mappings,
    filters=FilterSpec(
        "mappings",
        [
            reference("requirement", column="requirement_id"),
            multi_enum("entity_type", MAPPED_ENTITY_TYPES),
            multi_enum("mapping_type", MAPPING_TYPES),
            multi_enum("mapping_strength", MAPPING_STRENGTHS),
        ],
        search_columns=("notes",),
    ),
    create_stamps=("mapped_at",),
)

COMPLIANCE_ASSESSMENTS = EntityDefinition(
    name="compliance assessment",
    slug="compliance-assessments",
    table=schema.compliance_assessments,
    filters=FilterSpec(
        "compliance-assessments",
        [
            multi_enum("status", ASSESSMENT_STATUSES),
            multi_enum("risk_rating", SEVERITIES),
            reference("framework", column="framework_id"),
            reference("requirement", column="requirement_id"),
            reference("assigned_to", column="owner_id"),
            date_range("date_range", column="next_review_date"),
        ],
        search_columns=("justification", "evidence_description"),
    ),
    status_field="status",
    status_extras=("justification",),
    create_stamps=("last_evaluated_at",),
)

INCIDENTS = EntityDefinition(
    name="incident",
    slug="incidents",
    table=schema.it_security_incidents,
    filters=FilterSpec(
        "incidents",
        [
            multi_enum("status", INCIDENT_STATUSES),
            multi_enum("severity", SEVERITIES),
            multi_enum("priority", URGENCIES),
            multi_enum("type", INCIDENT_TYPES, column="incident_type"),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to"),
            date_range("date_range", column="detected_at"),
        ],
        search_columns=("title", "description", "incident_number"),
    ),
    status_field="status",
    side_effects={"contained": "contained_at", "resolved": "resolved_at", "closed": "closed_at"},
    status_extras=("lessons_learned",),
    code_field="incident_number",
    code_prefix="INC",
)

VULNERABILITIES = EntityDefinition(
    name="vulnerability",
    slug="vulnerabilities",
    table=schema.it_security_vulnerabilities,
    filters=FilterSpec(
        "vulnerabilities",
        [
            multi_enum("status", VULNERABILITY_STATUSES),
            multi_enum("severity", SEVERITIES),
            multi_enum("priority", URGENCIES),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to"),
            date_range("date_range", column="discovery_date"),
        ],
        search_columns=("title", "description", "vulnerability_id", "cve_id"),
    ),
    status_field="status",
    side_effects={"patched": "patched_date", "verified": "verified_date"},
    status_extras=("remediation_status",),
)

POLICIES = EntityDefinition(
    name="policy",
    slug="policies",
    table=schema.it_security_policies,
    filters=FilterSpec(
        "policies",
        [
            multi_enum("status", POLICY_STATUSES),
            multi_enum("type", POLICY_TYPES, column="policy_type"),
            multi_enum("category", POLICY_CATEGORIES),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to", column="owner_id"),
            date_range("date_range", column="effective_date"),
        ],
        search_columns=("title", "description", "policy_code"),
    ),
    status_field="status",
    status_extras=("approval_status",),
)

CONTROLS = EntityDefinition(
    name="control",
    slug="controls",
    table=schema.it_controls,
    filters=FilterSpec(
        "controls",
        [
            multi_enum("status", CONTROL_STATUSES, column="implementation_status"),
            multi_enum("type", CONTROL_TYPES, column="control_type"),
            multi_enum("category", CONTROL_CATEGORIES),
            multi_enum("framework", CONTROL_FRAMEWORKS),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to", column="owner_id"),
            date_range("date_range", column="next_test_date"),
        ],
        search_columns=("title", "description", "control_code"),
    ),
    status_field="implementation_status",
    status_extras=("effectiveness",),
    enums={"testing_frequency": TESTING_FREQUENCIES},
)

RISK_ASSESSMENTS = EntityDefinition(
    name="risk assessment",
    slug="risk-assessments",
    table=schema.it_risk_assessments,
    filters=FilterSpec(
        "risk-assessments",
        [
            multi_enum("status", RISK_ASSESSMENT_STATUSES),
            multi_enum("type", RISK_ASSESSMENT_TYPES, column="assessment_type"),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to", column="assessor_id"),
            date_range("date_range", column="start_date"),
        ],
        search_columns=("title", "description", "assessment_number"),
    ),
    status_field="status",
    side_effects={"completed": "completed_date"},
)

# Tests have no lifecycle of their own; "status" filters on the recorded result.
CONTROL_TESTS = EntityDefinition(
    name="control test",
    slug="control-tests",
    table=schema.it_control_tests,
    filters=FilterSpec(
        "control-tests",
        [
            multi_enum("status", CONTROL_TEST_RESULTS, column="test_result"),
            multi_enum("type", CONTROL_TEST_TYPES, column="test_type"),
            reference("control", column="control_id"),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to", column="tester_id"),
            date_range("date_range", column="test_date"),
        ],
        search_columns=("test_name", "test_description", "test_id"),
    ),
)

MONITORING = EntityDefinition(
    name="monitoring system",
    slug="monitoring",
    table=schema.it_security_monitoring,
    filters=FilterSpec(
        "monitoring",
        [
            multi_enum("status", MONITORING_STATUSES),
            multi_enum("type", MONITORING_TYPES, column="monitoring_type"),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to", column="owner_id"),
        ],
        search_columns=("title", "description", "monitoring_id"),
    ),
    status_field="status",
)

ALERTS = EntityDefinition(
    name="alert",
    slug="alerts",
    table=schema.it_security_alerts,
    filters=FilterSpec(
        "alerts",
        [
            multi_enum("status", ALERT_STATUSES),
            multi_enum("severity", SEVERITIES),
            multi_enum("type", ALERT_TYPES, column="alert_type"),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to"),
            date_range("date_range", column="alert_time"),
        ],
        search_columns=("title", "description", "alert_id", "source_system"),
    ),
    status_field="status",
    side_effects={
        "acknowledged": "acknowledged_time",
        "resolved": "resolved_time",
        "closed": "closed_time",
    },
    status_extras=("investigation_notes", "resolution_notes"),
)

ASSETS = EntityDefinition(
    name="asset",
    slug="assets",
    table=schema.it_security_assets,
    filters=FilterSpec(
        "assets",
        [
            multi_enum("type", ASSET_TYPES, column="asset_type"),
            multi_enum("category", ASSET_CATEGORIES),
            multi_enum("classification", ASSET_CLASSIFICATIONS),
            multi_enum("criticality", SEVERITIES),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to", column="owner_id"),
            date_range("date_range", column="last_scan_date"),
        ],
        search_columns=("name", "description", "asset_id", "ip_address"),
    ),
)

PCI_ASSESSMENTS = EntityDefinition(
    name="PCI assessment",
    slug="pci-assessments",
    table=schema.pci_compliance,
    filters=FilterSpec(
        "pci-assessments",
        [
            multi_enum("status", PCI_STATUSES),
            multi_enum("type", PCI_ASSESSMENT_TYPES, column="assessment_type"),
            multi_enum("merchant_level", PCI_LEVELS),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to", column="assessor_id"),
            date_range("date_range", column="start_date"),
        ],
        search_columns=("title", "description", "assessment_id"),
    ),
    status_field="status",
    side_effects={"completed": "completed_date"},
    status_extras=("remediation_status",),
    enums={"service_provider_level": PCI_LEVELS},
)

ISMS_PROGRAMS = EntityDefinition(
    name="ISMS programme",
    slug="isms-programs",
    table=schema.isms_management,
    filters=FilterSpec(
        "isms-programs",
        [
            multi_enum("status", ISMS_STATUSES),
            multi_enum("certification_status", ISMS_CERTIFICATION),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to", column="isms_manager_id"),
            date_range("date_range", column="implementation_start_date"),
        ],
        search_columns=("title", "description", "isms_id"),
    ),
    status_field="status",
    status_extras=("certification_status",),
)

CMMC_PROGRAMS = EntityDefinition(
    name="CMMC programme",
    slug="cmmc-programs",
    table=schema.cmmc_management,
    filters=FilterSpec(
        "cmmc-programs",
        [
            multi_enum("status", CMMC_STATUSES),
            multi_enum("certification_status", CMMC_CERTIFICATION),
            multi_enum("target_level", CMMC_LEVELS, coerce=int),
            reference("business_unit", column="business_unit_id"),
            reference("assigned_to", column="cmmc_manager_id"),
            date_range("date_range", column="implementation_start_date"),
        ],
        search_columns=("title", "description", "cmmc_id"),
    ),
    status_field="status",
    status_extras=("certification_status", "current_level"),
    enums={"current_level": CMMC_LEVELS},
)

ENTITIES: dict[str, EntityDefinition] = {
    d.slug: d
    for d in (
        FRAMEWORKS,
        REQUIREMENTS,
        MAPPINGS,
        COMPLIANCE_ASSESSMENTS,
        INCIDENTS,
        VULNERABILITIES,
        POLICIES,
        CONTROLS,
        RISK_ASSESSMENTS,
        CONTROL_TESTS,
        MONITORING,
        ALERTS,
        ASSETS,
        PCI_ASSESSMENTS,
        ISMS_PROGRAMS,
        CMMC_PROGRAMS,
    )
}