"""
store/schema.py -- SQLAlchemy Core tables for every GRC Admin entity.

Uses SQLAlchemy Core (not ORM); records travel as plain dicts and the entity
declarations in store/entities.py carry the behaviour. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Column conventions:
  - id is an opaque UUID string generated by the repository.
  - Timestamps and dates are ISO 8601 strings (String(32)), UTC for
    timestamps written by the repository.
  - Lists are JSON arrays serialized as text, like the tags column of the
    asset tables this layout grew from.
  - Column.info["kind"] tells write validation how to check a value:
    "date", "ref" (UUID of another record), "list" or "object" (JSON text).
    Columns without a kind are checked against their SQL type.
"""

from sqlalchemy import Boolean, Column, Float, Integer, MetaData, String, Table, Text

metadata = MetaData()


# ---------------------------------------------------------------------------
# Column helpers
# ---------------------------------------------------------------------------


def _id() -> Column:
    return Column("id", String(36), primary_key=True)


def _date(name: str, nullable: bool = True) -> Column:
    return Column(name, String(32), nullable=nullable, info={"kind": "date"})


def _ref(name: str, nullable: bool = True) -> Column:
    return Column(name, String(36), nullable=nullable, index=True, info={"kind": "ref"})


def _list(name: str) -> Column:
    return Column(name, Text, info={"kind": "list"})


def _object(name: str) -> Column:
    return Column(name, Text, info={"kind": "object"})


def _flag(name: str) -> Column:
    return Column(name, Boolean, nullable=False, default=False)


def _audit() -> list[Column]:
    return [
        _ref("business_unit_id"),
        _ref("created_by"),
        Column("created_at", String(32), nullable=False, index=True),
        Column("updated_at", String(32), nullable=False),
    ]


# ---------------------------------------------------------------------------
# Compliance frameworks
# ---------------------------------------------------------------------------

compliance_frameworks = Table(
    "compliance_frameworks",
    metadata,
    _id(),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("version", String(50)),
    Column("description", Text),
    Column("authority", String(255)),
    Column("category", String(50)),
    Column("is_active", Boolean, nullable=False, default=True),
    _flag("ai_generated"),
    _ref("created_by"),
    Column("created_at", String(32), nullable=False, index=True),
    Column("updated_at", String(32), nullable=False),
)

compliance_requirements = Table(
    "compliance_requirements",
    metadata,
    _id(),
    _ref("framework_id", nullable=False),
    _ref("section_id"),
    Column("requirement_code", String(50), nullable=False),
    Column("title", String(500), nullable=False),
    Column("description", Text),
    Column("text", Text, nullable=False),
    Column("guidance", Text),
    Column("category", String(100)),
    Column("priority", String(20)),
    Column("implementation_level", String(50)),
    Column("evidence_required", Text),
    Column("assessment_frequency", String(50)),
    Column("is_active", Boolean, nullable=False, default=True),
    _list("tags"),
    _ref("created_by"),
    Column("created_at", String(32), nullable=False, index=True),
    Column("updated_at", String(32), nullable=False),
)

compliance_mappings = Table(
    "compliance_mappings",
    metadata,
    _id(),
    _ref("requirement_id", nullable=False),
    Column("entity_type", String(20), nullable=False),
    _ref("entity_id", nullable=False),
    Column("mapping_type", String(20)),
    Column("coverage_percentage", Float),
    Column("mapping_strength", String(20)),
    Column("notes", Text),
    _ref("mapped_by"),
    Column("mapped_at", String(32)),
    Column("created_at", String(32), nullable=False, index=True),
    Column("updated_at", String(32), nullable=False),
)

compliance_assessments = Table(
    "compliance_assessments",
    metadata,
    _id(),
    _ref("framework_id", nullable=False),
    _ref("profile_id"),
    _ref("requirement_id", nullable=False),
    Column("status", String(30), nullable=False, index=True),
    Column("justification", Text),
    Column("evidence_description", Text),
    Column("evidence_location", Text),
    _date("target_remediation_date"),
    _date("actual_remediation_date"),
    _ref("owner_id"),
    _ref("reviewer_id"),
    Column("assessment_score", Float),
    Column("risk_rating", String(20)),
    Column("last_evaluated_at", String(32)),
    _date("next_review_date"),
    _flag("ai_generated"),
    Column("ai_confidence", Float),
    _ref("created_by"),
    Column("created_at", String(32), nullable=False, index=True),
    Column("updated_at", String(32), nullable=False),
)

# ---------------------------------------------------------------------------
# IT security
# ---------------------------------------------------------------------------

it_security_incidents = Table(
    "it_security_incidents",
    metadata,
    _id(),
    Column("incident_number", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("incident_type", String(50), nullable=False),
    Column("severity", String(20), nullable=False, index=True),
    Column("status", String(20), nullable=False, index=True),
    Column("priority", String(20), nullable=False),
    _date("detected_at", nullable=False),
    _date("reported_at"),
    Column("contained_at", String(32)),
    Column("resolved_at", String(32)),
    Column("closed_at", String(32)),
    _list("affected_systems"),
    Column("affected_users", Integer),
    _flag("data_breach"),
    _list("data_types_affected"),
    _list("regulatory_impact"),
    Column("financial_impact", Float),
    Column("reputation_impact", Text),
    Column("root_cause", Text),
    Column("lessons_learned", Text),
    _list("remediation_actions"),
    _ref("assigned_to"),
    _ref("incident_manager_id"),
    *_audit(),
)

it_security_vulnerabilities = Table(
    "it_security_vulnerabilities",
    metadata,
    _id(),
    Column("vulnerability_id", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("cve_id", String(30)),
    Column("cvss_score", Float),
    Column("cvss_vector", String(100)),
    Column("severity", String(20), nullable=False, index=True),
    Column("status", String(20), nullable=False, index=True),
    Column("priority", String(20), nullable=False),
    _list("affected_systems"),
    _list("affected_software"),
    _list("affected_versions"),
    _date("discovery_date", nullable=False),
    _date("due_date"),
    Column("patched_date", String(32)),
    Column("verified_date", String(32)),
    Column("remediation_plan", Text),
    Column("remediation_status", String(50)),
    Column("risk_score", Float),
    Column("business_impact", Text),
    Column("technical_impact", Text),
    _flag("exploit_available"),
    _flag("exploit_public"),
    _ref("assigned_to"),
    _ref("owner_id"),
    *_audit(),
)

it_security_policies = Table(
    "it_security_policies",
    metadata,
    _id(),
    Column("policy_code", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("policy_type", String(50), nullable=False),
    Column("category", String(50), nullable=False),
    Column("version", String(20), nullable=False),
    Column("status", String(20), nullable=False, index=True),
    _date("effective_date"),
    _date("review_date"),
    _date("next_review_date"),
    Column("approval_status", String(50)),
    Column("content", Text, nullable=False),
    Column("scope", Text),
    Column("exceptions", Text),
    _list("compliance_frameworks"),
    _list("related_policies"),
    _ref("owner_id"),
    _ref("approver_id"),
    *_audit(),
)

it_controls = Table(
    "it_controls",
    metadata,
    _id(),
    Column("control_code", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("control_type", String(30), nullable=False),
    Column("category", String(50), nullable=False),
    Column("framework", String(30)),
    Column("control_family", String(100)),
    Column("implementation_status", String(30), nullable=False, index=True),
    Column("effectiveness", String(50)),
    Column("testing_frequency", String(20), nullable=False),
    _date("last_tested_date"),
    _date("next_test_date"),
    _flag("automated"),
    _flag("monitoring_enabled"),
    _flag("alerting_enabled"),
    Column("documentation_url", String(1000)),
    _ref("owner_id"),
    _ref("tester_id"),
    *_audit(),
)

it_risk_assessments = Table(
    "it_risk_assessments",
    metadata,
    _id(),
    Column("assessment_number", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("assessment_type", String(30), nullable=False),
    Column("scope", Text, nullable=False),
    Column("methodology", Text),
    Column("status", String(20), nullable=False, index=True),
    _date("start_date", nullable=False),
    _date("end_date"),
    Column("completed_date", String(32)),
    _ref("risk_matrix_id"),
    Column("inherent_risk_score", Float),
    Column("residual_risk_score", Float),
    Column("risk_level", String(20)),
    _list("key_findings"),
    _list("recommendations"),
    _date("next_assessment_date"),
    _ref("assessor_id"),
    _ref("reviewer_id"),
    _ref("approver_id"),
    *_audit(),
)

it_control_tests = Table(
    "it_control_tests",
    metadata,
    _id(),
    Column("test_id", String(50), nullable=False, unique=True),
    _ref("control_id", nullable=False),
    Column("test_name", String(500), nullable=False),
    Column("test_description", Text, nullable=False),
    Column("test_type", String(30), nullable=False),
    Column("test_methodology", Text),
    _date("test_date", nullable=False),
    Column("test_result", String(30), nullable=False, index=True),
    Column("sample_size", Integer),
    Column("exceptions_found", Integer, nullable=False, default=0),
    _list("exceptions_details"),
    _list("evidence_files"),
    _list("findings"),
    _list("recommendations"),
    _date("next_test_date"),
    _ref("tester_id", nullable=False),
    _ref("reviewer_id"),
    *_audit(),
)

it_security_monitoring = Table(
    "it_security_monitoring",
    metadata,
    _id(),
    Column("monitoring_id", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("monitoring_type", String(30), nullable=False),
    Column("system_monitored", String(255), nullable=False),
    Column("monitoring_tool", String(255)),
    Column("alert_threshold", String(255)),
    Column("status", String(20), nullable=False, index=True, default="active"),
    Column("uptime_percentage", Float),
    _date("last_alert_date"),
    Column("alert_count_24h", Integer, nullable=False, default=0),
    Column("alert_count_7d", Integer, nullable=False, default=0),
    Column("alert_count_30d", Integer, nullable=False, default=0),
    Column("false_positive_rate", Float),
    Column("response_time_avg", Float),
    Column("escalation_procedure", Text),
    _list("notification_contacts"),
    _object("integration_details"),
    _ref("owner_id"),
    _ref("operator_id"),
    *_audit(),
)

it_security_alerts = Table(
    "it_security_alerts",
    metadata,
    _id(),
    Column("alert_id", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("alert_type", String(50), nullable=False),
    Column("severity", String(20), nullable=False, index=True),
    Column("status", String(20), nullable=False, index=True),
    Column("source_system", String(255), nullable=False),
    Column("source_ip", String(45)),
    Column("destination_ip", String(45)),
    Column("affected_asset", String(255)),
    Column("affected_user", String(255)),
    _date("alert_time", nullable=False),
    Column("acknowledged_time", String(32)),
    Column("resolved_time", String(32)),
    Column("closed_time", String(32)),
    Column("investigation_notes", Text),
    Column("resolution_notes", Text),
    _flag("false_positive"),
    _flag("escalated"),
    Column("escalation_level", Integer, nullable=False, default=0),
    _ref("assigned_to"),
    _ref("escalated_to"),
    *_audit(),
)

it_security_assets = Table(
    "it_security_assets",
    metadata,
    _id(),
    Column("asset_id", String(50), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("asset_type", String(30), nullable=False),
    Column("category", String(30), nullable=False),
    Column("classification", String(20), nullable=False),
    Column("criticality", String(20), nullable=False, index=True),
    Column("location", String(255)),
    Column("ip_address", String(45)),
    Column("mac_address", String(17)),
    Column("operating_system", String(100)),
    _list("software_versions"),
    Column("patch_level", String(100)),
    _date("last_patch_date"),
    _date("next_patch_date"),
    Column("antivirus_status", String(50)),
    Column("firewall_status", String(50)),
    Column("encryption_status", String(50)),
    Column("backup_status", String(50)),
    _flag("monitoring_enabled"),
    _flag("vulnerability_scan_enabled"),
    _date("last_scan_date"),
    Column("risk_score", Float),
    _ref("owner_id"),
    _ref("custodian_id"),
    *_audit(),
)

# ---------------------------------------------------------------------------
# Certification programmes
# ---------------------------------------------------------------------------

pci_compliance = Table(
    "pci_compliance",
    metadata,
    _id(),
    Column("assessment_id", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("pci_dss_version", String(20), nullable=False),
    Column("merchant_level", String(20), nullable=False),
    Column("service_provider_level", String(20)),
    Column("assessment_type", String(30), nullable=False),
    Column("scope", Text, nullable=False),
    Column("status", String(20), nullable=False, index=True),
    _date("start_date", nullable=False),
    _date("end_date"),
    Column("completed_date", String(32)),
    _date("next_assessment_date"),
    Column("qsa_company", String(255)),
    Column("qsa_contact", String(255)),
    _flag("roc_attestation"),
    Column("saq_type", String(30)),
    Column("compliance_score", Float),
    _list("non_compliant_requirements"),
    Column("remediation_plan", Text),
    Column("remediation_status", String(50)),
    _ref("assessor_id"),
    _ref("reviewer_id"),
    *_audit(),
)

isms_management = Table(
    "isms_management",
    metadata,
    _id(),
    Column("isms_id", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("scope", Text, nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("certification_status", String(30), nullable=False, default="not_certified"),
    Column("iso_version", String(20), nullable=False),
    _date("implementation_start_date"),
    _date("certification_date"),
    _date("next_surveillance_date"),
    _date("recertification_date"),
    Column("certification_body", String(255)),
    Column("auditor_contact", String(255)),
    Column("statement_of_applicability", Text),
    _date("risk_assessment_date"),
    _date("management_review_date"),
    _date("internal_audit_date"),
    _list("corrective_actions"),
    _list("preventive_actions"),
    Column("continual_improvement_plan", Text),
    _ref("isms_manager_id"),
    _ref("management_representative_id"),
    *_audit(),
)

cmmc_management = Table(
    "cmmc_management",
    metadata,
    _id(),
    Column("cmmc_id", String(50), nullable=False, unique=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False),
    Column("target_level", Integer, nullable=False),
    Column("current_level", Integer, nullable=False, default=1),
    Column("scope", Text, nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("certification_status", String(30), nullable=False, default="not_certified"),
    _date("implementation_start_date"),
    _date("target_certification_date"),
    _date("certification_date"),
    _date("next_assessment_date"),
    Column("c3pao_company", String(255)),
    Column("c3pao_contact", String(255)),
    _date("gap_assessment_date"),
    Column("gap_assessment_results", Text),
    Column("implementation_plan", Text),
    _object("practice_implementation_status"),
    _object("process_maturity_status"),
    _list("corrective_actions"),
    _ref("cmmc_manager_id"),
    _ref("assessor_id"),
    *_audit(),
)
