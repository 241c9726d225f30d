"""
core/metrics.py -- Aggregation/Metrics Reducer.

Pure folds over record lists that have already been fetched (and bounded) by
the repository. Dashboards call these to turn raw rows into card values.

Contract:
  - Never raises on empty, sparse or malformed input. Missing fields are
    skipped, unparseable timestamps are skipped, and every ratio falls back to
    a defined default (0, None average, 0%).
  - Never mutates its input. Given the same list the output is identical,
    whatever order the reducers are called in.

Layer rule: core/ is the kernel. This module may not import from api/ or store/.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional

Record = Mapping[str, Any]

ASSESSMENT_STATUSES = (
    "compliant",
    "partially_compliant",
    "non_compliant",
    "not_applicable",
    "under_review",
    "unknown",
)


# ---------------------------------------------------------------------------
# Primitive folds
# ---------------------------------------------------------------------------


def count_by(records: Iterable[Record], field: str) -> dict[Any, int]:
    """Map each distinct value of field to the number of records holding it.

    Records where the field is missing or None are not counted.
    """
    counts: Counter = Counter()
    for record in records:
        value = record.get(field)
        if value is None or isinstance(value, (list, dict)):
            continue
        counts[value] += 1
    return dict(counts)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def average(
    records: Iterable[Record],
    field: str,
    where: Optional[Callable[[Record], bool]] = None,
    missing: Optional[float] = None,
) -> Optional[float]:
    """Mean of the numeric values of field, or None when there is nothing to average.

    Records without a numeric value are skipped unless missing gives a stand-in.
    """
    total = 0.0
    n = 0
    for record in records:
        if where is not None and not where(record):
            continue
        value = _number(record.get(field))
        if value is None:
            value = missing
        if value is None:
            continue
        total += value
        n += 1
    if n == 0:
        return None
    return total / n


def percentage(part: float, whole: float) -> float:
    """part as a percentage of whole; 0.0 when whole is zero or negative."""
    if not whole or whole <= 0:
        return 0.0
    return (part / whole) * 100


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored ISO date/datetime into an aware UTC datetime, or None."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def count_since(records: Iterable[Record], field: str, since: datetime) -> int:
    n = 0
    for record in records:
        ts = parse_timestamp(record.get(field))
        if ts is not None and ts >= since:
            n += 1
    return n


def count_where(records: Iterable[Record], field: str, values: Iterable[Any]) -> int:
    wanted = set(values)
    return sum(1 for r in records if r.get(field) in wanted)


def latest(records: Iterable[Record], field: str = "created_at") -> Optional[Record]:
    """Record with the greatest timestamp in field (unparseable ones sort first)."""
    best: Optional[Record] = None
    best_ts: Optional[datetime] = None
    for record in records:
        ts = parse_timestamp(record.get(field))
        if best is None or (ts is not None and (best_ts is None or ts > best_ts)):
            best, best_ts = record, ts
    return best


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


def security_dashboard_metrics(
    incidents: list[Record],
    vulnerabilities: list[Record],
    policies: list[Record],
    controls: list[Record],
    assets: list[Record],
    pci: list[Record],
    isms: list[Record],
    cmmc: list[Record],
    alerts: list[Record],
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Card values for the IT security dashboard."""
    now = now or datetime.now(timezone.utc)
    thirty_days_ago = now - timedelta(days=30)
    one_day_ago = now - timedelta(hours=24)

    policies_due_review = 0
    for p in policies:
        due = parse_timestamp(p.get("next_review_date"))
        if due is not None and due <= now:
            policies_due_review += 1

    assets_with_vulnerabilities = 0
    for a in assets:
        score = _number(a.get("risk_score"))
        if score is not None and score > 5:
            assets_with_vulnerabilities += 1

    isms_latest = latest(isms)
    cmmc_latest = latest(cmmc)
    false_positives = sum(1 for a in alerts if a.get("false_positive") is True)

    return {
        "total_incidents": len(incidents),
        "open_incidents": count_where(incidents, "status", ("open", "investigating")),
        "critical_incidents": count_where(incidents, "severity", ("critical",)),
        "resolved_incidents_30d": count_since(incidents, "resolved_at", thirty_days_ago),
        "total_vulnerabilities": len(vulnerabilities),
        "high_critical_vulnerabilities": count_where(vulnerabilities, "severity", ("high", "critical")),
        "patched_vulnerabilities_30d": count_since(vulnerabilities, "patched_date", thirty_days_ago),
        "total_policies": len(policies),
        "active_policies": count_where(policies, "status", ("active",)),
        "policies_due_review": policies_due_review,
        "total_controls": len(controls),
        "implemented_controls": count_where(controls, "implementation_status", ("implemented", "operational")),
        "effective_controls": count_where(controls, "effectiveness", ("effective",)),
        "total_assets": len(assets),
        "critical_assets": count_where(assets, "criticality", ("critical",)),
        "assets_with_vulnerabilities": assets_with_vulnerabilities,
        "pci_compliance_score": average(pci, "compliance_score", missing=0.0) or 0.0,
        "isms_certification_status": (
            (isms_latest or {}).get("certification_status") or "not_certified"
        ),
        "cmmc_current_level": (cmmc_latest or {}).get("current_level") or 1,
        "security_alerts_24h": count_since(alerts, "alert_time", one_day_ago),
        "false_positive_rate": percentage(false_positives, len(alerts)),
    }


def compliance_snapshot(status_counts: Mapping[str, int]) -> dict[str, Any]:
    """Snapshot card from per-status assessment counts.

    overall_score is the compliant share of applicable requirements, so
    not_applicable assessments are excluded from the denominator.
    """
    counts = {s: int(status_counts.get(s) or 0) for s in ASSESSMENT_STATUSES}
    total = sum(int(v or 0) for v in status_counts.values())
    applicable = total - counts["not_applicable"]
    return {
        "compliant_count": counts["compliant"],
        "partially_compliant_count": counts["partially_compliant"],
        "non_compliant_count": counts["non_compliant"],
        "not_applicable_count": counts["not_applicable"],
        "under_review_count": counts["under_review"],
        "unknown_count": counts["unknown"],
        "total_requirements": total,
        "overall_score": round(percentage(counts["compliant"], applicable), 2),
    }
