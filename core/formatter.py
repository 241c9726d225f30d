"""
formatter.py -- Renders pages of records and dashboard metrics to the terminal, JSON or CSV.
"""

import csv
import io
import json
import os
import re
import sys
from typing import Any, Iterable, Optional

from .models import Page

W = 78  # output width

# ---------------------------------------------------------------------------
# ANSI color control
# ---------------------------------------------------------------------------

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from a string."""
    return _ANSI_RE.sub("", text)


def _use_color() -> bool:
    """Return True if stdout is a TTY and color has not been disabled.

    Respects NO_COLOR env var (https://no-color.org) and checks sys.stdout.isatty().
    Can be overridden by calling disable_color().
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled: Optional[bool] = None  # None = auto-detect


def disable_color() -> None:
    """Force-disable color output (called when --no-color flag is set)."""
    global _color_enabled
    _color_enabled = False


def reset_color() -> None:
    """Return to auto-detection."""
    global _color_enabled
    _color_enabled = None


def _color_active() -> bool:
    if _color_enabled is not None:
        return _color_enabled
    return _use_color()


# ---------------------------------------------------------------------------
# ANSI code helpers: return empty string when color is off
# ---------------------------------------------------------------------------

SEVERITY_COLORS = {
    "critical": "\033[91m",  # red
    "urgent": "\033[91m",
    "high": "\033[93m",  # yellow
    "medium": "\033[94m",  # blue
    "low": "\033[92m",  # green
}

# Columns whose values are coloured by SEVERITY_COLORS.
_SEVERITY_COLUMNS = {"severity", "priority", "criticality", "risk_rating"}


def _reset() -> str:
    return "\033[0m" if _color_active() else ""


def _bold() -> str:
    return "\033[1m" if _color_active() else ""


def _dim() -> str:
    return "\033[2m" if _color_active() else ""


def _s_color(value: Any) -> str:
    return SEVERITY_COLORS.get(str(value), "") if _color_active() else ""


# ---------------------------------------------------------------------------
# Layout helpers
# ---------------------------------------------------------------------------


def _bar(char: str = "═") -> str:
    return char * W


def _cell(value: Any, width: int) -> str:
    if value is None:
        text = "-"
    elif isinstance(value, list):
        text = ", ".join(str(v) for v in value) or "-"
    else:
        text = str(value)
    if len(text) > width:
        text = text[: width - 1] + "…"
    return f"{text:<{width}}"


def _widths(columns: list[str], rows: list[dict]) -> list[int]:
    budget = max(8, (W - 2 * len(columns)) // max(1, len(columns)))
    widths = []
    for column in columns:
        longest = max([len(column)] + [len(str(r.get(column) or "-")) for r in rows])
        widths.append(min(longest, budget * 2 if column in ("title", "name") else budget))
    return widths


# ---------------------------------------------------------------------------
# Terminal renderers
# ---------------------------------------------------------------------------


def print_page(page: Page, columns: list[str], title: str = "") -> None:
    """Print one page of records as a table, followed by pagination info."""
    bold = _bold()
    reset = _reset()
    dim = _dim()

    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}{title.upper()}{reset}  │  {page.total} record(s)")
    print(f"{bold}{_bar()}{reset}")

    if not page.data:
        print("\n    No records match.\n")
        return

    widths = _widths(columns, page.data)
    header = "  ".join(_cell(c, w) for c, w in zip(columns, widths))
    print(f"  {bold}{header}{reset}")
    print(f"  {'─' * min(W - 2, len(header))}")
    for record in page.data:
        cells = []
        for column, width in zip(columns, widths):
            text = _cell(record.get(column), width)
            if column in _SEVERITY_COLUMNS:
                text = f"{_s_color(record.get(column))}{text}{reset}"
            cells.append(text)
        print("  " + "  ".join(cells))

    print(f"\n  {dim}Page {page.page} of {page.total_pages}  ·  {page.page_size} per page{reset}\n")


def print_record(record: dict[str, Any], title: str = "") -> None:
    """Print every field of one record, one per line."""
    bold = _bold()
    reset = _reset()
    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}{title or record.get('id', '')}{reset}")
    print(f"{bold}{_bar()}{reset}")
    label_width = max((len(k) for k in record), default=0)
    for key, value in record.items():
        color = _s_color(value) if key in _SEVERITY_COLUMNS else ""
        print(f"    {key:<{label_width}}  {color}{_cell(value, W - label_width - 6).rstrip()}{reset}")
    print()


def print_metrics(metrics: dict[str, Any], title: str) -> None:
    """Print dashboard metrics as label/value pairs."""
    bold = _bold()
    reset = _reset()
    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}{title.upper()}{reset}")
    print(f"{bold}{_bar()}{reset}")
    for key, value in metrics.items():
        label = key.replace("_", " ").capitalize()
        shown = f"{value:.1f}" if isinstance(value, float) else str(value)
        print(f"    {label:<36} {shown}")
    print()


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def to_json(payload: Any) -> str:
    """Serialize a Page, record or metrics dict to indented JSON."""
    if isinstance(payload, Page):
        payload = payload.to_dict()
    return json.dumps(payload, indent=2, default=str)


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------

# Spreadsheets evaluate cells starting with these as formulas (CWE-1236).
_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _sanitize_csv_cell(value: Any) -> str:
    """Stringify a cell and tab-prefix it if a spreadsheet would read it as a formula."""
    if value is None:
        return ""
    if isinstance(value, list):
        text = "; ".join(str(v) for v in value)
    elif isinstance(value, dict):
        text = json.dumps(value, sort_keys=True)
    else:
        text = str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "\t" + text
    return text


def to_csv(records: Iterable[dict[str, Any]], columns: Optional[list[str]] = None) -> str:
    """Render records as CSV with a header row.

    columns defaults to the keys of the first record. Every cell is passed
    through formula-injection sanitization.
    """
    records = list(records)
    if columns is None:
        columns = list(records[0].keys()) if records else []

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(columns)
    for record in records:
        writer.writerow([_sanitize_csv_cell(record.get(c)) for c in columns])
    return buf.getvalue()
