#!/usr/bin/env python3
"""
GRC Admin -- command-line access to governance, risk and compliance records.

Reads and prints records through the same repositories the API uses, against
the database configured by DATABASE_URL.

Usage:
  python main.py entities
  python main.py list incidents
  python main.py list vulnerabilities --query SQL --filter severity=high --filter severity=critical
  python main.py list incidents --from 2024-01-01 --to 2024-01-31 --sort-by severity --sort-order asc
  python main.py list controls --format csv > controls.csv
  python main.py get incidents 2f1c0c4e-6b9e-4d4b-9a57-3f0c1f8a2b11
  python main.py dashboard
  python main.py dashboard --compliance --framework 5b0d...
  python main.py list policies --no-color

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the GRC database (default: SQLite file beside store/).
"""

import argparse
import asyncio
import sys
from typing import Optional

from core.config import get_settings
from core.errors import GRCError, ValidationError
from core.formatter import disable_color, print_metrics, print_page, print_record, to_csv, to_json
from core.filters import FilterKind
from core.models import SearchRequest
from store.entities import ENTITIES, EntityDefinition
from store.repository import GRCStore


def _parse_filters(definition: EntityDefinition, pairs: list[str], start: Optional[str], end: Optional[str]) -> dict:
    """Turn repeated --filter key=value flags (and --from/--to) into logical filters."""
    filters: dict = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise ValidationError(f"--filter expects key=value, got {pair!r}")
        spec_field = definition.filters.field(key)
        if spec_field is not None and spec_field.kind is FilterKind.enum:
            filters[key] = value
        else:
            filters.setdefault(key, []).append(value)
    if start or end:
        filters["date_range"] = {"start": start or end, "end": end or start}
    return filters


def _display_columns(definition: EntityDefinition) -> list[str]:
    """Code, title, status and severity-like columns, in that order, when the entity has them."""
    columns = definition.columns
    preferred = sorted(c for c in definition.unique if c != "id")[:1]
    for name in ("title", "name", definition.status_field, "severity", "priority", "criticality", "created_at"):
        if name and name in columns and name not in preferred:
            preferred.append(name)
    return preferred


async def _run(args: argparse.Namespace, store: GRCStore) -> None:
    if args.command == "list":
        definition = ENTITIES[args.entity]
        request = SearchRequest(
            query=args.query,
            filters=_parse_filters(definition, args.filter, args.date_from, args.date_to),
            sort_by=args.sort_by,
            sort_order=args.sort_order,
            page=args.page,
            page_size=args.page_size,
        )
        page = await store.repository(args.entity).list(request)
        if args.format == "json":
            print(to_json(page))
        elif args.format == "csv":
            print(to_csv(page.data), end="")
        else:
            print_page(page, _display_columns(definition), title=args.entity)

    elif args.command == "get":
        record = await store.repository(args.entity).get_by_id(args.id)
        if args.format == "json":
            print(to_json(record))
        elif args.format == "csv":
            print(to_csv([record]), end="")
        else:
            print_record(record, title=f"{ENTITIES[args.entity].name} {args.id}")

    elif args.command == "dashboard":
        if args.compliance:
            metrics = await store.compliance_snapshot(args.framework)
            title = "Compliance snapshot"
        else:
            metrics = await store.security_dashboard()
            title = "IT security dashboard"
        if args.format == "json":
            print(to_json(metrics))
        elif args.format == "csv":
            print(to_csv([metrics]), end="")
        else:
            print_metrics(metrics, title)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="grc-admin",
        description="Search and inspect governance, risk and compliance records.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable ANSI color codes in terminal output",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("entities", help="List the entities and their filters")

    format_opts = argparse.ArgumentParser(add_help=False)
    format_opts.add_argument(
        "--format",
        choices=["terminal", "json", "csv"],
        default="terminal",
        help="Output format: terminal (default), json, or csv",
    )

    list_cmd = sub.add_parser("list", parents=[format_opts], help="Search one entity")
    list_cmd.add_argument("entity", choices=sorted(ENTITIES), metavar="ENTITY")
    list_cmd.add_argument("--query", "-q", help="Free-text search")
    list_cmd.add_argument(
        "--filter",
        "-f",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Filter on a declared field; repeat for multiple values",
    )
    list_cmd.add_argument("--from", dest="date_from", metavar="DATE", help="Start of the entity's date range")
    list_cmd.add_argument("--to", dest="date_to", metavar="DATE", help="End of the entity's date range (inclusive)")
    list_cmd.add_argument("--sort-by", metavar="COLUMN")
    list_cmd.add_argument("--sort-order", choices=["asc", "desc"], default="desc")
    list_cmd.add_argument("--page", type=int, default=1)
    list_cmd.add_argument("--page-size", type=int, default=None)

    get_cmd = sub.add_parser("get", parents=[format_opts], help="Show one record")
    get_cmd.add_argument("entity", choices=sorted(ENTITIES), metavar="ENTITY")
    get_cmd.add_argument("id")

    dash_cmd = sub.add_parser("dashboard", parents=[format_opts], help="Print dashboard metrics")
    dash_cmd.add_argument("--compliance", action="store_true", help="Compliance snapshot instead of IT security")
    dash_cmd.add_argument("--framework", metavar="ID", help="Framework id for the compliance snapshot")

    args = parser.parse_args()

    if args.no_color:
        disable_color()

    if args.command is None:
        parser.print_help()
        return

    if args.command == "entities":
        for definition in ENTITIES.values():
            filters = ", ".join(f.name for f in definition.filters.fields.values())
            print(f"  {definition.slug:<24} {filters}")
        return

    store = GRCStore.from_settings(get_settings())
    try:
        asyncio.run(_run(args, store))
    except GRCError as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
