"""Command line helper for the UnitSync spreadsheet sync engine."""

from __future__ import annotations

import argparse
import logging
import sys

import db
from core import reconciler, record_pusher, schema_scanner
from core.a1 import InvalidAddress
from core.field_schema import SchemaError
from core.logging_config import configure_logging
from core.sheets_client import RemoteError, extract_gid
from core.sheets_session import SessionError, open_client
from settings import load_sync_settings

DEFAULT_SHEET = "Sheet1"


def _open(spreadsheet: str):
    settings = load_sync_settings()
    db.set_database_path(settings.db_path)
    return open_client(settings, spreadsheet)


def command_sheets(args: argparse.Namespace) -> int:
    try:
        client = _open(args.spreadsheet)
        sheets = client.list_sheets()
    except (SessionError, RemoteError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    # The worksheet named by the URL's gid is starred.
    gid = extract_gid(args.spreadsheet)
    for sheet in sheets:
        marker = "*" if gid is not None and str(sheet.sheet_id) == gid else " "
        print(f"{marker}{sheet.sheet_id:>12}  {sheet.title}")
    return 0


def command_scan(args: argparse.Namespace) -> int:
    try:
        client = _open(args.spreadsheet)
        result = schema_scanner.scan_sheet(client, DEFAULT_SHEET, args.range)
    except (SessionError, RemoteError, InvalidAddress) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    for definition in result.fields:
        flags = [
            name
            for name in ("is_id", "system", "hidden", "readonly", "autofill")
            if getattr(definition, name)
        ]
        print(f"{definition.cell or '-':>6}  {definition.key:<24} {definition.input_type:<10} {' '.join(flags)}")
    print(f"Preview rows: {len(result.preview)}")

    if args.save:
        try:
            schema = db.create_schema(args.save, result.fields)
        except SchemaError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        print(f"Saved unit type {schema.name!r} (id {schema.id})")
    return 0


def command_sites(args: argparse.Namespace) -> int:
    settings = load_sync_settings()
    db.set_database_path(settings.db_path)
    for site in db.list_sites():
        state = "on" if site.sync_enabled else "off"
        print(f"{site.id}  {site.name:<24} sync {state:<3}  {site.last_sync_status or 'never synced'}")
    return 0


def command_pull(args: argparse.Namespace) -> int:
    settings = load_sync_settings()
    db.set_database_path(settings.db_path)
    result = reconciler.sync_site(args.site_id, settings)
    if result.reason == reconciler.MISSING_CONFIGURATION:
        print("No sheet is bound to this site. Available sheets:")
        for title in result.available_sheets:
            print(f"  {title}")
        return 2
    if not result.ok:
        print(f"Error: {result.reason}", file=sys.stderr)
        return 1
    print(result.summary)
    for sheet_name, reason in result.errors.items():
        print(f"Warning: {sheet_name}: {reason}", file=sys.stderr)
    return 0


def command_push(args: argparse.Namespace) -> int:
    settings = load_sync_settings()
    db.set_database_path(settings.db_path)
    fields = args.field or list(record_pusher.PUSHABLE_ATTRIBUTES)
    result = record_pusher.push_unit(args.unit_id, fields, settings)
    if not result.ok:
        print(f"Error: {result.reason}", file=sys.stderr)
        return 1
    if result.appended:
        print(f"Appended as row {result.row_number}")
    else:
        print(f"Wrote {result.cells_written} cell(s) in row {result.row_number}")
    return 0


def command_drain_outbox(args: argparse.Namespace) -> int:
    settings = load_sync_settings()
    db.set_database_path(settings.db_path)
    dispatcher = record_pusher.PushDispatcher(settings)
    sent = dispatcher.drain_outbox()
    remaining = len(dispatcher.outbox.pending())
    print(f"Delivered {sent} push(es); {remaining} still queued")
    return 0 if remaining == 0 else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="UnitSync spreadsheet sync tool")
    parser.add_argument("--verbose", action="store_true", help="Echo log records to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sheets_parser = subparsers.add_parser("sheets", help="List the sheets of a spreadsheet")
    sheets_parser.add_argument("spreadsheet", help="Spreadsheet URL or id")
    sheets_parser.set_defaults(func=command_sheets)

    scan_parser = subparsers.add_parser("scan", help="Derive a unit type from a header row")
    scan_parser.add_argument("spreadsheet", help="Spreadsheet URL or id")
    scan_parser.add_argument("range", help="Header range such as 'Sheet1!A1:M1'")
    scan_parser.add_argument("--save", metavar="NAME", help="Store the scanned fields as a unit type")
    scan_parser.set_defaults(func=command_scan)

    sites_parser = subparsers.add_parser("sites", help="List sites and their last sync status")
    sites_parser.set_defaults(func=command_sites)

    pull_parser = subparsers.add_parser("pull", help="Import the bound sheets of a site")
    pull_parser.add_argument("site_id")
    pull_parser.set_defaults(func=command_pull)

    push_parser = subparsers.add_parser("push", help="Write a unit back to its sheet row")
    push_parser.add_argument("unit_id")
    push_parser.add_argument(
        "--field",
        action="append",
        help="Attribute to write (repeatable); all attributes by default",
    )
    push_parser.set_defaults(func=command_push)

    drain_parser = subparsers.add_parser("drain-outbox", help="Replay queued pushes once")
    drain_parser.set_defaults(func=command_drain_outbox)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else None, console=args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
