#!/usr/bin/env python3
"""Command-line entry point for the migration safety tooling.

Usage:
    migration-safety create-migration [--name NAME]
    migration-safety check-drift
    migration-safety fix-drift NAME [NAME ...]
    migration-safety scan-safety [--path DIR]
    migration-safety sanitize PATH [--no-reconcile]
"""

from __future__ import annotations

import argparse
import dataclasses
import functools
import sys
from pathlib import Path

from create_migration import MigrationCreator, ToolSettings
from migration_ledger import (
    check_drift,
    connect_ledger,
    fix_drift,
    format_drift_report,
    reconcile_with_url,
)
from migration_safety import (
    MIGRATION_FILE,
    MigrationSafetyError,
    format_removed,
    format_violations,
    load_config,
    read_sql,
    sanitize_sql,
    scan_migrations,
    warn,
    write_sql,
)


def cmd_create_migration(args: argparse.Namespace, settings: ToolSettings) -> int:
    config = load_config(settings.config_path)
    reconciler = functools.partial(reconcile_with_url, settings.database_url) if settings.database_url else None
    MigrationCreator(settings, config, reconciler=reconciler).run(args.name)
    return 0


def cmd_check_drift(args: argparse.Namespace, settings: ToolSettings) -> int:
    with connect_ledger(settings.database_url) as ledger:
        report = check_drift(ledger, settings.migrations_dir)
    print(format_drift_report(report))
    for name in report.missing:
        warn(f"{name} is recorded in the ledger but has no migration file")
    return 0 if report.ok else 1


def cmd_fix_drift(args: argparse.Namespace, settings: ToolSettings) -> int:
    with connect_ledger(settings.database_url) as ledger:
        failed = fix_drift(ledger, settings.migrations_dir, args.names)
    if failed:
        print(f"error: could not reconcile {', '.join(failed)}", file=sys.stderr)
        return 1
    return 0


def cmd_scan_safety(args: argparse.Namespace, settings: ToolSettings) -> int:
    config = load_config(settings.config_path)
    root = Path(args.path) if args.path else settings.migrations_dir
    violations = scan_migrations(root, config.protected_indexes)
    print(format_violations(violations, root))
    return 1 if violations else 0


def cmd_sanitize(args: argparse.Namespace, settings: ToolSettings) -> int:
    path = Path(args.path)
    if path.is_dir():
        path = path / MIGRATION_FILE
    if not path.is_file():
        raise MigrationSafetyError(
            f"migration file not found: {path}",
            hint="migration-safety sanitize prisma/migrations/<name>",
        )

    config = load_config(settings.config_path)
    result = sanitize_sql(read_sql(path), config.ignore_patterns)
    if not result.removed:
        print(f"[sanitize] {path}: nothing to remove")
        return 0

    write_sql(path, result.sanitized_text)
    print(format_removed(result.removed))
    if args.no_reconcile:
        print("[sanitize] ledger not updated (--no-reconcile)")
    elif settings.database_url:
        reconcile_with_url(settings.database_url, path.parent, result.sanitized_text)
    else:
        warn("DATABASE_URL is not set; if this migration was already applied run fix-drift once it is")
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Safety checks for Prisma migrations")
    parser.add_argument("--config", help="Migration safety config (default: $MIGRATION_SAFETY_CONFIG)")
    parser.add_argument("--migrations-dir", help="Migrations root (default: $MIGRATIONS_DIR or prisma/migrations)")
    parser.add_argument("--schema", help="Prisma schema file (default: $PRISMA_SCHEMA or prisma/schema.prisma)")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-migration", help="Generate, sanitize and report a new migration")
    create.add_argument("--name", help="Migration name, e.g. add_user_settings")
    create.set_defaults(func=cmd_create_migration)

    drift = sub.add_parser("check-drift", help="Compare on-disk checksums with the migration ledger")
    drift.set_defaults(func=cmd_check_drift)

    fix = sub.add_parser("fix-drift", help="Write on-disk checksums into the ledger for the named migrations")
    fix.add_argument("names", nargs="+", help="Migration directory names")
    fix.set_defaults(func=cmd_fix_drift)

    scan = sub.add_parser("scan-safety", help="Fail if a protected index is dropped without being recreated")
    scan.add_argument("--path", help="Directory to scan (default: the migrations root)")
    scan.set_defaults(func=cmd_scan_safety)

    sanitize = sub.add_parser("sanitize", help="Re-run the sanitizer on an existing migration")
    sanitize.add_argument("path", help="Migration directory or migration.sql")
    sanitize.add_argument("--no-reconcile", action="store_true", help="Do not update the ledger checksum")
    sanitize.set_defaults(func=cmd_sanitize)

    return parser.parse_args(argv)


def resolve_settings(args: argparse.Namespace) -> ToolSettings:
    settings = ToolSettings.from_env()
    overrides = {}
    if args.config:
        overrides["config_path"] = Path(args.config)
    if args.migrations_dir:
        overrides["migrations_dir"] = Path(args.migrations_dir)
    if args.schema:
        overrides["schema_path"] = Path(args.schema)
    return dataclasses.replace(settings, **overrides)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = resolve_settings(args)
    try:
        return args.func(args, settings)
    except MigrationSafetyError as exc:
        print(f"error: {exc}", file=sys.stderr)
        if exc.hint:
            print(f"  next: {exc.hint}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
