"""Migration ledger access (_prisma_migrations), drift detection and checksum reconciliation."""

from __future__ import annotations

import dataclasses
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Protocol, Sequence

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError as exc:  # pragma: no cover
    raise SystemExit("psycopg is required. Install with: pip install 'psycopg[binary]'") from exc

from migration_safety import MIGRATION_FILE, MigrationSafetyError, checksum, checksum_file


SELECT_MIGRATIONS_SQL = (
    "SELECT migration_name, checksum, finished_at, started_at, applied_steps_count "
    "FROM _prisma_migrations "
    "ORDER BY started_at, migration_name"
)
UPDATE_CHECKSUM_SQL = "UPDATE _prisma_migrations SET checksum = %s WHERE migration_name = %s"
DATABASE_HINT = "check DATABASE_URL points at the target database, then re-run"

STATUS_OK = "OK"
STATUS_DRIFT = "DRIFT"
STATUS_MISSING = "MISSING"


class LedgerError(MigrationSafetyError):
    pass


@dataclasses.dataclass(frozen=True)
class MigrationRecord:
    name: str
    checksum: str
    applied_at: datetime | None = None
    started_at: datetime | None = None
    steps_applied: int = 0

    @property
    def incomplete(self) -> bool:
        return self.applied_at is None


class Ledger(Protocol):
    def fetch_records(self) -> list[MigrationRecord]: ...

    def update_checksum(self, name: str, new_checksum: str) -> int: ...


class PostgresLedger:
    def __init__(self, conn: "psycopg.Connection") -> None:
        self.conn = conn

    def fetch_records(self) -> list[MigrationRecord]:
        try:
            with self.conn.cursor(row_factory=dict_row) as cur:
                cur.execute(SELECT_MIGRATIONS_SQL)
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise LedgerError(f"could not read migration ledger: {exc}", hint=DATABASE_HINT) from exc
        return [
            MigrationRecord(
                name=row["migration_name"],
                checksum=row["checksum"],
                applied_at=row["finished_at"],
                started_at=row["started_at"],
                steps_applied=row["applied_steps_count"] or 0,
            )
            for row in rows
        ]

    def update_checksum(self, name: str, new_checksum: str) -> int:
        try:
            with self.conn.cursor() as cur:
                cur.execute(UPDATE_CHECKSUM_SQL, (new_checksum, name))
                count = cur.rowcount
            self.conn.commit()
        except psycopg.Error as exc:
            raise LedgerError(f"could not update checksum for {name}: {exc}", hint=DATABASE_HINT) from exc
        return count


@contextmanager
def connect_ledger(database_url: str | None) -> Iterator[PostgresLedger]:
    if not database_url:
        raise LedgerError("DATABASE_URL is not set; the migration ledger is unreachable", hint=DATABASE_HINT)
    try:
        conn = psycopg.connect(database_url, connect_timeout=10)
    except psycopg.Error as exc:
        raise LedgerError(f"could not connect to the migration ledger: {exc}", hint=DATABASE_HINT) from exc
    try:
        yield PostgresLedger(conn)
    finally:
        conn.close()


def migration_sql_path(migrations_dir: Path, name: str) -> Path:
    return Path(migrations_dir) / name / MIGRATION_FILE


@dataclasses.dataclass(frozen=True)
class DriftEntry:
    name: str
    status: str
    ledger_checksum: str
    file_checksum: str | None = None
    incomplete: bool = False


@dataclasses.dataclass
class DriftReport:
    entries: list[DriftEntry]

    @property
    def drifted(self) -> list[str]:
        return [e.name for e in self.entries if e.status == STATUS_DRIFT]

    @property
    def missing(self) -> list[str]:
        return [e.name for e in self.entries if e.status == STATUS_MISSING]

    @property
    def incomplete(self) -> list[str]:
        return [e.name for e in self.entries if e.incomplete]

    @property
    def ok(self) -> bool:
        return not self.drifted


def check_drift(ledger: Ledger, migrations_dir: Path) -> DriftReport:
    """Compare every ledger row with the checksum of its file on disk.

    LedgerError from fetch_records propagates: without the ledger there is nothing to report.
    A missing file is recorded and the scan continues.
    """
    entries: list[DriftEntry] = []
    for record in ledger.fetch_records():
        path = migration_sql_path(migrations_dir, record.name)
        if not path.is_file():
            entries.append(
                DriftEntry(
                    name=record.name,
                    status=STATUS_MISSING,
                    ledger_checksum=record.checksum,
                    incomplete=record.incomplete,
                )
            )
            continue
        actual = checksum_file(path)
        entries.append(
            DriftEntry(
                name=record.name,
                status=STATUS_OK if actual == record.checksum else STATUS_DRIFT,
                ledger_checksum=record.checksum,
                file_checksum=actual,
                incomplete=record.incomplete,
            )
        )
    return DriftReport(entries=entries)


def format_drift_report(report: DriftReport) -> str:
    lines: list[str] = []
    for entry in report.entries:
        lines.append(f"[{entry.status}] {entry.name}")
        if entry.status == STATUS_DRIFT:
            lines.append(f"    ledger: {entry.ledger_checksum}")
            lines.append(f"    file:   {entry.file_checksum}")
        elif entry.status == STATUS_MISSING:
            lines.append("    migration.sql not found on disk")
        if entry.incomplete:
            lines.append("    INCOMPLETE: ledger has no finished_at; resolve with `prisma migrate resolve`")

    lines.append("")
    lines.append(
        f"{len(report.entries)} migration(s) checked: "
        f"{len(report.entries) - len(report.drifted) - len(report.missing)} ok, "
        f"{len(report.drifted)} drifted, {len(report.missing)} missing"
    )
    if report.drifted:
        lines.append("")
        lines.append("Review the drifted files. If the on-disk SQL is the intended version, run:")
        lines.append(f"  migration-safety fix-drift {' '.join(report.drifted)}")
    return "\n".join(lines)


def reconcile_checksum(ledger: Ledger, migration_dir: Path, final_sql: str | bytes) -> int | None:
    """Record the checksum of `final_sql` for the migration named by `migration_dir`.

    Best-effort: ledger failures are reported and None is returned instead of raising.
    """
    name = Path(migration_dir).name
    data = final_sql.encode("utf-8") if isinstance(final_sql, str) else final_sql
    new_checksum = checksum(data)
    try:
        count = ledger.update_checksum(name, new_checksum)
    except LedgerError as exc:
        print(f"[ledger] checksum not reconciled for {name}: {exc}", file=sys.stderr)
        return None
    if count == 0:
        print(f"[ledger] {name} is not in the ledger yet; its first apply will record {new_checksum}")
    else:
        print(f"[ledger] {name}: checksum set to {new_checksum}")
    return count


def fix_drift(ledger: Ledger, migrations_dir: Path, names: Sequence[str]) -> list[str]:
    """Reconcile each named migration against its on-disk bytes; returns names that failed."""
    failed: list[str] = []
    for name in names:
        path = migration_sql_path(migrations_dir, name)
        if not path.is_file():
            print(f"[ledger] {name}: {path} not found; skipping", file=sys.stderr)
            failed.append(name)
            continue
        if reconcile_checksum(ledger, path.parent, path.read_bytes()) is None:
            failed.append(name)
    return failed


def reconcile_with_url(database_url: str | None, migration_dir: Path, final_sql: str | bytes) -> int | None:
    """Open the ledger and reconcile; an unreachable ledger is reported, not raised."""
    try:
        with connect_ledger(database_url) as ledger:
            return reconcile_checksum(ledger, migration_dir, final_sql)
    except LedgerError as exc:
        print(f"[ledger] checksum not reconciled for {Path(migration_dir).name}: {exc}", file=sys.stderr)
        return None
