"""Create a Prisma migration, sanitize it, and report what was removed.

Normal path: `prisma migrate dev --create-only`, which validates the migration
against a shadow database. When prisma refuses to run because the environment
is non-interactive, fall back to `prisma migrate diff` against the live
database and build the timestamped migration directory ourselves.
"""

from __future__ import annotations

import dataclasses
import os
import re
import shlex
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, Mapping

from migration_safety import (
    DEFAULT_CONFIG_PATH,
    MIGRATION_FILE,
    REMOVED_PREFIX,
    MigrationSafetyError,
    RemovedStatement,
    SafetyConfig,
    SanitizationResult,
    format_removed,
    read_sql,
    sanitize_sql,
    write_sql,
)

NAME_RE = re.compile(r"[a-z][a-z0-9_]*")
NAME_FORMAT = "lowercase letters, digits and underscores, starting with a letter (e.g. add_user_settings)"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

NO_CHANGES_MARKERS = (
    "already in sync",
    "no schema change",
    "no pending changes",
)
EMPTY_MIGRATION_MARKER = "-- This is an empty migration."

STATE_EMPTY = "EMPTY"
STATE_REPORTED = "REPORTED"


class NameValidationError(MigrationSafetyError):
    pass


class ToolError(MigrationSafetyError):
    pass


@dataclasses.dataclass(frozen=True)
class ToolSettings:
    migrations_dir: Path = Path("prisma/migrations")
    schema_path: Path = Path("prisma/schema.prisma")
    config_path: Path = DEFAULT_CONFIG_PATH
    prisma_command: str = "npx prisma"
    database_url: str | None = None
    snapshot_command: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ToolSettings":
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            migrations_dir=Path(env.get("MIGRATIONS_DIR") or defaults.migrations_dir),
            schema_path=Path(env.get("PRISMA_SCHEMA") or defaults.schema_path),
            config_path=Path(env.get("MIGRATION_SAFETY_CONFIG") or defaults.config_path),
            prisma_command=env.get("PRISMA_COMMAND") or defaults.prisma_command,
            database_url=env.get("DATABASE_URL") or None,
            snapshot_command=env.get("SCHEMA_SNAPSHOT_COMMAND") or None,
        )


def validate_name(name: str | None) -> str:
    if not name or not NAME_RE.fullmatch(name):
        raise NameValidationError(
            f"invalid migration name {name!r}: expected {NAME_FORMAT}",
            hint="migration-safety create-migration --name add_user_settings",
        )
    return name


def is_non_interactive_failure(output: str) -> bool:
    """True when prisma refused to run because stdin is not a TTY.

    The wording is prisma-version dependent and this is the only place it is matched.
    """
    return "non-interactive" in output.lower()


def has_no_changes_marker(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in NO_CHANGES_MARKERS)


def is_empty_script(script: str) -> bool:
    return not script.strip() or script.strip() == EMPTY_MIGRATION_MARKER


def migration_timestamp(now: datetime) -> str:
    return now.strftime(TIMESTAMP_FORMAT)


def list_migration_dirs(migrations_dir: Path) -> set[str]:
    if not migrations_dir.is_dir():
        return set()
    return {p.name for p in migrations_dir.iterdir() if p.is_dir()}


def combined_output(proc: subprocess.CompletedProcess) -> str:
    return "\n".join(part for part in (proc.stdout, proc.stderr) if part)


def format_sql_report(sql_text: str) -> str:
    lines = []
    for line in sql_text.splitlines():
        marker = "!!" if line.startswith(REMOVED_PREFIX) else "  "
        lines.append(f"{marker} {line}".rstrip())
    return "\n".join(lines)


@dataclasses.dataclass
class CreateResult:
    state: str
    migration_dir: Path | None = None
    removed: list[RemovedStatement] = dataclasses.field(default_factory=list)
    used_fallback: bool = False


Reconciler = Callable[[Path, str], None]


class MigrationCreator:
    def __init__(
        self,
        settings: ToolSettings,
        config: SafetyConfig,
        *,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        interactive: bool | None = None,
        prompt: Callable[[str], str] = input,
        clock: Callable[[], datetime] = datetime.now,
        reconciler: Reconciler | None = None,
    ) -> None:
        self.settings = settings
        self.config = config
        self.runner = runner
        self.interactive = sys.stdin.isatty() if interactive is None else interactive
        self.prompt = prompt
        self.clock = clock
        self.reconciler = reconciler
        self.used_fallback = False

    def run(self, name: str | None = None) -> CreateResult:
        name = self.acquire_name(name)
        migration_dir = self.generate(name)
        if migration_dir is None:
            print("[create] no schema changes detected; nothing to create")
            return CreateResult(state=STATE_EMPTY, used_fallback=self.used_fallback)

        result = self.sanitize(migration_dir)
        final_sql = read_sql(migration_dir / MIGRATION_FILE)
        self.report(migration_dir, final_sql)
        return CreateResult(
            state=STATE_REPORTED,
            migration_dir=migration_dir,
            removed=result.removed,
            used_fallback=self.used_fallback,
        )

    def acquire_name(self, name: str | None) -> str:
        if name is not None:
            return validate_name(name)
        if not self.interactive:
            raise NameValidationError(
                "no migration name given and no terminal to prompt for one",
                hint="migration-safety create-migration --name add_user_settings",
            )
        return validate_name(self.prompt(f"Migration name ({NAME_FORMAT}): ").strip())

    def prisma(self, *args: str) -> list[str]:
        return shlex.split(self.settings.prisma_command) + list(args)

    def invoke(self, cmd: list[str], passthrough: bool = False) -> subprocess.CompletedProcess:
        # With passthrough, stdout goes to the terminal so prisma's prompts reach the operator;
        # stderr is still captured for the non-interactive check.
        if passthrough:
            kwargs = {"stderr": subprocess.PIPE}
        else:
            kwargs = {"capture_output": True}
        try:
            return self.runner(cmd, text=True, check=False, **kwargs)
        except OSError as exc:
            raise ToolError(
                f"could not run {cmd[0]}: {exc}",
                hint="install the prisma CLI or set PRISMA_COMMAND",
            ) from exc

    def generate(self, name: str) -> Path | None:
        migrations_dir = self.settings.migrations_dir
        before = list_migration_dirs(migrations_dir)
        cmd = self.prisma(
            "migrate", "dev", "--create-only", "--name", name, "--schema", str(self.settings.schema_path)
        )
        print(f"[create] {shlex.join(cmd)}")
        proc = self.invoke(cmd, passthrough=self.interactive)
        output = combined_output(proc)
        if self.interactive and proc.stderr:
            print(proc.stderr, end="", file=sys.stderr)

        if proc.returncode != 0:
            if is_non_interactive_failure(output):
                return self.generate_from_diff(name)
            raise ToolError(
                f"prisma migrate dev failed (exit {proc.returncode}):\n{output.strip()}",
                hint="fix the error above, then re-run migration-safety create-migration",
            )

        if has_no_changes_marker(output):
            return None

        created = sorted(
            d for d in list_migration_dirs(migrations_dir) - before if (migrations_dir / d / MIGRATION_FILE).is_file()
        )
        if not created:
            if self.interactive:
                # prisma's stdout, including its "already in sync" message, went to the terminal.
                return None
            raise ToolError(
                f"prisma migrate dev exited 0 but no new migration was found in {migrations_dir}:\n{output.strip()}",
                hint="check MIGRATIONS_DIR matches the prisma schema's migrations folder",
            )
        return migrations_dir / created[-1]

    def generate_from_diff(self, name: str) -> Path | None:
        print("[create] non-interactive environment detected; falling back to prisma migrate diff")
        if not self.settings.database_url:
            raise ToolError(
                "the non-interactive fallback diffs against the live database, but DATABASE_URL is not set",
                hint="export DATABASE_URL=postgresql://... and re-run",
            )
        cmd = self.prisma(
            "migrate",
            "diff",
            "--from-url",
            self.settings.database_url,
            "--to-schema-datamodel",
            str(self.settings.schema_path),
            "--script",
        )
        proc = self.invoke(cmd)
        if proc.returncode != 0:
            raise ToolError(
                f"prisma migrate diff failed (exit {proc.returncode}):\n{combined_output(proc).strip()}",
                hint="check DATABASE_URL and the schema path, then re-run",
            )
        self.used_fallback = True
        script = proc.stdout or ""
        if is_empty_script(script):
            return None

        migration_dir = self.settings.migrations_dir / f"{migration_timestamp(self.clock())}_{name}"
        if migration_dir.exists():
            raise ToolError(
                f"migration directory already exists: {migration_dir}",
                hint="wait a second and re-run, or choose a different --name",
            )
        write_sql(migration_dir / MIGRATION_FILE, script)
        print(f"[create] wrote {migration_dir / MIGRATION_FILE}")
        return migration_dir

    def sanitize(self, migration_dir: Path) -> SanitizationResult:
        path = migration_dir / MIGRATION_FILE
        result = sanitize_sql(read_sql(path), self.config.ignore_patterns)
        if not result.removed:
            print("[create] no dangerous statements found")
            return result

        write_sql(path, result.sanitized_text)
        print(format_removed(result.removed))
        if self.reconciler is not None:
            self.reconciler(migration_dir, result.sanitized_text)
        return result

    def report(self, migration_dir: Path, final_sql: str) -> None:
        path = migration_dir / MIGRATION_FILE
        apply_cmd = shlex.join(self.prisma("migrate", "deploy", "--schema", str(self.settings.schema_path)))
        snapshot = self.settings.snapshot_command or "regenerate the derived schema snapshot"

        lines = ["", "=" * 60, f"Migration: {path}", "=" * 60, format_sql_report(final_sql), "=" * 60]
        if self.used_fallback:
            lines.extend(
                [
                    "",
                    "NOTE: created with `prisma migrate diff`; the shadow database consistency check was NOT run.",
                    "This migration is only validated when it is first applied.",
                ]
            )
        lines.extend(
            [
                "",
                "Next steps:",
                f"  1. Review {path} (lines marked !! were commented out)",
                f"  2. Apply it: {apply_cmd}",
                f"  3. Update the schema snapshot: {snapshot}",
                "  4. Commit the migration and deploy",
            ]
        )
        print("\n".join(lines))
