"""Checksums, sanitization and protected-index scanning for Prisma migration SQL."""

from __future__ import annotations

import dataclasses
import hashlib
import re
import sys
from collections import defaultdict
from pathlib import Path
from typing import Iterable

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc


REMOVED_PREFIX = "-- REMOVED: "
MIGRATION_FILE = "migration.sql"
DEFAULT_CONFIG_PATH = Path("prisma/migration-safety.json")
BLANK_RUN_RE = re.compile(r"(\r?\n)(?:\r?\n){2,}")


class MigrationSafetyError(Exception):
    """Expected failure; `hint` is the next command the operator should run."""

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigError(MigrationSafetyError):
    pass


@dataclasses.dataclass(frozen=True)
class IgnorePattern:
    pattern: str
    reason: str
    action: str = "remove"


@dataclasses.dataclass(frozen=True)
class ProtectedIndex:
    name: str
    drop_pattern: str
    create_pattern: str
    description: str


@dataclasses.dataclass(frozen=True)
class SafetyRule:
    subject: str
    dangerous_shape: str
    reason: str
    mitigating_shape: str | None = None

    def ignore_pattern(self) -> IgnorePattern:
        return IgnorePattern(pattern=self.dangerous_shape, reason=self.reason)

    def protected_index(self) -> ProtectedIndex | None:
        if not self.mitigating_shape:
            return None
        return ProtectedIndex(
            name=self.subject,
            drop_pattern=self.dangerous_shape,
            create_pattern=self.mitigating_shape,
            description=self.reason,
        )


DEFAULT_RULES: tuple[SafetyRule, ...] = (
    SafetyRule(
        subject="idx_memories_embedding",
        dangerous_shape=r'DROP INDEX.*"?idx_memories_embedding"?',
        mitigating_shape=r'CREATE INDEX.*"?idx_memories_embedding"?',
        reason="HNSW vector index (pgvector) cannot be expressed in schema.prisma",
    ),
    SafetyRule(
        subject="memories_chunk_group_id_idx",
        dangerous_shape=r'DROP INDEX.*"?memories_chunk_group_id_idx"?',
        mitigating_shape=r'CREATE INDEX.*"?memories_chunk_group_id_idx"?',
        reason="partial index (WHERE clause) cannot be expressed in schema.prisma",
    ),
)


@dataclasses.dataclass(frozen=True)
class SafetyConfig:
    rules: tuple[SafetyRule, ...]
    extra_patterns: tuple[IgnorePattern, ...] = ()
    source: str = "built-in defaults"

    @property
    def ignore_patterns(self) -> list[IgnorePattern]:
        patterns = [rule.ignore_pattern() for rule in self.rules]
        seen = {p.pattern for p in patterns}
        for pattern in self.extra_patterns:
            if pattern.pattern not in seen:
                patterns.append(pattern)
                seen.add(pattern.pattern)
        return patterns

    @property
    def protected_indexes(self) -> list[ProtectedIndex]:
        return [idx for idx in (rule.protected_index() for rule in self.rules) if idx is not None]


def warn(message: str) -> None:
    print(f"[warn] {message}", file=sys.stderr)


def checksum(data: bytes) -> str:
    """SHA-256 over the exact bytes, the digest the migration ledger records."""
    return hashlib.sha256(data).hexdigest()


def checksum_file(path: Path) -> str:
    return checksum(Path(path).read_bytes())


def write_sql(path: Path, text: str) -> None:
    # Bytes on disk must equal the bytes that get checksummed; no newline translation.
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(text.encode("utf-8"))


def read_sql(path: Path) -> str:
    return Path(path).read_bytes().decode("utf-8")


def parse_rules(entries: Iterable[dict]) -> list[SafetyRule]:
    rules: list[SafetyRule] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("subject") or not entry.get("dangerousShape"):
            warn(f"skipping malformed rule: {entry!r}")
            continue
        rules.append(
            SafetyRule(
                subject=str(entry["subject"]),
                dangerous_shape=str(entry["dangerousShape"]),
                mitigating_shape=str(entry["mitigatingShape"]) if entry.get("mitigatingShape") else None,
                reason=str(entry.get("reason", "")),
            )
        )
    return rules


def parse_ignore_patterns(entries: Iterable[dict]) -> list[IgnorePattern]:
    patterns: list[IgnorePattern] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("pattern"):
            warn(f"skipping malformed ignore pattern: {entry!r}")
            continue
        action = str(entry.get("action", "remove"))
        if action != "remove":
            warn(f"unsupported action {action!r} for pattern {entry['pattern']!r}; skipping")
            continue
        patterns.append(IgnorePattern(pattern=str(entry["pattern"]), reason=str(entry.get("reason", ""))))
    return patterns


def validate_patterns(config: SafetyConfig) -> None:
    fragments = [p.pattern for p in config.ignore_patterns]
    for idx in config.protected_indexes:
        fragments.extend([idx.drop_pattern, idx.create_pattern])
    for fragment in fragments:
        try:
            re.compile(fragment)
        except re.error as exc:
            raise ConfigError(
                f"invalid pattern {fragment!r} in {config.source}: {exc}",
                hint="fix the pattern in the migration safety config and re-run",
            ) from exc


def load_config(path: Path | None = None) -> SafetyConfig:
    """Read the rule table fresh from disk, falling back to DEFAULT_RULES.

    The artifact is JSON; it is parsed with the YAML loader, so YAML is accepted too.
    """
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        warn(f"could not read migration safety config {path} ({exc}); using built-in defaults")
        return SafetyConfig(rules=DEFAULT_RULES)

    if not isinstance(raw, dict):
        warn(f"migration safety config {path} is not an object; using built-in defaults")
        return SafetyConfig(rules=DEFAULT_RULES)

    extra = parse_ignore_patterns(raw.get("ignorePatterns") or [])
    if "rules" not in raw:
        # Plain ignorePatterns files still get the built-in protected indexes.
        rules = list(DEFAULT_RULES)
    else:
        rules = parse_rules(raw.get("rules") or [])
    if not rules and not extra:
        warn(f"migration safety config {path} defines no rules; using built-in defaults")
        return SafetyConfig(rules=DEFAULT_RULES)
    if not rules:
        warn(f"migration safety config {path} has an empty rules list; no indexes are protected")

    config = SafetyConfig(rules=tuple(rules), extra_patterns=tuple(extra), source=str(path))
    validate_patterns(config)
    return config


@dataclasses.dataclass(frozen=True)
class RemovedStatement:
    statement: str
    reason: str


@dataclasses.dataclass
class SanitizationResult:
    sanitized_text: str
    removed: list[RemovedStatement]

    @property
    def changed(self) -> bool:
        return bool(self.removed)


def compile_removal_pattern(fragment: str) -> re.Pattern[str]:
    # Whole line containing the fragment, skipping lines that are already SQL comments.
    return re.compile(rf"^(?![ \t]*--)(.*(?:{fragment}).*)$", flags=re.I | re.M)


def sanitize_sql(sql_text: str, patterns: Iterable[IgnorePattern]) -> SanitizationResult:
    removed: list[RemovedStatement] = []
    text = sql_text

    for pattern in patterns:
        regex = compile_removal_pattern(pattern.pattern)

        def annotate(match: re.Match[str], reason: str = pattern.reason) -> str:
            line = match.group(1)
            removed.append(RemovedStatement(statement=line.strip(), reason=reason))
            return f"{REMOVED_PREFIX}{line}"

        text = regex.sub(annotate, text)

    # Three or more line breaks become one blank line, keeping the file's own line ending.
    text = BLANK_RUN_RE.sub(lambda m: m.group(1) * 2, text)
    return SanitizationResult(sanitized_text=text, removed=removed)


def format_removed(removed: list[RemovedStatement]) -> str:
    lines = [f"Removed {len(removed)} statement(s):"]
    for item in removed:
        lines.append(f"  - {item.statement}")
        lines.append(f"    reason: {item.reason}")
    return "\n".join(lines)


@dataclasses.dataclass(frozen=True)
class Violation:
    path: Path
    index: ProtectedIndex


def strip_line_comments(sql_text: str) -> str:
    return "\n".join(line for line in sql_text.splitlines() if not line.lstrip().startswith("--"))


def scan_sql(sql_text: str, protected_indexes: Iterable[ProtectedIndex]) -> list[ProtectedIndex]:
    body = strip_line_comments(sql_text)
    unsafe: list[ProtectedIndex] = []
    for idx in protected_indexes:
        dropped = re.search(idx.drop_pattern, body, flags=re.I)
        recreated = re.search(idx.create_pattern, body, flags=re.I)
        if dropped and not recreated:
            unsafe.append(idx)
    return unsafe


def scan_migrations(root: Path, protected_indexes: Iterable[ProtectedIndex]) -> list[Violation]:
    root = Path(root)
    if not root.is_dir():
        raise MigrationSafetyError(
            f"migrations directory not found: {root}",
            hint="pass the migrations root with --path (e.g. --path prisma/migrations)",
        )
    protected = list(protected_indexes)
    violations: list[Violation] = []
    for path in sorted(root.rglob("*.sql")):
        raw = path.read_bytes()
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            warn(f"{path} is not valid UTF-8 ({exc.reason} at byte {exc.start}); scanning it with replacements")
            text = raw.decode("utf-8", errors="replace")
        for idx in scan_sql(text, protected):
            violations.append(Violation(path=path, index=idx))
    return violations


def format_violations(violations: list[Violation], root: Path | None = None) -> str:
    if not violations:
        return "[scan] no protected index violations found"

    by_file: dict[Path, list[ProtectedIndex]] = defaultdict(list)
    for violation in violations:
        by_file[violation.path].append(violation.index)

    lines = [f"[scan] {len(violations)} protected index violation(s) in {len(by_file)} file(s):", ""]
    for path, indexes in by_file.items():
        shown = path.relative_to(root) if root is not None and path.is_relative_to(root) else path
        lines.append(f"{shown}")
        for idx in indexes:
            lines.append(f"  - {idx.name} is dropped but never recreated")
            lines.append(f"    {idx.description}")
        lines.append("")
    lines.append(
        "Comment out the DROP with a `-- REMOVED:` prefix or add the matching CREATE INDEX "
        "in the same migration file."
    )
    return "\n".join(lines)
