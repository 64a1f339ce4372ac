import contextlib
import hashlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from migration_safety import (
    DEFAULT_RULES,
    ConfigError,
    IgnorePattern,
    MigrationSafetyError,
    ProtectedIndex,
    SafetyConfig,
    SafetyRule,
    checksum,
    checksum_file,
    format_violations,
    load_config,
    sanitize_sql,
    scan_migrations,
    scan_sql,
    write_sql,
)


VEC_PATTERN = IgnorePattern(pattern="DROP INDEX.*idx_vec", reason="vector index")
PROTECTED = ProtectedIndex(
    name="idx_protected",
    drop_pattern=r'DROP INDEX.*"?idx_protected"?',
    create_pattern=r'CREATE INDEX.*"?idx_protected"?',
    description="partial index",
)


class TestChecksum(unittest.TestCase):
    def test_matches_sha256_hex(self) -> None:
        data = b"CREATE TABLE t (id INT);\n"
        self.assertEqual(checksum(data), hashlib.sha256(data).hexdigest())
        self.assertEqual(len(checksum(data)), 64)

    def test_is_deterministic(self) -> None:
        data = b"ALTER TABLE t ADD COLUMN x INT;\n"
        self.assertEqual(checksum(data), checksum(bytes(data)))

    def test_single_byte_change_flips_digest(self) -> None:
        self.assertNotEqual(checksum(b"SELECT 1;\n"), checksum(b"SELECT 2;\n"))

    def test_file_checksum_uses_raw_bytes(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "migration.sql"
            path.write_bytes(b"SELECT 1;\r\nSELECT 2;\r\n")
            self.assertEqual(checksum_file(path), checksum(b"SELECT 1;\r\nSELECT 2;\r\n"))
            self.assertNotEqual(checksum_file(path), checksum(b"SELECT 1;\nSELECT 2;\n"))

    def test_write_sql_preserves_bytes(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "migration.sql"
            write_sql(path, "SELECT 1;\r\n")
            self.assertEqual(path.read_bytes(), b"SELECT 1;\r\n")


class TestSanitize(unittest.TestCase):
    def test_comments_out_matching_line(self) -> None:
        sql = 'DROP INDEX "idx_vec";\nALTER TABLE t ADD COLUMN x INT;\n'
        result = sanitize_sql(sql, [VEC_PATTERN])
        self.assertEqual(
            result.sanitized_text,
            '-- REMOVED: DROP INDEX "idx_vec";\nALTER TABLE t ADD COLUMN x INT;\n',
        )
        self.assertEqual(len(result.removed), 1)
        self.assertEqual(result.removed[0].statement, 'DROP INDEX "idx_vec";')
        self.assertEqual(result.removed[0].reason, "vector index")

    def test_matching_is_case_insensitive(self) -> None:
        result = sanitize_sql('drop index "IDX_VEC";\n', [VEC_PATTERN])
        self.assertEqual(result.sanitized_text, '-- REMOVED: drop index "IDX_VEC";\n')

    def test_sanitizing_twice_removes_nothing_new(self) -> None:
        sql = '-- DropIndex\nDROP INDEX "idx_vec";\n\nCREATE TABLE t (id INT);\n'
        first = sanitize_sql(sql, [VEC_PATTERN])
        second = sanitize_sql(first.sanitized_text, [VEC_PATTERN])
        self.assertEqual(second.removed, [])
        self.assertEqual(second.sanitized_text, first.sanitized_text)

    def test_output_is_deterministic(self) -> None:
        sql = 'DROP INDEX "idx_vec";\n\n\n\nDROP INDEX "idx_vec_2";\n'
        self.assertEqual(sanitize_sql(sql, [VEC_PATTERN]), sanitize_sql(sql, [VEC_PATTERN]))

    def test_collapses_runs_of_blank_lines(self) -> None:
        result = sanitize_sql("SELECT 1;\n\n\n\n\nSELECT 2;\n", [VEC_PATTERN])
        self.assertEqual(result.sanitized_text, "SELECT 1;\n\nSELECT 2;\n")
        self.assertEqual(result.removed, [])

    def test_single_blank_line_is_kept(self) -> None:
        sql = "SELECT 1;\n\nSELECT 2;\n"
        self.assertEqual(sanitize_sql(sql, [VEC_PATTERN]).sanitized_text, sql)

    def test_collapses_crlf_blank_runs_keeping_line_endings(self) -> None:
        result = sanitize_sql("SELECT 1;\r\n\r\n\r\n\r\nSELECT 2;\r\n", [VEC_PATTERN])
        self.assertEqual(result.sanitized_text, "SELECT 1;\r\n\r\nSELECT 2;\r\n")

    def test_first_matching_pattern_wins(self) -> None:
        patterns = [VEC_PATTERN, IgnorePattern(pattern="DROP INDEX", reason="any index drop")]
        result = sanitize_sql('DROP INDEX "idx_vec";\n', patterns)
        self.assertEqual(result.sanitized_text, '-- REMOVED: DROP INDEX "idx_vec";\n')
        self.assertEqual([r.reason for r in result.removed], ["vector index"])

    def test_existing_comments_are_left_alone(self) -> None:
        sql = '-- DROP INDEX "idx_vec" was here\n'
        result = sanitize_sql(sql, [VEC_PATTERN])
        self.assertEqual(result.sanitized_text, sql)
        self.assertEqual(result.removed, [])

    def test_every_matching_line_is_recorded(self) -> None:
        sql = 'DROP INDEX "idx_vec_a";\nSELECT 1;\nDROP INDEX "idx_vec_b";\n'
        result = sanitize_sql(sql, [VEC_PATTERN])
        self.assertEqual(len(result.removed), 2)
        self.assertIn("SELECT 1;\n", result.sanitized_text)


class TestScanner(unittest.TestCase):
    DROP = 'DROP INDEX "idx_protected";\n'
    CREATE = 'CREATE INDEX "idx_protected" ON "memories" ("chunk_group_id") WHERE "chunk_group_id" IS NOT NULL;\n'

    def test_drop_without_create_is_one_violation(self) -> None:
        self.assertEqual(scan_sql(self.DROP + "ALTER TABLE t ADD COLUMN x INT;\n", [PROTECTED]), [PROTECTED])

    def test_create_anywhere_in_file_clears_violation(self) -> None:
        self.assertEqual(scan_sql(self.CREATE + "SELECT 1;\n" + self.DROP, [PROTECTED]), [])
        self.assertEqual(scan_sql(self.DROP + "SELECT 1;\n" + self.CREATE, [PROTECTED]), [])

    def test_sanitized_drop_is_not_a_violation(self) -> None:
        pattern = IgnorePattern(pattern=PROTECTED.drop_pattern, reason=PROTECTED.description)
        sanitized = sanitize_sql(self.DROP, [pattern]).sanitized_text
        self.assertEqual(scan_sql(sanitized, [PROTECTED]), [])

    def test_matching_is_case_insensitive(self) -> None:
        self.assertEqual(scan_sql('drop index "IDX_PROTECTED";\n', [PROTECTED]), [PROTECTED])

    def test_scan_walks_nested_directories(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            write_sql(root / "20260101000000_init" / "migration.sql", self.CREATE)
            write_sql(root / "20260102000000_drop" / "migration.sql", self.DROP)
            write_sql(root / "20260103000000_both" / "migration.sql", self.DROP + self.CREATE)

            violations = scan_migrations(root, [PROTECTED])

            self.assertEqual(len(violations), 1)
            self.assertEqual(violations[0].path.parent.name, "20260102000000_drop")
            report = format_violations(violations, root)
            self.assertIn("20260102000000_drop", report)
            self.assertIn("idx_protected", report)

    def test_non_utf8_file_is_still_scanned(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            latin1 = root / "20260101000000_latin1" / "migration.sql"
            latin1.parent.mkdir()
            latin1.write_bytes(b"-- caf\xe9\n" + self.DROP.encode("utf-8"))
            write_sql(root / "20260102000000_clean" / "migration.sql", "SELECT 1;\n")

            err = io.StringIO()
            with contextlib.redirect_stderr(err):
                violations = scan_migrations(root, [PROTECTED])

        self.assertEqual([v.path.parent.name for v in violations], ["20260101000000_latin1"])
        self.assertIn("not valid UTF-8", err.getvalue())

    def test_missing_root_is_an_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(MigrationSafetyError):
                scan_migrations(Path(td) / "nope", [PROTECTED])

    def test_clean_report(self) -> None:
        self.assertIn("no protected index violations", format_violations([]))


class TestConfig(unittest.TestCase):
    def _load_quietly(self, path: Path) -> tuple[SafetyConfig, str]:
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            config = load_config(path)
        return config, stderr.getvalue()

    def test_missing_file_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            config, err = self._load_quietly(Path(td) / "missing.json")
        self.assertEqual(config.rules, DEFAULT_RULES)
        self.assertIn("[warn]", err)

    def test_malformed_file_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text('{"ignorePatterns": [', encoding="utf-8")
            config, err = self._load_quietly(path)
        self.assertEqual(config.rules, DEFAULT_RULES)
        self.assertIn("using built-in defaults", err)

    def test_rules_and_ignore_patterns_are_loaded(self) -> None:
        raw = {
            "rules": [
                {
                    "subject": "idx_vec",
                    "dangerousShape": "DROP INDEX.*idx_vec",
                    "mitigatingShape": "CREATE INDEX.*idx_vec",
                    "reason": "vector index",
                }
            ],
            "ignorePatterns": [
                {"pattern": "DROP EXTENSION.*vector", "reason": "extension", "action": "remove"},
                {"pattern": "DROP TABLE", "reason": "unsupported", "action": "warn"},
            ],
        }
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text(json.dumps(raw), encoding="utf-8")
            config, err = self._load_quietly(path)

        self.assertEqual(
            [p.pattern for p in config.ignore_patterns],
            ["DROP INDEX.*idx_vec", "DROP EXTENSION.*vector"],
        )
        self.assertEqual(
            config.protected_indexes,
            [ProtectedIndex("idx_vec", "DROP INDEX.*idx_vec", "CREATE INDEX.*idx_vec", "vector index")],
        )
        self.assertIn("unsupported action", err)

    def test_yaml_config_is_accepted(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.yaml"
            path.write_text(
                "ignorePatterns:\n  - pattern: DROP INDEX.*idx_vec\n    reason: vector index\n",
                encoding="utf-8",
            )
            config, _ = self._load_quietly(path)
        self.assertEqual(config.ignore_patterns[-1], VEC_PATTERN)
        self.assertEqual([i.name for i in config.protected_indexes], [r.subject for r in DEFAULT_RULES])

    def test_ignore_patterns_only_config_still_guards_default_indexes(self) -> None:
        raw = {"ignorePatterns": [{"pattern": "DROP INDEX.*idx_memories_embedding", "reason": "vector index"}]}
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            path = base / "config.json"
            path.write_text(json.dumps(raw), encoding="utf-8")
            write_sql(base / "migrations" / "20260101000000_drop" / "migration.sql", 'DROP INDEX "idx_memories_embedding";\n')
            config, _ = self._load_quietly(path)

            violations = scan_migrations(base / "migrations", config.protected_indexes)

        self.assertEqual([v.index.name for v in violations], ["idx_memories_embedding"])

    def test_explicit_empty_rules_warns(self) -> None:
        raw = {"rules": [], "ignorePatterns": [{"pattern": "DROP EXTENSION.*vector", "reason": "extension"}]}
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text(json.dumps(raw), encoding="utf-8")
            config, err = self._load_quietly(path)
        self.assertEqual(config.protected_indexes, [])
        self.assertIn("no indexes are protected", err)

    def test_invalid_regex_is_a_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text(json.dumps({"ignorePatterns": [{"pattern": "DROP (INDEX", "reason": "x"}]}), encoding="utf-8")
            with self.assertRaises(ConfigError):
                self._load_quietly(path)

    def test_rule_without_mitigation_only_removes(self) -> None:
        rule = SafetyRule(subject="vector_ext", dangerous_shape="DROP EXTENSION.*vector", reason="extension")
        config = SafetyConfig(rules=(rule,))
        self.assertEqual(config.ignore_patterns, [IgnorePattern("DROP EXTENSION.*vector", "extension")])
        self.assertEqual(config.protected_indexes, [])

    def test_default_rules_drive_both_views(self) -> None:
        config = SafetyConfig(rules=DEFAULT_RULES)
        self.assertEqual(len(config.ignore_patterns), len(DEFAULT_RULES))
        self.assertEqual([i.name for i in config.protected_indexes], [r.subject for r in DEFAULT_RULES])


if __name__ == "__main__":
    unittest.main()
