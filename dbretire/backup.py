"""
Backup Validator
================

Creates pre-migration snapshots of the tables a migration touches and
validates that a snapshot is intact before a rollback relies on it.

A backup is two files in the backup directory:
- {backup_id}.json       schema snapshot, element list and all table rows
- {backup_id}.meta.json  size, sha256 checksum and row counts

Validation levels run cumulative batteries of checks:
- basic:         file exists, metadata present, size limit, checksum
- full:          + readable payload, row-count parity, element list
- comprehensive: + read transaction on the live database, restore size

Usage:
    validator = BackupValidator(config.backup, repository)
    meta = await validator.create_backup(migration.id, migration.elements)
    result = await validator.validate_backup(meta.backup_id)
"""

import hashlib
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from dbretire.clock import Clock, parse_timestamp, utc_now
from dbretire.config import BackupConfig
from dbretire.elements import DeprecatedElement, ElementType
from dbretire.errors import ValidationError
from dbretire.repository import SchemaRepository

logger = logging.getLogger(__name__)

_BACKUP_ID_RE = re.compile(r"^[A-Za-z0-9_\-]+$")
RESTORE_SIZE_WARNING_BYTES = 1024 ** 3


@dataclass
class BackupMetadata:
    backup_id: str
    migration_id: str
    created_at: datetime
    size_bytes: int
    sha256: str
    row_counts: Dict[str, int] = field(default_factory=dict)
    elements: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "backup_id": self.backup_id,
            "migration_id": self.migration_id,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
            "row_counts": self.row_counts,
            "elements": self.elements,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BackupMetadata":
        return cls(
            backup_id=data["backup_id"],
            migration_id=data["migration_id"],
            created_at=parse_timestamp(data["created_at"]),
            size_bytes=data["size_bytes"],
            sha256=data["sha256"],
            row_counts=data.get("row_counts", {}),
            elements=data.get("elements", []),
        )


@dataclass
class ValidationCheck:
    name: str
    passed: bool
    message: str
    severity: str  # low, medium, high, critical
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }


@dataclass
class BackupValidationResult:
    id: str
    backup_id: str
    timestamp: datetime
    passed: bool
    validation_level: str
    checks: List[ValidationCheck]
    duration_ms: float
    score: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "backup_id": self.backup_id,
            "timestamp": self.timestamp.isoformat(),
            "passed": self.passed,
            "validation_level": self.validation_level,
            "checks": [c.to_dict() for c in self.checks],
            "duration_ms": self.duration_ms,
            "score": self.score,
        }


class BackupValidator:
    """Create and validate pre-migration backups."""

    def __init__(
        self,
        config: Optional[BackupConfig] = None,
        repository: Optional[SchemaRepository] = None,
        clock: Clock = utc_now,
    ):
        self.config = config or BackupConfig()
        self.repository = repository
        self.clock = clock

    @property
    def backup_dir(self) -> Path:
        return Path(self.config.backup_directory)

    def _paths(self, backup_id: str):
        if not _BACKUP_ID_RE.match(backup_id or ""):
            raise ValidationError(f"Invalid backup id '{backup_id}'")
        return self.backup_dir / f"{backup_id}.json", self.backup_dir / f"{backup_id}.meta.json"

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_backup(
        self,
        migration_id: str,
        elements: Sequence[DeprecatedElement],
        repository: Optional[SchemaRepository] = None,
    ) -> BackupMetadata:
        """Snapshot every table touched by the elements."""
        repository = repository or self.repository
        if repository is None:
            raise ValidationError("Creating a backup requires a schema repository")

        now = self.clock()
        backup_id = f"bk_{now.strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(3)}"

        tables: Dict[str, Dict[str, Any]] = {}
        for element in elements:
            table_name = element.parent_table
            if element.element_type == ElementType.INDEX or not table_name:
                continue
            key = f"{element.schema}.{table_name}"
            if key in tables:
                continue
            tables[key] = {
                "columns": await repository.describe_table(element.schema, table_name),
                "rows": await repository.fetch_rows(element.schema, table_name),
            }

        payload = {
            "backup_id": backup_id,
            "migration_id": migration_id,
            "created_at": now.isoformat(),
            "elements": [e.to_dict() for e in elements],
            "tables": tables,
        }
        content = json.dumps(payload, default=str).encode("utf-8")

        data_path, meta_path = self._paths(backup_id)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        data_path.write_bytes(content)

        meta = BackupMetadata(
            backup_id=backup_id,
            migration_id=migration_id,
            created_at=now,
            size_bytes=len(content),
            sha256=hashlib.sha256(content).hexdigest(),
            row_counts={k: len(v["rows"]) for k, v in tables.items()},
            elements=[e.original_name for e in elements],
        )
        meta_path.write_text(json.dumps(meta.to_dict(), indent=2), encoding="utf-8")
        logger.info("Created backup %s for migration %s (%d bytes)", backup_id, migration_id, meta.size_bytes)
        return meta

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate_backup(self, backup_id: str, level: Optional[str] = None) -> BackupValidationResult:
        """Run the check battery for the configured (or given) level.

        A malformed backup id raises ValidationError; an unknown one fails
        the file-exists check.
        """
        level = level or self.config.verification_level
        self._paths(backup_id)
        started = time.perf_counter()
        try:
            checks = await self._run_checks(backup_id, level)
        except Exception as e:
            logger.exception("Backup validation of %s raised", backup_id)
            checks = [ValidationCheck("validation-error", False, f"{type(e).__name__}: {e}", "critical")]
            return self._result(backup_id, level, checks, started, score=0)
        return self._result(backup_id, level, checks, started)

    def _result(self, backup_id, level, checks, started, score=None) -> BackupValidationResult:
        passed_count = sum(1 for c in checks if c.passed)
        if score is None:
            score = round(passed_count / len(checks) * 100) if checks else 0
        return BackupValidationResult(
            id=f"val_{secrets.token_hex(4)}",
            backup_id=backup_id,
            timestamp=self.clock(),
            passed=all(c.passed or c.severity == "low" for c in checks),
            validation_level=level,
            checks=checks,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            score=score,
        )

    async def _run_checks(self, backup_id: str, level: str) -> List[ValidationCheck]:
        data_path, meta_path = self._paths(backup_id)
        checks: List[ValidationCheck] = []

        exists = data_path.exists()
        checks.append(ValidationCheck(
            "file-exists", exists,
            f"Backup file {data_path}" + (" found" if exists else " is missing"),
            "critical",
        ))

        meta: Optional[BackupMetadata] = None
        if meta_path.exists():
            try:
                meta = BackupMetadata.from_dict(json.loads(meta_path.read_text(encoding="utf-8")))
            except (ValueError, KeyError) as e:
                logger.warning("Unreadable backup metadata %s: %s", meta_path, e)
        checks.append(ValidationCheck(
            "metadata-present", meta is not None,
            "Backup metadata loaded" if meta else "Backup metadata is missing or unreadable",
            "critical",
        ))

        size = data_path.stat().st_size if exists else 0
        limit = self.config.max_backup_size_mb * 1024 * 1024
        checks.append(ValidationCheck(
            "size-within-limit", exists and 0 < size <= limit,
            f"Backup is {size} bytes (limit {limit})",
            "high",
            {"size_bytes": size},
        ))

        content = data_path.read_bytes() if exists else b""
        digest = hashlib.sha256(content).hexdigest() if exists else None
        checksum_ok = bool(meta and digest == meta.sha256)
        checks.append(ValidationCheck(
            "checksum-match", checksum_ok,
            "Checksum matches metadata" if checksum_ok else "Checksum does not match metadata",
            "critical",
        ))

        if level in ("full", "comprehensive"):
            checks.extend(self._payload_checks(content, meta))

        if level == "comprehensive":
            checks.append(await self._read_transaction_check())
            checks.append(ValidationCheck(
                "restore-size", size < RESTORE_SIZE_WARNING_BYTES,
                "Restore size is manageable" if size < RESTORE_SIZE_WARNING_BYTES
                else f"Restoring {size} bytes will be slow",
                "low",
            ))

        return checks

    def _payload_checks(self, content: bytes, meta: Optional[BackupMetadata]) -> List[ValidationCheck]:
        try:
            payload = json.loads(content.decode("utf-8")) if content else None
        except (UnicodeDecodeError, ValueError):
            payload = None
        readable = isinstance(payload, dict) and "tables" in payload
        checks = [ValidationCheck(
            "readable", readable,
            "Backup payload parsed" if readable else "Backup payload cannot be parsed",
            "critical",
        )]

        if not readable or meta is None:
            checks.append(ValidationCheck("row-count-parity", False, "Cannot compare row counts", "high"))
            checks.append(ValidationCheck("elements-recorded", False, "Cannot compare element lists", "medium"))
            return checks

        actual = {k: len(v.get("rows", [])) for k, v in payload["tables"].items()}
        mismatched = {
            k: {"expected": meta.row_counts.get(k), "actual": actual.get(k)}
            for k in set(actual) | set(meta.row_counts)
            if actual.get(k) != meta.row_counts.get(k)
        }
        checks.append(ValidationCheck(
            "row-count-parity", not mismatched,
            "Row counts match metadata" if not mismatched else f"Row counts differ for {sorted(mismatched)}",
            "high",
            {"mismatched": mismatched},
        ))

        recorded = sorted(e["original_name"] for e in payload.get("elements", []))
        same = recorded == sorted(meta.elements)
        checks.append(ValidationCheck(
            "elements-recorded", same,
            "Element list matches metadata" if same else "Element list differs from metadata",
            "medium",
        ))
        return checks

    async def _read_transaction_check(self) -> ValidationCheck:
        if self.repository is None:
            return ValidationCheck("read-transaction", False, "No database repository configured", "medium")
        try:
            ok = await self.repository.check_read_transaction()
        except Exception as e:
            return ValidationCheck("read-transaction", False, f"Read transaction failed: {e}", "medium")
        return ValidationCheck("read-transaction", ok, "Opened a read transaction", "medium")

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def list_backups(self) -> List[BackupMetadata]:
        """Newest first."""
        if not self.backup_dir.exists():
            return []
        backups = []
        for meta_path in self.backup_dir.glob("*.meta.json"):
            try:
                backups.append(BackupMetadata.from_dict(json.loads(meta_path.read_text(encoding="utf-8"))))
            except (ValueError, KeyError) as e:
                logger.warning("Skipping unreadable backup metadata %s: %s", meta_path, e)
        return sorted(backups, key=lambda b: b.created_at, reverse=True)

    def get_backup_statistics(self) -> Dict[str, Any]:
        backups = self.list_backups()
        return {
            "count": len(backups),
            "total_size_bytes": sum(b.size_bytes for b in backups),
            "newest": backups[0].created_at.isoformat() if backups else None,
            "oldest": backups[-1].created_at.isoformat() if backups else None,
            "directory": str(self.backup_dir),
        }

    def cleanup_old_backups(self) -> int:
        """Delete backups older than retention_days; returns how many."""
        cutoff = self.clock() - timedelta(days=self.config.retention_days)
        removed = 0
        for meta in self.list_backups():
            if meta.created_at >= cutoff:
                continue
            for path in self._paths(meta.backup_id):
                path.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info("Removed %d backups older than %d days", removed, self.config.retention_days)
        return removed

    def validate_backup_requirements(self, environment: str) -> List[str]:
        problems = []
        if environment == "production" and not self.config.enabled:
            problems.append("Backups must be enabled in production")
        if environment == "production" and self.config.verification_level == "basic":
            problems.append("Production backups should use full or comprehensive verification")
        if self.config.enabled:
            if self.backup_dir.exists() and not self.backup_dir.is_dir():
                problems.append(f"Backup path {self.backup_dir} is not a directory")
        return problems
