"""
Rollback Manager
================

Reverses a completed migration by renaming every deprecated element back
to its original name. The reverse statements run in one transaction so a
rollback either restores the whole batch or nothing.

Sequence:
1. Backup gate (require_backup / validate_before_rollback)
2. Pre-flight: deprecated names exist, original names are free
3. Reverse renames in one transaction, bounded by timeout_seconds
4. Post-validation: original names exist again
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dbretire.backup import BackupValidationResult, BackupValidator
from dbretire.clock import Clock, utc_now
from dbretire.config import RollbackConfig
from dbretire.elements import DeprecatedElement
from dbretire.errors import BackupInvalidError
from dbretire.migration import Migration, estimate_duration
from dbretire.repository import SchemaRepository

logger = logging.getLogger(__name__)

LONG_ROLLBACK_SECONDS = 300
FORBIDDEN_KEYWORDS = ("DROP", "TRUNCATE")


@dataclass
class RollbackStep:
    element: DeprecatedElement
    sql: str
    # Name that must exist once the step has run
    validation: str


@dataclass
class RollbackPlan:
    migration_id: str
    steps: List[RollbackStep]
    estimated_duration_seconds: int = 0

    def to_dict(self) -> dict:
        return {
            "migration_id": self.migration_id,
            "steps": [
                {"element": s.element.deprecated_name, "sql": s.sql, "validation": s.validation}
                for s in self.steps
            ],
            "estimated_duration_seconds": self.estimated_duration_seconds,
        }


@dataclass
class RollbackResult:
    success: bool
    rollback_id: str
    migration_id: str
    completed_steps: int = 0
    total_steps: int = 0
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    backup_id: Optional[str] = None
    backup_validation: Optional[BackupValidationResult] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "rollback_id": self.rollback_id,
            "migration_id": self.migration_id,
            "completed_steps": self.completed_steps,
            "total_steps": self.total_steps,
            "errors": self.errors,
            "duration_seconds": self.duration_seconds,
            "backup_id": self.backup_id,
            "backup_validation": self.backup_validation.to_dict() if self.backup_validation else None,
        }


class RollbackManager:
    """Plans, dry-runs and executes migration rollbacks."""

    def __init__(
        self,
        repository: SchemaRepository,
        backup_validator: Optional[BackupValidator] = None,
        config: Optional[RollbackConfig] = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.backup_validator = backup_validator
        self.config = config or RollbackConfig()
        self.clock = clock

    def create_rollback_plan(self, migration: Migration) -> RollbackPlan:
        """Reverse renames in reverse execution order."""
        quote = self.repository.quote_identifier
        steps = [
            RollbackStep(element=e, sql=e.reverse_sql(quote), validation=e.original_name)
            for e in reversed(migration.elements)
        ]
        return RollbackPlan(
            migration_id=migration.id,
            steps=steps,
            estimated_duration_seconds=estimate_duration(migration.elements, {}),
        )

    async def _preflight(self, plan: RollbackPlan) -> List[str]:
        issues = []
        for step in plan.steps:
            element = step.element
            kind = element.element_type
            if not await self.repository.object_exists(kind, element.schema, element.deprecated_name):
                issues.append(f"Deprecated {kind.value} '{element.deprecated_name}' no longer exists")
            if await self.repository.object_exists(kind, element.schema, element.original_name):
                issues.append(f"Original name '{element.original_name}' is already taken")
        return issues

    async def test_rollback_plan(self, migration: Migration) -> Dict[str, Any]:
        """Dry run: pre-flight only, nothing is executed."""
        plan = self.create_rollback_plan(migration)
        issues = await self._preflight(plan)
        warnings = []

        for step in plan.steps:
            upper = step.sql.upper()
            for keyword in FORBIDDEN_KEYWORDS:
                if keyword in upper.split():
                    issues.append(f"Step for '{step.element.deprecated_name}' contains {keyword}")

        if plan.estimated_duration_seconds > LONG_ROLLBACK_SECONDS:
            warnings.append(
                f"Rollback is estimated at {plan.estimated_duration_seconds}s; "
                "consider a maintenance window"
            )
        if not migration.metadata.backup_id:
            warnings.append("Migration has no backup to fall back on")

        return {
            "can_execute": not issues,
            "issues": issues,
            "warnings": warnings,
            "plan": plan.to_dict(),
        }

    async def _check_backup(self, migration: Migration) -> Optional[BackupValidationResult]:
        backup_id = migration.metadata.backup_id

        if self.config.require_backup:
            if not backup_id or self.backup_validator is None:
                raise BackupInvalidError(f"Migration {migration.id} has no backup and a backup is required")
            validation = await self.backup_validator.validate_backup(backup_id)
            if not validation.passed:
                raise BackupInvalidError(
                    f"Backup {backup_id} failed validation (score {validation.score})",
                    validation=validation,
                )
            return validation

        if self.config.validate_before_rollback and backup_id and self.backup_validator is not None:
            validation = await self.backup_validator.validate_backup(backup_id)
            if not validation.passed:
                logger.warning(
                    "Backup %s failed validation (score %d); continuing rollback of %s",
                    backup_id, validation.score, migration.id,
                )
            return validation

        return None

    async def rollback(self, migration: Migration) -> RollbackResult:
        """Execute the rollback. Raises BackupInvalidError from the backup gate."""
        started = time.perf_counter()
        plan = self.create_rollback_plan(migration)
        result = RollbackResult(
            success=False,
            rollback_id=f"rb_{self.clock().strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(3)}",
            migration_id=migration.id,
            total_steps=len(plan.steps),
            backup_id=migration.metadata.backup_id,
        )

        result.backup_validation = await self._check_backup(migration)

        issues = await self._preflight(plan)
        if issues:
            result.errors.extend(issues)
            return self._finish(result, started)

        try:
            await asyncio.wait_for(
                self.repository.execute_in_transaction([s.sql for s in plan.steps]),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            result.errors.append(f"Rollback timed out after {self.config.timeout_seconds}s")
            return self._finish(result, started)
        except Exception as e:
            logger.exception("Rollback transaction for %s failed", migration.id)
            result.errors.append(f"Rollback transaction failed: {e}")
            return self._finish(result, started)

        result.completed_steps = len(plan.steps)
        for step in plan.steps:
            kind = step.element.element_type
            if not await self.repository.object_exists(kind, step.element.schema, step.validation):
                result.errors.append(f"'{step.validation}' is missing after rollback")

        result.success = not result.errors
        return self._finish(result, started)

    def _finish(self, result: RollbackResult, started: float) -> RollbackResult:
        result.duration_seconds = round(time.perf_counter() - started, 3)
        if result.success:
            logger.info("Rolled back %s in %.3fs", result.migration_id, result.duration_seconds)
        else:
            logger.error("Rollback of %s failed: %s", result.migration_id, "; ".join(result.errors))
        return result
