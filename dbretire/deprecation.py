"""
Deprecation System
==================

Orchestrates the lifecycle of a deprecation migration:

    plan ──> (approve) ──> execute ──> monitor ──> (rollback)

Planning gathers schema facts, runs the safety checks and persists the
migration without touching the schema. Execution renames every element
in one transaction and hands the elements to the monitor. Rollback goes
through the RollbackManager and its backup gate.

DeprecationContext wires every component from a DeprecationConfig so the
CLI (and embedding applications) get a ready system in one call:

    async with await DeprecationContext.open(config) as ctx:
        migration = await ctx.system.plan_deprecation(["table:orders_legacy"])
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncEngine

from dbretire.alerts import AlertSystem
from dbretire.backup import BackupValidator
from dbretire.clock import Clock, utc_now
from dbretire.config import DeprecationConfig
from dbretire.db import close_state_db, create_engine_for, init_state_db
from dbretire.elements import (
    DeprecatedElement,
    ElementSpec,
    ElementType,
    generate_deprecated_name,
    parse_reason,
)
from dbretire.errors import (
    ApprovalRequiredError,
    BackupInvalidError,
    ExecutionError,
    InvalidStateError,
    NotFoundError,
    RollbackError,
    UnsafeDeprecationError,
    ValidationError,
)
from dbretire.interceptor import QueryInterceptor
from dbretire.migration import (
    Migration,
    MigrationMetadata,
    MigrationPhase,
    estimate_duration,
    generate_migration_id,
)
from dbretire.monitor import DeprecatedMonitor
from dbretire.repository import SchemaRepository, SqlAlchemySchemaRepository
from dbretire.rollback import RollbackManager, RollbackResult
from dbretire.safety import (
    CheckContext,
    ElementMetadata,
    SafetyCheckEvaluator,
    aggregate_risk,
    critical_failures,
    requires_approval,
)
from dbretire.store import MigrationStore
from dbretire.telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

SpecLike = Union[str, ElementSpec]


class DeprecationSystem:
    """Plans, executes and rolls back deprecation migrations."""

    def __init__(
        self,
        repository: SchemaRepository,
        store: MigrationStore,
        monitor: DeprecatedMonitor,
        rollback_manager: Optional[RollbackManager] = None,
        backup_validator: Optional[BackupValidator] = None,
        config: Optional[DeprecationConfig] = None,
        evaluator: Optional[SafetyCheckEvaluator] = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.store = store
        self.monitor = monitor
        self.config = config or DeprecationConfig()
        self.backup_validator = backup_validator
        self.rollback_manager = rollback_manager or RollbackManager(
            repository, backup_validator, self.config.rollback, clock
        )
        self.evaluator = evaluator or SafetyCheckEvaluator(self.config.safety)
        self.clock = clock

    # =========================================================================
    # Planning
    # =========================================================================

    async def plan_deprecation(
        self,
        specs: Sequence[SpecLike],
        reason: str = "unused",
        created_by: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Migration:
        """
        Validate a batch of element specs and persist a planned migration.

        Args:
            specs: "type:name" strings or ElementSpec instances
            reason: DeprecationReason value
            created_by: Operator recorded on the migration
            options: Optional "schema" override and "notes" list

        Raises:
            ValidationError: Malformed spec, duplicate element or unknown reason
            UnsafeDeprecationError: A critical safety check failed
        """
        options = options or {}
        parsed = [ElementSpec.parse(s) if isinstance(s, str) else s for s in specs]
        if not parsed:
            raise ValidationError("At least one element is required")
        deprecation_reason = parse_reason(reason)

        now = self.clock()
        elements: List[DeprecatedElement] = []
        metadata: Dict[str, ElementMetadata] = {}
        seen: Set[Tuple[str, str, str]] = set()
        taken_by_namespace: Dict[Tuple[ElementType, str, Optional[str]], Set[str]] = {}

        for spec in parsed:
            schema = await self._resolve_schema(spec, options)
            identity = (spec.element_type.value, schema, spec.name.lower())
            if identity in seen:
                raise ValidationError(f"{spec.element_type.value} '{spec.name}' is listed twice")
            seen.add(identity)

            exists = await self.repository.object_exists(spec.element_type, schema, spec.name)
            namespace = (spec.element_type, schema, spec.table if spec.element_type.is_table_scoped else None)
            if namespace not in taken_by_namespace:
                taken_by_namespace[namespace] = await self._names_in(spec, schema)
            taken = taken_by_namespace[namespace]

            object_name = generate_deprecated_name(spec.object_name, now, taken)
            taken.add(object_name.lower())
            deprecated_name = f"{spec.table}.{object_name}" if spec.element_type.is_table_scoped else object_name

            element = DeprecatedElement(
                element_type=spec.element_type,
                schema=schema,
                original_name=spec.name,
                deprecated_name=deprecated_name,
                reason=deprecation_reason,
                deprecated_at=now,
            )
            elements.append(element)
            metadata[element.monitor_key] = await self._gather_metadata(element, exists)

        context = CheckContext(
            elements=elements,
            environment=self.config.environment,
            safety=self.config.safety,
            backups_enabled=self.config.backup.enabled,
        )
        results = self.evaluator.evaluate(elements, metadata, context)

        blocking = critical_failures(results)
        if blocking:
            summary = "; ".join(f"{r.element}: {r.message}" for r in blocking)
            raise UnsafeDeprecationError(f"Critical safety checks failed: {summary}", failures=blocking)

        risk = aggregate_risk(results)
        dependents = {key: len(meta.foreign_key_dependents) for key, meta in metadata.items()}
        migration = Migration(
            id=generate_migration_id(now),
            elements=elements,
            phase=MigrationPhase.PLANNED,
            timestamp=now,
            metadata=MigrationMetadata(
                risk_level=risk,
                estimated_duration_seconds=estimate_duration(elements, dependents),
                approval_required=requires_approval(risk) or self.config.safety.require_approval,
                created_by=created_by or "system",
                environment=self.config.environment,
                reason=deprecation_reason.value,
            ),
            safety_checks=[r.to_dict() for r in results],
            notes=list(options.get("notes", [])),
        )
        await self.store.save(migration)

        logger.info(
            "Planned %s: %d elements, risk %s%s",
            migration.id, len(elements), risk.label,
            ", approval required" if migration.metadata.approval_required else "",
        )
        return migration

    async def _resolve_schema(self, spec: ElementSpec, options: Dict[str, Any]) -> str:
        return (
            spec.schema
            or options.get("schema")
            or self.config.default_schema
            or await self.repository.get_default_schema()
        )

    async def _names_in(self, spec: ElementSpec, schema: str) -> Set[str]:
        """Names a renamed element could collide with."""
        if spec.element_type.is_table_scoped:
            if not await self.repository.object_exists(ElementType.TABLE, schema, spec.table):
                return set()
            names = await self.repository.list_names(spec.element_type, schema, spec.table)
        else:
            names = await self.repository.list_names(spec.element_type, schema)
        return {n.lower() for n in names}

    async def _gather_metadata(self, element: DeprecatedElement, exists: bool) -> ElementMetadata:
        meta = ElementMetadata(exists=exists)
        if not exists:
            return meta
        meta.deprecated_name_taken = await self.repository.object_exists(
            element.element_type, element.schema, element.deprecated_name
        )
        if element.element_type == ElementType.TABLE:
            meta.row_count = await self.repository.count_rows(element.schema, element.original_name)
            meta.foreign_key_dependents = await self.repository.foreign_key_dependents(
                element.schema, element.original_name
            )
        return meta

    # =========================================================================
    # Approval & Execution
    # =========================================================================

    async def _load(self, migration_id: str) -> Migration:
        migration = await self.store.get(migration_id)
        if migration is None:
            raise NotFoundError(f"Migration {migration_id} not found")
        return migration

    async def approve_migration(self, migration_id: str, approved_by: str) -> Migration:
        migration = await self._load(migration_id)
        migration.approve(approved_by, self.clock())
        await self.store.save(migration)
        logger.info("Migration %s approved by %s", migration_id, approved_by)
        return migration

    async def execute_deprecation(self, migration_id: str) -> Migration:
        """
        Rename every element of a planned migration in one transaction.

        Raises:
            NotFoundError: Unknown migration id
            InvalidStateError: Migration is not planned
            ApprovalRequiredError: Approval is required but missing
            ExecutionError: Pre-flight, backup or rename transaction failed
        """
        migration = await self._load(migration_id)
        if migration.phase != MigrationPhase.PLANNED:
            raise InvalidStateError(
                f"Migration {migration_id} is {migration.phase.value}; only planned migrations can be executed"
            )
        if migration.metadata.approval_required and not migration.is_approved:
            raise ApprovalRequiredError(
                f"Migration {migration_id} has {migration.metadata.risk_level.label} risk and must be approved first"
            )

        migration.transition_to(MigrationPhase.EXECUTING, self.clock())
        await self.store.save(migration)

        if not self.repository.supports_transactional_ddl:
            # No transactional DDL: validate every rename before the first statement
            issues = await self._preflight(migration)
            if issues:
                await self._fail(migration, "Pre-flight failed: " + "; ".join(issues))
                raise ExecutionError(f"Migration {migration_id} failed pre-flight; no element was renamed: {issues[0]}")

        if self.config.backup.enabled and self.backup_validator is not None:
            try:
                backup = await self.backup_validator.create_backup(migration.id, migration.elements, self.repository)
            except Exception as e:
                await self._fail(migration, f"Backup failed: {e}")
                raise ExecutionError(f"Backup for migration {migration_id} failed: {e}") from e
            migration.metadata.backup_id = backup.backup_id

        statements = [e.rename_sql(self.repository.quote_identifier) for e in migration.elements]
        outcome = (
            "no element was renamed" if self.repository.supports_transactional_ddl
            else "some elements may already be renamed"
        )
        try:
            await asyncio.wait_for(
                self.repository.execute_in_transaction(statements),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            await self._fail(migration, f"Rename transaction timed out after {self.config.timeout_seconds}s")
            raise ExecutionError(f"Migration {migration_id} timed out; {outcome}") from e
        except Exception as e:
            logger.exception("Rename transaction for %s failed", migration_id)
            await self._fail(migration, f"Rename transaction failed: {e}")
            raise ExecutionError(f"Migration {migration_id} failed; {outcome}: {e}") from e

        migration.transition_to(
            MigrationPhase.COMPLETED,
            self.clock(),
            f"Renamed {len(migration.elements)} elements",
        )
        await self.store.save(migration)

        for element in migration.elements:
            self.monitor.start_monitoring(element)

        logger.info("Executed %s", migration_id)
        return migration

    async def _preflight(self, migration: Migration) -> List[str]:
        """Every original name still present and every deprecated name still free."""
        issues = []
        for element in migration.elements:
            kind = element.element_type
            if not await self.repository.object_exists(kind, element.schema, element.original_name):
                issues.append(f"{kind.value} '{element.original_name}' no longer exists")
            if await self.repository.object_exists(kind, element.schema, element.deprecated_name):
                issues.append(f"Deprecated name '{element.deprecated_name}' is already taken")
        return issues

    async def _fail(self, migration: Migration, note: str) -> None:
        migration.transition_to(MigrationPhase.FAILED, self.clock(), note)
        await self.store.save(migration)

    # =========================================================================
    # Rollback
    # =========================================================================

    async def rollback_migration(self, migration_id: str) -> RollbackResult:
        """
        Restore the original names of a completed migration.

        Raises:
            NotFoundError, InvalidStateError
            BackupInvalidError: Backup gate refused the rollback
            RollbackError: Pre-flight or reverse transaction failed
        """
        migration = await self._load(migration_id)
        if not migration.can_transition_to(MigrationPhase.ROLLED_BACK):
            raise InvalidStateError(
                f"Migration {migration_id} is {migration.phase.value}; only completed migrations can be rolled back"
            )

        try:
            result = await self.rollback_manager.rollback(migration)
        except BackupInvalidError as e:
            migration.add_note(f"Rollback refused: {e}")
            await self.store.save(migration)
            raise

        if not result.success:
            migration.add_note("Rollback failed: " + "; ".join(result.errors))
            await self.store.save(migration)
            raise RollbackError(f"Rollback of {migration_id} failed: {'; '.join(result.errors)}", result=result)

        migration.transition_to(MigrationPhase.ROLLED_BACK, self.clock(), f"Rolled back as {result.rollback_id}")
        await self.store.save(migration)
        for element in migration.elements:
            self.monitor.stop_monitoring(element)
        return result

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_migration(self, migration_id: str) -> Migration:
        return await self._load(migration_id)

    async def list_migrations(self, limit: Optional[int] = None) -> List[Migration]:
        return await self.store.list(limit)

    async def get_deprecation_status(self) -> Dict[str, Any]:
        """Totals by type, active elements, recent activity and removal candidates."""
        migrations = await self.store.list()
        active = [e for m in migrations if m.phase == MigrationPhase.COMPLETED for e in m.elements]

        by_type = {t.value: 0 for t in ElementType}
        by_type.update(Counter(e.element_type.value for e in active))

        recent = []
        for element in active:
            last = self.monitor.last_accessed(element)
            if last is not None:
                recent.append({"element": element.deprecated_name, "last_accessed": last.isoformat()})
        recent.sort(key=lambda r: r["last_accessed"], reverse=True)

        candidates = self.monitor.get_removal_candidates(self.config.safety.min_cooling_off_days)
        return {
            "total_deprecated": len(active),
            "by_type": by_type,
            "migrations_by_phase": dict(Counter(m.phase.value for m in migrations)),
            "active_elements": [e.to_dict() for e in active],
            "recent_activity": recent,
            "ready_for_removal": [e.deprecated_name for e in candidates],
        }

    async def restore_monitoring(self) -> int:
        """Re-register elements of completed migrations, e.g. after a restart."""
        count = 0
        for migration in await self.store.list_by_phase(MigrationPhase.COMPLETED):
            for element in migration.elements:
                if self.monitor.start_monitoring(element):
                    count += 1
        return count


# =============================================================================
# Wiring
# =============================================================================

@dataclass
class DeprecationContext:
    """Every component of the subsystem, built from one DeprecationConfig."""
    config: DeprecationConfig
    engine: AsyncEngine
    repository: SqlAlchemySchemaRepository
    store: MigrationStore
    alerts: AlertSystem
    telemetry: TelemetryCollector
    monitor: DeprecatedMonitor
    backup_validator: BackupValidator
    rollback_manager: RollbackManager
    interceptor: QueryInterceptor
    system: DeprecationSystem

    @classmethod
    async def open(
        cls,
        config: DeprecationConfig,
        clock: Clock = utc_now,
        start_background: bool = False,
    ) -> "DeprecationContext":
        """Connect both databases, build the components and restore monitoring."""
        config.validate()
        session_maker = await init_state_db(config.state_url)
        engine = create_engine_for(config.database_url)
        repository = SqlAlchemySchemaRepository(engine, config.default_schema)

        alerts = AlertSystem(config.alerts, session_maker=session_maker, clock=clock)
        telemetry = TelemetryCollector(
            config.telemetry, session_maker, clock=clock, on_error=alerts.trigger_system_error
        )
        await telemetry.load_persisted()
        monitor = DeprecatedMonitor(telemetry, alerts, config.monitoring, clock=clock)
        backup_validator = BackupValidator(config.backup, repository, clock=clock)
        rollback_manager = RollbackManager(repository, backup_validator, config.rollback, clock=clock)
        store = MigrationStore(session_maker, clock=clock)
        system = DeprecationSystem(
            repository,
            store,
            monitor,
            rollback_manager=rollback_manager,
            backup_validator=backup_validator,
            config=config,
            clock=clock,
        )
        restored = await system.restore_monitoring()
        if restored:
            logger.debug("Restored monitoring for %d elements", restored)

        ctx = cls(
            config=config,
            engine=engine,
            repository=repository,
            store=store,
            alerts=alerts,
            telemetry=telemetry,
            monitor=monitor,
            backup_validator=backup_validator,
            rollback_manager=rollback_manager,
            interceptor=QueryInterceptor(monitor, strict_mode=config.safety.strict_mode),
            system=system,
        )
        if start_background:
            ctx.start()
        return ctx

    def start(self) -> None:
        self.alerts.start()
        self.telemetry.start()
        self.monitor.start()

    async def close(self) -> None:
        """Flush the monitor, stop background tasks and dispose both engines."""
        self.interceptor.uninstall()
        await self.monitor.stop()
        await self.telemetry.stop()
        await self.alerts.stop()
        await self.engine.dispose()
        await close_state_db()

    async def __aenter__(self) -> "DeprecationContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
