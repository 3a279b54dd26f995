"""
Tests for the Deprecation System
================================

Plan, approve, execute and roll back against the in-memory schema with a
real SQLite state database.
"""

from contextlib import asynccontextmanager

import pytest

from dbretire.alerts import AlertPresets, AlertSystem
from dbretire.backup import BackupValidator
from dbretire.config import DeprecationConfig, TelemetryConfig
from dbretire.db import close_state_db, init_state_db
from dbretire.deprecation import DeprecationSystem
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
from dbretire.migration import MigrationPhase, RiskLevel
from dbretire.monitor import DeprecatedMonitor
from dbretire.store import MigrationStore
from dbretire.telemetry import TelemetryCollector

DEPRECATED_TABLE = "orders_legacy_deprecated_20240115"


@asynccontextmanager
async def deprecation_system(repo, clock, temp_dir, configure=None):
    config = DeprecationConfig()
    config.backup.backup_directory = str(temp_dir / "backups")
    if configure is not None:
        configure(config)

    session_maker = await init_state_db(f"sqlite+aiosqlite:///{temp_dir / 'state.db'}")
    try:
        alerts = AlertSystem(AlertPresets.testing(), channels=[], clock=clock)
        telemetry = TelemetryCollector(TelemetryConfig(), clock=clock)
        monitor = DeprecatedMonitor(telemetry, alerts, config.monitoring, clock=clock)
        backup_validator = BackupValidator(config.backup, repo, clock=clock)
        yield DeprecationSystem(
            repo,
            MigrationStore(session_maker, clock=clock),
            monitor,
            backup_validator=backup_validator,
            config=config,
            clock=clock,
        )
    finally:
        await close_state_db()


# =============================================================================
# Planning Tests
# =============================================================================

class TestPlanning:
    """Tests for plan_deprecation."""

    @pytest.mark.asyncio
    async def test_plan_empty_table(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"], created_by="alice")

            assert migration.phase == MigrationPhase.PLANNED
            assert migration.metadata.risk_level == RiskLevel.LOW
            assert not migration.metadata.approval_required
            assert migration.metadata.created_by == "alice"
            assert migration.elements[0].deprecated_name == DEPRECATED_TABLE
            assert repo.executed == []

            stored = await system.get_migration(migration.id)
            assert stored.elements == migration.elements
            assert stored.safety_checks == migration.safety_checks

    @pytest.mark.asyncio
    async def test_plan_avoids_existing_names(self, repo, clock, temp_dir):
        repo.add_table(DEPRECATED_TABLE)
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            assert migration.elements[0].deprecated_name == DEPRECATED_TABLE + "_01"

    @pytest.mark.asyncio
    async def test_columns_of_one_table_get_distinct_names(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["column:orders.notes", "column:orders.customer_id"])
            assert [e.deprecated_name for e in migration.elements] == [
                "orders.notes_deprecated_20240115",
                "orders.customer_id_deprecated_20240115",
            ]

    @pytest.mark.asyncio
    async def test_schema_option(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"], options={"schema": "app", "notes": ["ticket 42"]})
            assert migration.elements[0].schema == "app"
            assert migration.notes == ["ticket 42"]

    @pytest.mark.asyncio
    async def test_foreign_keys_require_approval(self, repo, clock, temp_dir):
        repo.add_foreign_key("invoices", "fk_invoice_order", ["order_id"], "orders_legacy")
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            assert migration.metadata.risk_level == RiskLevel.HIGH
            assert migration.metadata.approval_required

    @pytest.mark.asyncio
    async def test_config_can_force_approval(self, repo, clock, temp_dir):
        def configure(config):
            config.safety.require_approval = True

        async with deprecation_system(repo, clock, temp_dir, configure) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            assert migration.metadata.risk_level == RiskLevel.LOW
            assert migration.metadata.approval_required

    @pytest.mark.asyncio
    async def test_missing_element_is_unsafe(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            with pytest.raises(UnsafeDeprecationError) as exc_info:
                await system.plan_deprecation(["table:ghosts"])
            assert [f.name for f in exc_info.value.failures] == ["element-exists"]
            assert await system.list_migrations() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("specs", [[], ["table:orders_legacy", "TABLE:ORDERS_LEGACY"], ["orders_legacy"]])
    async def test_invalid_input(self, repo, clock, temp_dir, specs):
        async with deprecation_system(repo, clock, temp_dir) as system:
            with pytest.raises(ValidationError):
                await system.plan_deprecation(specs)

    @pytest.mark.asyncio
    async def test_unknown_reason(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            with pytest.raises(ValidationError):
                await system.plan_deprecation(["table:orders_legacy"], reason="boredom")


# =============================================================================
# Execution Tests
# =============================================================================

class TestExecution:
    """Tests for approval gating and the all-or-nothing rename."""

    @pytest.mark.asyncio
    async def test_execute_renames_and_monitors(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            executed = await system.execute_deprecation(migration.id)

            assert executed.phase == MigrationPhase.COMPLETED
            assert DEPRECATED_TABLE in repo.tables
            assert "orders_legacy" not in repo.tables
            assert system.monitor.is_monitored(DEPRECATED_TABLE)
            assert [h["to"] for h in executed.phase_history] == ["executing", "completed"]
            assert (await system.get_migration(migration.id)).phase == MigrationPhase.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_mid_batch_renames_nothing(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(
                ["table:orders_legacy", "column:orders.notes", "index:idx_orders_notes"]
            )
            repo.fail_on = '"notes"'

            with pytest.raises(ExecutionError):
                await system.execute_deprecation(migration.id)

            assert "orders_legacy" in repo.tables
            assert repo.tables["orders"]["columns"] == ["id", "notes", "customer_id"]
            assert "idx_orders_notes" in repo.indexes
            assert repo.executed == []

            stored = await system.get_migration(migration.id)
            assert stored.phase == MigrationPhase.FAILED
            assert any("Rename transaction failed" in n for n in stored.notes)
            assert system.monitor.monitored_elements() == []

    @pytest.mark.asyncio
    async def test_non_transactional_target_checks_before_renaming(self, repo, clock, temp_dir):
        repo.supports_transactional_ddl = False
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["column:orders.notes", "table:orders_legacy"])
            repo.add_table(DEPRECATED_TABLE)

            with pytest.raises(ExecutionError, match="pre-flight"):
                await system.execute_deprecation(migration.id)

            assert repo.tables["orders"]["columns"] == ["id", "notes", "customer_id"]
            assert "orders_legacy" in repo.tables
            assert repo.executed == []

            stored = await system.get_migration(migration.id)
            assert stored.phase == MigrationPhase.FAILED
            assert stored.notes[-1].startswith("Pre-flight failed")
            assert DEPRECATED_TABLE in stored.notes[-1]

    @pytest.mark.asyncio
    async def test_non_transactional_target_executes_when_clean(self, repo, clock, temp_dir):
        repo.supports_transactional_ddl = False
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["column:orders.notes", "table:orders_legacy"])
            executed = await system.execute_deprecation(migration.id)

            assert executed.phase == MigrationPhase.COMPLETED
            assert "notes_deprecated_20240115" in repo.tables["orders"]["columns"]
            assert DEPRECATED_TABLE in repo.tables

    @pytest.mark.asyncio
    async def test_timeout_fails_migration(self, repo, clock, temp_dir):
        def configure(config):
            config.timeout_seconds = 0.05

        async with deprecation_system(repo, clock, temp_dir, configure) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            repo.delay = 1.0
            with pytest.raises(ExecutionError):
                await system.execute_deprecation(migration.id)
            assert "orders_legacy" in repo.tables
            assert (await system.get_migration(migration.id)).phase == MigrationPhase.FAILED

    @pytest.mark.asyncio
    async def test_approval_gate(self, repo, clock, temp_dir):
        repo.add_foreign_key("invoices", "fk_invoice_order", ["order_id"], "orders_legacy")
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            with pytest.raises(ApprovalRequiredError):
                await system.execute_deprecation(migration.id)
            assert repo.executed == []

            await system.approve_migration(migration.id, "bob")
            executed = await system.execute_deprecation(migration.id)
            assert executed.approval["approved_by"] == "bob"
            assert executed.phase == MigrationPhase.COMPLETED

    @pytest.mark.asyncio
    async def test_only_planned_migrations_execute(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            await system.execute_deprecation(migration.id)
            with pytest.raises(InvalidStateError):
                await system.execute_deprecation(migration.id)
            with pytest.raises(InvalidStateError):
                await system.approve_migration(migration.id, "bob")

    @pytest.mark.asyncio
    async def test_unknown_migration(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            with pytest.raises(NotFoundError):
                await system.execute_deprecation("dep_missing")
            with pytest.raises(NotFoundError):
                await system.rollback_migration("dep_missing")

    @pytest.mark.asyncio
    async def test_backup_taken_before_rename(self, repo, clock, temp_dir):
        def configure(config):
            config.backup.enabled = True

        async with deprecation_system(repo, clock, temp_dir, configure) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            executed = await system.execute_deprecation(migration.id)

            backup_id = executed.metadata.backup_id
            assert backup_id is not None
            assert [b.backup_id for b in system.backup_validator.list_backups()] == [backup_id]
            assert (await system.get_migration(migration.id)).metadata.backup_id == backup_id


# =============================================================================
# Rollback Tests
# =============================================================================

class TestRollback:
    """Tests for rollback_migration and the backup gate."""

    @pytest.mark.asyncio
    async def test_rollback_restores_names(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy", "column:orders.notes"])
            await system.execute_deprecation(migration.id)

            result = await system.rollback_migration(migration.id)

            assert result.success
            assert result.completed_steps == result.total_steps == 2
            assert "orders_legacy" in repo.tables
            assert "notes" in repo.tables["orders"]["columns"]
            assert system.monitor.monitored_elements() == []
            stored = await system.get_migration(migration.id)
            assert stored.phase == MigrationPhase.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_rollback_refused_when_original_name_taken(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            await system.execute_deprecation(migration.id)
            repo.add_table("orders_legacy")

            with pytest.raises(RollbackError) as exc_info:
                await system.rollback_migration(migration.id)

            assert "already taken" in exc_info.value.result.errors[0]
            stored = await system.get_migration(migration.id)
            assert stored.phase == MigrationPhase.COMPLETED
            assert stored.notes[-1].startswith("Rollback failed")

    @pytest.mark.asyncio
    async def test_required_backup_missing(self, repo, clock, temp_dir):
        def configure(config):
            config.rollback.require_backup = True

        async with deprecation_system(repo, clock, temp_dir, configure) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            await system.execute_deprecation(migration.id)

            with pytest.raises(BackupInvalidError):
                await system.rollback_migration(migration.id)
            assert DEPRECATED_TABLE in repo.tables
            stored = await system.get_migration(migration.id)
            assert stored.phase == MigrationPhase.COMPLETED
            assert stored.notes[-1].startswith("Rollback refused")

    @pytest.mark.asyncio
    async def test_required_backup_present(self, repo, clock, temp_dir):
        def configure(config):
            config.backup.enabled = True
            config.rollback.require_backup = True

        async with deprecation_system(repo, clock, temp_dir, configure) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            await system.execute_deprecation(migration.id)

            result = await system.rollback_migration(migration.id)
            assert result.success
            assert result.backup_validation.passed

    @pytest.mark.asyncio
    async def test_only_completed_migrations_roll_back(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            with pytest.raises(InvalidStateError):
                await system.rollback_migration(migration.id)

    @pytest.mark.asyncio
    async def test_dry_run(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy", "column:orders.notes"])
            executed = await system.execute_deprecation(migration.id)

            report = await system.rollback_manager.test_rollback_plan(executed)
            assert report["can_execute"]
            assert "Migration has no backup to fall back on" in report["warnings"]
            steps = report["plan"]["steps"]
            assert [s["validation"] for s in steps] == ["orders.notes", "orders_legacy"]
            assert DEPRECATED_TABLE in repo.tables


# =============================================================================
# Status Tests
# =============================================================================

class TestStatus:
    """Tests for status reporting and monitoring restore."""

    @pytest.mark.asyncio
    async def test_status_report(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            done = await system.plan_deprecation(["table:orders_legacy"])
            await system.execute_deprecation(done.id)
            await system.plan_deprecation(["index:idx_orders_notes"])
            await system.monitor.record_access(DEPRECATED_TABLE)

            status = await system.get_deprecation_status()

            assert status["total_deprecated"] == 1
            assert status["by_type"]["table"] == 1
            assert status["by_type"]["index"] == 0
            assert status["migrations_by_phase"] == {"completed": 1, "planned": 1}
            assert status["recent_activity"][0]["element"] == DEPRECATED_TABLE
            assert status["ready_for_removal"] == []

            clock.advance(days=31)
            status = await system.get_deprecation_status()
            assert status["ready_for_removal"] == [DEPRECATED_TABLE]

    @pytest.mark.asyncio
    async def test_restore_monitoring(self, repo, clock, temp_dir):
        async with deprecation_system(repo, clock, temp_dir) as system:
            migration = await system.plan_deprecation(["table:orders_legacy"])
            await system.execute_deprecation(migration.id)

            fresh_monitor = DeprecatedMonitor(system.monitor.telemetry, system.monitor.alerts, clock=clock)
            restarted = DeprecationSystem(repo, system.store, fresh_monitor, clock=clock)
            assert await restarted.restore_monitoring() == 1
            assert await restarted.restore_monitoring() == 0
            assert fresh_monitor.is_monitored(DEPRECATED_TABLE)
