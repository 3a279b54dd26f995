"""
Tests for the Element Model and Naming Convention
=================================================
"""

from datetime import date, datetime, timezone

import pytest

from dbretire.elements import (
    MAX_IDENTIFIER_LENGTH,
    DeprecatedElement,
    DeprecationReason,
    ElementSpec,
    ElementType,
    generate_deprecated_name,
    is_deprecated_name,
    parse_deprecated_name,
    parse_reason,
    validate_identifier,
)
from dbretire.errors import ValidationError
from dbretire.migration import (
    Migration,
    MigrationMetadata,
    MigrationPhase,
    RiskLevel,
    estimate_duration,
    generate_migration_id,
)
from dbretire.errors import InvalidStateError

from conftest import make_element

WHEN = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# ElementSpec Tests
# =============================================================================

class TestElementSpec:
    """Tests for parsing type:name specs."""

    def test_parse_table(self):
        spec = ElementSpec.parse("table:orders_legacy")
        assert spec.element_type == ElementType.TABLE
        assert spec.name == "orders_legacy"
        assert spec.table == "orders_legacy"

    def test_parse_column_is_qualified(self):
        spec = ElementSpec.parse("column:orders.notes", schema="app")
        assert spec.table == "orders"
        assert spec.object_name == "notes"
        assert spec.schema == "app"

    def test_parse_index_has_no_table(self):
        spec = ElementSpec.parse("index:idx_orders_notes")
        assert spec.table is None
        assert spec.object_name == "idx_orders_notes"

    def test_type_is_case_insensitive(self):
        assert ElementSpec.parse("TABLE:orders").element_type == ElementType.TABLE

    @pytest.mark.parametrize("text", [
        "orders",
        "view:orders",
        "table:",
        "column:notes",
        "column:a.b.c",
        "constraint:.fk",
        "table:public.orders",
    ])
    def test_malformed_specs_rejected(self, text):
        with pytest.raises(ValidationError):
            ElementSpec.parse(text)

    def test_parse_reason(self):
        assert parse_reason("security") == DeprecationReason.SECURITY
        with pytest.raises(ValidationError):
            parse_reason("boredom")


# =============================================================================
# Naming Convention Tests
# =============================================================================

class TestNaming:
    """Tests for deprecated name generation and parsing."""

    def test_basic_name(self):
        assert generate_deprecated_name("orders_legacy", WHEN) == "orders_legacy_deprecated_20240115"

    def test_collision_appends_counter(self):
        taken = ["orders_legacy_deprecated_20240115", "orders_legacy_deprecated_20240115_01"]
        assert generate_deprecated_name("orders_legacy", WHEN, taken) == "orders_legacy_deprecated_20240115_02"

    def test_collision_check_ignores_case(self):
        taken = ["ORDERS_deprecated_20240115"]
        assert generate_deprecated_name("orders", WHEN, taken) == "orders_deprecated_20240115_01"

    def test_long_names_are_truncated(self):
        name = generate_deprecated_name("x" * 80, WHEN)
        assert len(name) == MAX_IDENTIFIER_LENGTH
        assert name.endswith("_deprecated_20240115")

    def test_truncated_name_with_counter_fits(self):
        first = generate_deprecated_name("x" * 80, WHEN)
        second = generate_deprecated_name("x" * 80, WHEN, [first])
        assert len(second) <= MAX_IDENTIFIER_LENGTH
        assert second.endswith("_01")

    def test_exhausted_counters_raise(self):
        taken = ["t_deprecated_20240115"] + [f"t_deprecated_20240115_{i:02d}" for i in range(1, 100)]
        with pytest.raises(ValidationError):
            generate_deprecated_name("t", WHEN, taken)

    def test_parse_deprecated_name(self):
        assert parse_deprecated_name("orders_deprecated_20240115") == ("orders", date(2024, 1, 15))
        assert parse_deprecated_name("orders_deprecated_20240115_03") == ("orders", date(2024, 1, 15))
        assert parse_deprecated_name("orders_deprecated_20241399") is None
        assert parse_deprecated_name("orders") is None

    def test_generated_names_are_recognised(self):
        assert is_deprecated_name(generate_deprecated_name("orders", WHEN))

    def test_validate_identifier(self):
        assert validate_identifier("orders_legacy") == []
        assert validate_identifier("pg_stats")
        assert validate_identifier("_hidden")
        assert validate_identifier("bad-name")
        assert validate_identifier("orders_deprecated_20240115")
        assert validate_identifier("a" * 64)


# =============================================================================
# DeprecatedElement Tests
# =============================================================================

class TestDeprecatedElement:
    """Tests for element SQL and serialization."""

    def test_table_rename_sql(self):
        element = make_element()
        assert element.rename_sql() == (
            'ALTER TABLE "public"."orders_legacy" RENAME TO "orders_legacy_deprecated_20240115"'
        )
        assert element.reverse_sql() == (
            'ALTER TABLE "public"."orders_legacy_deprecated_20240115" RENAME TO "orders_legacy"'
        )

    def test_column_rename_keeps_table(self):
        element = make_element("orders.notes", ElementType.COLUMN)
        assert element.parent_table == "orders"
        assert element.deprecated_object_name == "notes_deprecated_20240115"
        assert element.rename_sql() == (
            'ALTER TABLE "public"."orders" RENAME COLUMN "notes" TO "notes_deprecated_20240115"'
        )

    def test_constraint_and_index_sql(self):
        constraint = make_element("orders.orders_customer_fk", ElementType.CONSTRAINT)
        assert "RENAME CONSTRAINT" in constraint.rename_sql()
        index = make_element("idx_orders_notes", ElementType.INDEX)
        assert index.rename_sql().startswith('ALTER INDEX "public"."idx_orders_notes"')
        assert index.parent_table is None

    def test_quote_escapes_embedded_quotes(self):
        element = make_element('weird"name')
        assert '"weird""name"' in element.rename_sql()

    def test_monitor_key(self):
        assert make_element().monitor_key == "table:orders_legacy_deprecated_20240115"

    def test_round_trip(self):
        element = make_element("orders.notes", ElementType.COLUMN)
        assert DeprecatedElement.from_dict(element.to_dict()) == element


# =============================================================================
# Migration Tests
# =============================================================================

def _migration(phase=MigrationPhase.PLANNED) -> Migration:
    return Migration(
        id=generate_migration_id(WHEN),
        elements=[make_element()],
        phase=phase,
        timestamp=WHEN,
        metadata=MigrationMetadata(risk_level=RiskLevel.HIGH, approval_required=True),
    )


class TestMigration:
    """Tests for the migration phase machine."""

    def test_id_format(self):
        migration_id = generate_migration_id(WHEN)
        assert migration_id.startswith("dep_20240115120000_")
        assert len(migration_id.split("_")[-1]) == 6

    def test_legal_path_records_history(self):
        migration = _migration()
        migration.transition_to(MigrationPhase.EXECUTING, WHEN)
        migration.transition_to(MigrationPhase.COMPLETED, WHEN, "done")
        migration.transition_to(MigrationPhase.ROLLED_BACK, WHEN)
        assert [h["to"] for h in migration.phase_history] == ["executing", "completed", "rolled_back"]
        assert migration.notes == ["done"]

    @pytest.mark.parametrize("start,target", [
        (MigrationPhase.PLANNED, MigrationPhase.COMPLETED),
        (MigrationPhase.PLANNED, MigrationPhase.ROLLED_BACK),
        (MigrationPhase.COMPLETED, MigrationPhase.EXECUTING),
        (MigrationPhase.FAILED, MigrationPhase.PLANNED),
        (MigrationPhase.ROLLED_BACK, MigrationPhase.COMPLETED),
    ])
    def test_illegal_transitions(self, start, target):
        migration = _migration(start)
        with pytest.raises(InvalidStateError):
            migration.transition_to(target, WHEN)
        assert migration.phase == start
        assert migration.phase_history == []

    def test_approve_only_when_planned(self):
        migration = _migration()
        migration.approve("alice", WHEN)
        assert migration.is_approved
        with pytest.raises(InvalidStateError):
            _migration(MigrationPhase.COMPLETED).approve("alice", WHEN)

    def test_risk_level_ordering(self):
        assert RiskLevel.LOW < RiskLevel.MEDIUM < RiskLevel.HIGH < RiskLevel.CRITICAL
        assert RiskLevel.from_label("high") == RiskLevel.HIGH

    def test_estimate_duration(self):
        table = make_element()
        index = make_element("idx_a", ElementType.INDEX)
        column = make_element("orders.notes", ElementType.COLUMN)
        assert estimate_duration([table, index, column], {table.monitor_key: 2}) == 30 + 10 + 5 + 10

    def test_round_trip(self):
        migration = _migration()
        migration.transition_to(MigrationPhase.EXECUTING, WHEN)
        restored = Migration.from_dict(migration.to_dict())
        assert restored.phase == MigrationPhase.EXECUTING
        assert restored.metadata.risk_level == RiskLevel.HIGH
        assert restored.elements == migration.elements
