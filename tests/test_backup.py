"""
Tests for the Backup Validator
==============================
"""

import json

import pytest

from dbretire.backup import BackupMetadata, BackupValidator
from dbretire.config import BackupConfig
from dbretire.elements import ElementType
from dbretire.errors import ValidationError

from conftest import make_element


@pytest.fixture
def validator(temp_dir, repo, clock):
    repo.tables["orders_legacy"]["rows"] = [{"id": 1, "total": 9.5}, {"id": 2, "total": 3}]
    config = BackupConfig(enabled=True, backup_directory=str(temp_dir / "backups"), verification_level="full")
    return BackupValidator(config, repo, clock=clock)


def _names(result):
    return [c.name for c in result.checks]


# =============================================================================
# Creation Tests
# =============================================================================

class TestCreateBackup:
    """Tests for backup creation."""

    @pytest.mark.asyncio
    async def test_writes_data_and_metadata(self, validator):
        meta = await validator.create_backup("dep_1", [make_element()])

        data = json.loads((validator.backup_dir / f"{meta.backup_id}.json").read_text())
        sidecar = json.loads((validator.backup_dir / f"{meta.backup_id}.meta.json").read_text())

        assert data["migration_id"] == "dep_1"
        assert data["tables"]["public.orders_legacy"]["rows"][0] == {"id": 1, "total": 9.5}
        assert sidecar["row_counts"] == {"public.orders_legacy": 2}
        assert sidecar["sha256"] == meta.sha256
        assert meta.elements == ["orders_legacy"]

    @pytest.mark.asyncio
    async def test_column_backs_up_parent_table_once(self, validator):
        elements = [
            make_element("orders.notes", ElementType.COLUMN),
            make_element("orders.customer_id", ElementType.COLUMN),
            make_element("idx_orders_notes", ElementType.INDEX),
        ]
        meta = await validator.create_backup("dep_2", elements)
        assert list(meta.row_counts) == ["public.orders"]

    @pytest.mark.asyncio
    async def test_requires_repository(self, temp_dir):
        with pytest.raises(ValidationError):
            await BackupValidator(BackupConfig(backup_directory=str(temp_dir))).create_backup("dep", [])


# =============================================================================
# Validation Tests
# =============================================================================

class TestValidateBackup:
    """Tests for the validation levels and scoring."""

    @pytest.mark.asyncio
    async def test_intact_backup_passes_full(self, validator):
        meta = await validator.create_backup("dep_1", [make_element()])
        result = await validator.validate_backup(meta.backup_id)
        assert result.passed
        assert result.score == 100
        assert _names(result) == [
            "file-exists", "metadata-present", "size-within-limit", "checksum-match",
            "readable", "row-count-parity", "elements-recorded",
        ]

    @pytest.mark.asyncio
    async def test_basic_level_runs_four_checks(self, validator):
        meta = await validator.create_backup("dep_1", [make_element()])
        result = await validator.validate_backup(meta.backup_id, level="basic")
        assert len(result.checks) == 4

    @pytest.mark.asyncio
    async def test_comprehensive_adds_live_checks(self, validator):
        meta = await validator.create_backup("dep_1", [make_element()])
        result = await validator.validate_backup(meta.backup_id, level="comprehensive")
        assert _names(result)[-2:] == ["read-transaction", "restore-size"]
        assert result.passed

    @pytest.mark.asyncio
    async def test_tampered_backup_fails_checksum(self, validator):
        meta = await validator.create_backup("dep_1", [make_element()])
        path = validator.backup_dir / f"{meta.backup_id}.json"
        path.write_text(path.read_text().replace("9.5", "9.6"))

        result = await validator.validate_backup(meta.backup_id)
        failed = [c.name for c in result.checks if not c.passed]
        assert failed == ["checksum-match"]
        assert not result.passed
        assert result.score == round(6 / 7 * 100)

    @pytest.mark.asyncio
    async def test_row_count_mismatch(self, validator):
        meta = await validator.create_backup("dep_1", [make_element()])
        sidecar = validator.backup_dir / f"{meta.backup_id}.meta.json"
        data = json.loads(sidecar.read_text())
        data["row_counts"]["public.orders_legacy"] = 5
        sidecar.write_text(json.dumps(data))

        result = await validator.validate_backup(meta.backup_id)
        assert "row-count-parity" in [c.name for c in result.checks if not c.passed]

    @pytest.mark.asyncio
    async def test_unknown_backup_fails_instead_of_raising(self, validator):
        result = await validator.validate_backup("bk_missing")
        assert not result.passed
        assert not result.checks[0].passed
        assert result.checks[0].name == "file-exists"
        assert result.checks[0].severity == "critical"

    @pytest.mark.asyncio
    async def test_path_traversal_rejected(self, validator):
        with pytest.raises(ValidationError):
            await validator.validate_backup("../etc/passwd")

    @pytest.mark.asyncio
    async def test_unexpected_error_scores_zero(self, validator, monkeypatch):
        async def explode(backup_id, level):
            raise OSError("disk gone")

        monkeypatch.setattr(validator, "_run_checks", explode)
        result = await validator.validate_backup("bk_any")
        assert result.score == 0
        assert not result.passed
        assert result.checks[0].name == "validation-error"
        assert result.checks[0].severity == "critical"


# =============================================================================
# Housekeeping Tests
# =============================================================================

class TestHousekeeping:
    """Tests for listing, statistics and retention."""

    @pytest.mark.asyncio
    async def test_list_and_statistics(self, validator, clock):
        first = await validator.create_backup("dep_1", [make_element()])
        clock.advance(minutes=5)
        second = await validator.create_backup("dep_2", [make_element()])

        backups = validator.list_backups()
        assert [b.backup_id for b in backups] == [second.backup_id, first.backup_id]
        stats = validator.get_backup_statistics()
        assert stats["count"] == 2
        assert stats["total_size_bytes"] == first.size_bytes + second.size_bytes

    @pytest.mark.asyncio
    async def test_cleanup_old_backups(self, validator, clock):
        old = await validator.create_backup("dep_1", [make_element()])
        clock.advance(days=31)
        fresh = await validator.create_backup("dep_2", [make_element()])

        assert validator.cleanup_old_backups() == 1
        assert [b.backup_id for b in validator.list_backups()] == [fresh.backup_id]
        assert not (validator.backup_dir / f"{old.backup_id}.json").exists()

    def test_requirements(self, temp_dir):
        disabled = BackupValidator(BackupConfig(enabled=False, backup_directory=str(temp_dir)))
        assert disabled.validate_backup_requirements("production")
        assert disabled.validate_backup_requirements("development") == []

    def test_metadata_round_trip(self, clock):
        meta = BackupMetadata("bk_1", "dep_1", clock(), 10, "abc", {"t": 1}, ["t"])
        assert BackupMetadata.from_dict(meta.to_dict()) == meta
