"""
Migration Store
===============

Durable migration records in the state database. Records are written on
every phase change; the phase history inside each record only ever grows.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbretire.clock import Clock, ensure_aware, utc_now
from dbretire.db.models import MigrationRecordModel
from dbretire.migration import Migration, MigrationMetadata, MigrationPhase
from dbretire.elements import DeprecatedElement
from dbretire.errors import InvalidStateError

logger = logging.getLogger(__name__)


class MigrationStore:
    """Persist and load Migration records."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Clock = utc_now):
        self.session_maker = session_maker
        self.clock = clock

    async def save(self, migration: Migration) -> None:
        """Insert or update a migration record."""
        async with self.session_maker() as session:
            model = await session.get(MigrationRecordModel, migration.id)
            if model is None:
                model = MigrationRecordModel(id=migration.id, created_at=migration.timestamp)
                session.add(model)
            elif len(model.phase_history or []) > len(migration.phase_history):
                raise InvalidStateError(f"Refusing to overwrite newer history of migration {migration.id}")

            model.phase = migration.phase.value
            model.updated_at = self.clock()
            model.elements = [e.to_dict() for e in migration.elements]
            model.safety_checks = list(migration.safety_checks)
            model.meta = migration.metadata.to_dict()
            model.approval = migration.approval
            model.notes = list(migration.notes)
            model.phase_history = list(migration.phase_history)
            await session.commit()

    async def get(self, migration_id: str) -> Optional[Migration]:
        async with self.session_maker() as session:
            model = await session.get(MigrationRecordModel, migration_id)
            return _to_migration(model) if model else None

    async def list(self, limit: Optional[int] = None) -> List[Migration]:
        """Newest first."""
        stmt = select(MigrationRecordModel).order_by(MigrationRecordModel.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return [_to_migration(m) for m in result.scalars().all()]

    async def list_by_phase(self, phase: MigrationPhase) -> List[Migration]:
        stmt = (
            select(MigrationRecordModel)
            .where(MigrationRecordModel.phase == phase.value)
            .order_by(MigrationRecordModel.created_at.desc())
        )
        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return [_to_migration(m) for m in result.scalars().all()]


def _to_migration(model: MigrationRecordModel) -> Migration:
    return Migration(
        id=model.id,
        elements=[DeprecatedElement.from_dict(e) for e in model.elements or []],
        phase=MigrationPhase(model.phase),
        timestamp=ensure_aware(model.created_at),
        metadata=MigrationMetadata.from_dict(model.meta or {}),
        safety_checks=list(model.safety_checks or []),
        approval=model.approval,
        notes=list(model.notes or []),
        phase_history=list(model.phase_history or []),
    )
