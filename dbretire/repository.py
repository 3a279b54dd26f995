"""
Schema Repository
=================

The narrow interface the deprecation core uses to reach the target
database: read schema metadata and run a group of DDL statements in one
transaction. Nothing else in the package talks to the target database.

SqlAlchemySchemaRepository implements it over an async SQLAlchemy engine
using the runtime inspector, so the same code serves SQLite and
PostgreSQL targets.

Usage:
    engine = create_engine_for("sqlite+aiosqlite:///app.db")
    repo = SqlAlchemySchemaRepository(engine)
    await repo.object_exists(ElementType.TABLE, "main", "orders")
    await repo.execute_in_transaction([...])
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, inspect, literal_column, select, table, text
from sqlalchemy.ext.asyncio import AsyncEngine

from dbretire.elements import ElementType, quote_identifier

logger = logging.getLogger(__name__)


class SchemaRepository(ABC):
    """Operations the deprecation core needs from the target database."""

    # False when the target cannot roll back DDL; callers then rely on
    # pre-flight validation before running statements.
    supports_transactional_ddl: bool = True

    def quote_identifier(self, name: str) -> str:
        return quote_identifier(name)

    @abstractmethod
    async def get_default_schema(self) -> str:
        ...

    @abstractmethod
    async def list_names(self, element_type: ElementType, schema: str, table_name: Optional[str] = None) -> List[str]:
        """Names sharing the namespace a renamed element would land in."""
        ...

    async def object_exists(self, element_type: ElementType, schema: str, name: str) -> bool:
        """Whether an element exists; column/constraint names are table.name."""
        if element_type.is_table_scoped:
            table_name, object_name = name.split(".", 1)
            if not await self.object_exists(ElementType.TABLE, schema, table_name):
                return False
            names = await self.list_names(element_type, schema, table_name)
        else:
            object_name = name
            names = await self.list_names(element_type, schema)
        return object_name.lower() in {n.lower() for n in names}

    @abstractmethod
    async def count_rows(self, schema: str, table_name: str) -> int:
        ...

    @abstractmethod
    async def foreign_key_dependents(self, schema: str, table_name: str) -> List[Dict[str, Any]]:
        """Foreign keys in other tables that reference table_name."""
        ...

    @abstractmethod
    async def describe_table(self, schema: str, table_name: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def fetch_rows(self, schema: str, table_name: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def execute_in_transaction(self, statements: Sequence[str]) -> None:
        """Run every statement or none of them."""
        ...

    @abstractmethod
    async def check_read_transaction(self) -> bool:
        ...


class SqlAlchemySchemaRepository(SchemaRepository):
    """SchemaRepository over an AsyncEngine."""

    def __init__(self, engine: AsyncEngine, default_schema: Optional[str] = None):
        self.engine = engine
        self._default_schema = default_schema
        self.supports_transactional_ddl = engine.dialect.name in ("sqlite", "postgresql")

    def quote_identifier(self, name: str) -> str:
        return self.engine.dialect.identifier_preparer.quote_identifier(name)

    async def _inspect(self, fn):
        async with self.engine.connect() as conn:
            return await conn.run_sync(lambda sync_conn: fn(inspect(sync_conn)))

    async def get_default_schema(self) -> str:
        if self._default_schema is None:
            schema = await self._inspect(lambda insp: insp.default_schema_name)
            self._default_schema = schema or ("main" if self.engine.dialect.name == "sqlite" else "public")
        return self._default_schema

    async def list_names(self, element_type: ElementType, schema: str, table_name: Optional[str] = None) -> List[str]:
        def collect(insp) -> List[str]:
            if element_type == ElementType.TABLE:
                return list(insp.get_table_names(schema=schema)) + list(insp.get_view_names(schema=schema))

            if element_type == ElementType.INDEX:
                # Index names are schema-wide
                names = []
                for t in insp.get_table_names(schema=schema):
                    names.extend(ix["name"] for ix in insp.get_indexes(t, schema=schema) if ix.get("name"))
                return names

            if element_type == ElementType.COLUMN:
                return [c["name"] for c in insp.get_columns(table_name, schema=schema)]

            names = [fk["name"] for fk in insp.get_foreign_keys(table_name, schema=schema)]
            names += [uc["name"] for uc in insp.get_unique_constraints(table_name, schema=schema)]
            try:
                names += [cc["name"] for cc in insp.get_check_constraints(table_name, schema=schema)]
            except NotImplementedError:
                pass
            pk = insp.get_pk_constraint(table_name, schema=schema)
            names.append(pk.get("name"))
            return [n for n in names if n]

        return await self._inspect(collect)

    async def count_rows(self, schema: str, table_name: str) -> int:
        stmt = select(func.count()).select_from(table(table_name, schema=schema))
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return int(result.scalar_one())

    async def foreign_key_dependents(self, schema: str, table_name: str) -> List[Dict[str, Any]]:
        def collect(insp) -> List[Dict[str, Any]]:
            dependents = []
            for other in insp.get_table_names(schema=schema):
                if other == table_name:
                    continue
                for fk in insp.get_foreign_keys(other, schema=schema):
                    if fk.get("referred_table") == table_name:
                        dependents.append({
                            "table": other,
                            "constraint": fk.get("name"),
                            "columns": fk.get("constrained_columns", []),
                        })
            return dependents

        return await self._inspect(collect)

    async def describe_table(self, schema: str, table_name: str) -> List[Dict[str, Any]]:
        def collect(insp) -> List[Dict[str, Any]]:
            return [
                {"name": c["name"], "type": str(c["type"]), "nullable": c.get("nullable", True)}
                for c in insp.get_columns(table_name, schema=schema)
            ]

        return await self._inspect(collect)

    async def fetch_rows(self, schema: str, table_name: str) -> List[Dict[str, Any]]:
        stmt = select(literal_column("*")).select_from(table(table_name, schema=schema))
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [dict(row) for row in result.mappings().all()]

    async def execute_in_transaction(self, statements: Sequence[str]) -> None:
        async with self.engine.begin() as conn:
            for statement in statements:
                logger.debug("Executing: %s", statement)
                await conn.execute(text(statement))

    async def check_read_transaction(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
