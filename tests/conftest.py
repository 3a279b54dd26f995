"""
Shared test doubles: a controllable clock and an in-memory schema
repository that applies rename statements all-or-nothing.
"""

import asyncio
import copy
import re
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

from dbretire.elements import DeprecatedElement, DeprecationReason, ElementType
from dbretire.repository import SchemaRepository

_RENAME_RE = re.compile(
    r'^ALTER (?P<kind>TABLE|INDEX) "(?P<schema>[^"]+)"\."(?P<target>[^"]+)" RENAME '
    r'(?:(?P<sub>COLUMN|CONSTRAINT) "(?P<source>[^"]+)" )?TO "(?P<new>[^"]+)"$'
)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSchemaRepository(SchemaRepository):
    """In-memory schema; renames are all-or-nothing unless supports_transactional_ddl is False."""

    def __init__(self, schema: str = "public"):
        self.schema = schema
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.indexes: Dict[str, str] = {}
        self.foreign_keys: List[Dict[str, Any]] = []
        self.executed: List[List[str]] = []
        # Any statement containing this text raises mid-transaction
        self.fail_on: Optional[str] = None
        self.delay = 0.0

    def add_table(self, name, columns=("id",), rows=None, constraints=()):
        self.tables[name] = {
            "columns": list(columns),
            "rows": list(rows or []),
            "constraints": list(constraints),
        }

    def add_index(self, name, table):
        self.indexes[name] = table

    def add_foreign_key(self, table, constraint, columns, referred_table):
        self.foreign_keys.append({
            "table": table,
            "constraint": constraint,
            "columns": list(columns),
            "referred_table": referred_table,
        })

    async def get_default_schema(self) -> str:
        return self.schema

    async def list_names(self, element_type, schema, table_name=None) -> List[str]:
        if element_type == ElementType.TABLE:
            return list(self.tables)
        if element_type == ElementType.INDEX:
            return list(self.indexes)
        key = "columns" if element_type == ElementType.COLUMN else "constraints"
        return list(self.tables[table_name][key])

    async def count_rows(self, schema, table_name) -> int:
        return len(self.tables[table_name]["rows"])

    async def foreign_key_dependents(self, schema, table_name):
        return [
            {"table": fk["table"], "constraint": fk["constraint"], "columns": fk["columns"]}
            for fk in self.foreign_keys
            if fk["referred_table"] == table_name and fk["table"] != table_name
        ]

    async def describe_table(self, schema, table_name):
        return [{"name": c, "type": "TEXT", "nullable": True} for c in self.tables[table_name]["columns"]]

    async def fetch_rows(self, schema, table_name):
        return [dict(r) for r in self.tables[table_name]["rows"]]

    async def execute_in_transaction(self, statements: Sequence[str]) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        snapshot = copy.deepcopy((self.tables, self.indexes, self.foreign_keys))
        try:
            for statement in statements:
                if self.fail_on and self.fail_on in statement:
                    raise RuntimeError(f"simulated failure on {statement}")
                self._apply(statement)
        except Exception:
            if self.supports_transactional_ddl:
                self.tables, self.indexes, self.foreign_keys = snapshot
            raise
        self.executed.append(list(statements))

    def _apply(self, statement: str) -> None:
        match = _RENAME_RE.match(statement)
        if match is None:
            raise RuntimeError(f"unsupported statement {statement}")
        target, new, sub = match.group("target"), match.group("new"), match.group("sub")

        if match.group("kind") == "INDEX":
            if target not in self.indexes or new in self.indexes:
                raise RuntimeError(f"cannot rename index {target}")
            self.indexes[new] = self.indexes.pop(target)
            return

        if target not in self.tables:
            raise RuntimeError(f"no such table {target}")

        if sub is None:
            if new in self.tables:
                raise RuntimeError(f"table {new} exists")
            self.tables[new] = self.tables.pop(target)
            for fk in self.foreign_keys:
                if fk["referred_table"] == target:
                    fk["referred_table"] = new
                if fk["table"] == target:
                    fk["table"] = new
            return

        key = "columns" if sub == "COLUMN" else "constraints"
        names = self.tables[target][key]
        source = match.group("source")
        if source not in names or new in names:
            raise RuntimeError(f"cannot rename {sub.lower()} {source}")
        names[names.index(source)] = new

    async def check_read_transaction(self) -> bool:
        return True


def make_element(
    original="orders_legacy",
    element_type=ElementType.TABLE,
    stamp="20240115",
    schema="public",
    when=None,
) -> DeprecatedElement:
    """A deprecated element as execution would have produced it."""
    if element_type.is_table_scoped:
        table, name = original.split(".", 1)
        deprecated = f"{table}.{name}_deprecated_{stamp}"
    else:
        deprecated = f"{original}_deprecated_{stamp}"
    return DeprecatedElement(
        element_type=element_type,
        schema=schema,
        original_name=original,
        deprecated_name=deprecated,
        reason=DeprecationReason.UNUSED,
        deprecated_at=when or datetime(2024, 1, 15, tzinfo=timezone.utc),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    repository = FakeSchemaRepository()
    repository.add_table("orders_legacy", columns=["id", "total"])
    repository.add_table("orders", columns=["id", "notes", "customer_id"], rows=[{"id": 1}],
                         constraints=["orders_pkey", "orders_customer_fk"])
    repository.add_index("idx_orders_notes", "orders")
    return repository


@pytest.fixture
def temp_dir():
    """Create a temporary working directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
