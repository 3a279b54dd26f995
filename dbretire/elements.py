"""
Deprecated Elements
===================

Element model and the naming convention that marks a schema object as
deprecated. The renamed object itself is the marker: a table called
``orders_legacy_deprecated_20240115`` is a deprecated ``orders_legacy``.

Column and constraint names are qualified with their table
(``orders.notes``); tables and indexes are plain names.

Usage:
    spec = ElementSpec.parse("column:orders.notes")
    name = generate_deprecated_name("notes", datetime.now(timezone.utc))
    element = DeprecatedElement(..., deprecated_name=f"orders.{name}")
    element.rename_sql()
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple

from dbretire.clock import parse_timestamp
from dbretire.errors import ValidationError

MAX_IDENTIFIER_LENGTH = 63
DEPRECATED_MARKER = "_deprecated_"
RESERVED_PREFIXES = ("pg_", "sqlite_", "_")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")
_DEPRECATED_RE = re.compile(r"^(?P<original>.+)_deprecated_(?P<stamp>\d{8})(?:_(?P<counter>\d{2}))?$")


class ElementType(Enum):
    """Kinds of schema element that can be deprecated."""
    TABLE = "table"
    COLUMN = "column"
    INDEX = "index"
    CONSTRAINT = "constraint"

    @property
    def is_table_scoped(self) -> bool:
        """Columns and constraints are addressed as table.name."""
        return self in (ElementType.COLUMN, ElementType.CONSTRAINT)


class DeprecationReason(Enum):
    UNUSED = "unused"
    PERFORMANCE = "performance"
    MIGRATION = "migration"
    REFACTOR = "refactor"
    SECURITY = "security"
    OPTIMIZATION = "optimization"


def parse_reason(value: str) -> DeprecationReason:
    try:
        return DeprecationReason(value)
    except ValueError:
        valid = ", ".join(r.value for r in DeprecationReason)
        raise ValidationError(f"Unknown deprecation reason '{value}'. Expected one of: {valid}") from None


def quote_identifier(name: str) -> str:
    """ANSI double-quote an identifier."""
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class ElementSpec:
    """An operator's request to deprecate one element, e.g. ``table:orders_legacy``."""
    element_type: ElementType
    name: str
    schema: Optional[str] = None

    @property
    def table(self) -> Optional[str]:
        if self.element_type.is_table_scoped:
            return self.name.split(".", 1)[0]
        if self.element_type == ElementType.TABLE:
            return self.name
        return None

    @property
    def object_name(self) -> str:
        return self.name.split(".", 1)[1] if self.element_type.is_table_scoped else self.name

    @classmethod
    def parse(cls, text: str, schema: Optional[str] = None) -> "ElementSpec":
        """Parse ``type:name``. Raises ValidationError on malformed input."""
        if not text or ":" not in text:
            raise ValidationError(f"Invalid element spec '{text}'. Expected format type:name")

        type_part, name = text.split(":", 1)
        try:
            element_type = ElementType(type_part.strip().lower())
        except ValueError:
            valid = ", ".join(t.value for t in ElementType)
            raise ValidationError(
                f"Invalid element type '{type_part}' in '{text}'. Expected one of: {valid}"
            ) from None

        name = name.strip()
        if not name:
            raise ValidationError(f"Element spec '{text}' has an empty name")

        if element_type.is_table_scoped:
            parts = name.split(".")
            if len(parts) != 2 or not all(parts):
                raise ValidationError(
                    f"{element_type.value} '{name}' must be qualified as table.{element_type.value}"
                )
        elif "." in name:
            raise ValidationError(f"{element_type.value} name '{name}' must not be qualified")

        return cls(element_type=element_type, name=name, schema=schema)


@dataclass(frozen=True)
class DeprecatedElement:
    """One element of a migration. Immutable once created."""
    element_type: ElementType
    schema: str
    original_name: str
    deprecated_name: str
    reason: DeprecationReason
    deprecated_at: datetime

    @property
    def parent_table(self) -> Optional[str]:
        if self.element_type.is_table_scoped:
            return self.original_name.split(".", 1)[0]
        if self.element_type == ElementType.TABLE:
            return self.original_name
        return None

    @property
    def object_name(self) -> str:
        """Unqualified original identifier."""
        return self.original_name.split(".", 1)[-1]

    @property
    def deprecated_object_name(self) -> str:
        """Unqualified deprecated identifier (what appears in SQL)."""
        return self.deprecated_name.split(".", 1)[-1]

    @property
    def monitor_key(self) -> str:
        return f"{self.element_type.value}:{self.deprecated_name}"

    def rename_sql(self, quote: Callable[[str], str] = quote_identifier) -> str:
        """Statement that renames the original object to its deprecated name."""
        return self._rename(self.object_name, self.deprecated_object_name, quote)

    def reverse_sql(self, quote: Callable[[str], str] = quote_identifier) -> str:
        """Statement that restores the original name."""
        return self._rename(self.deprecated_object_name, self.object_name, quote)

    def _rename(self, source: str, target: str, quote: Callable[[str], str]) -> str:
        schema = quote(self.schema)
        if self.element_type == ElementType.TABLE:
            return f"ALTER TABLE {schema}.{quote(source)} RENAME TO {quote(target)}"
        if self.element_type == ElementType.INDEX:
            return f"ALTER INDEX {schema}.{quote(source)} RENAME TO {quote(target)}"

        # The parent table keeps its name; only the column/constraint moves
        table = quote(self.parent_table)
        if self.element_type == ElementType.COLUMN:
            return f"ALTER TABLE {schema}.{table} RENAME COLUMN {quote(source)} TO {quote(target)}"
        return f"ALTER TABLE {schema}.{table} RENAME CONSTRAINT {quote(source)} TO {quote(target)}"

    def to_dict(self) -> dict:
        return {
            "type": self.element_type.value,
            "schema": self.schema,
            "original_name": self.original_name,
            "deprecated_name": self.deprecated_name,
            "reason": self.reason.value,
            "deprecated_at": self.deprecated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeprecatedElement":
        return cls(
            element_type=ElementType(data["type"]),
            schema=data["schema"],
            original_name=data["original_name"],
            deprecated_name=data["deprecated_name"],
            reason=DeprecationReason(data["reason"]),
            deprecated_at=parse_timestamp(data["deprecated_at"]),
        )


# =============================================================================
# Naming Convention
# =============================================================================

def generate_deprecated_name(
    name: str,
    when: datetime,
    existing: Iterable[str] = (),
) -> str:
    """
    Build ``{name}_deprecated_YYYYMMDD`` for an unqualified identifier.

    The original part is truncated so the result fits the 63 character
    identifier limit. When the name is already taken a two digit counter
    is appended (``_01`` .. ``_99``).
    """
    taken = {n.lower() for n in existing}
    suffix = f"{DEPRECATED_MARKER}{when.strftime('%Y%m%d')}"

    base = name[: MAX_IDENTIFIER_LENGTH - len(suffix)] + suffix
    if base.lower() not in taken:
        return base

    for counter in range(1, 100):
        tail = f"{suffix}_{counter:02d}"
        candidate = name[: MAX_IDENTIFIER_LENGTH - len(tail)] + tail
        if candidate.lower() not in taken:
            return candidate

    raise ValidationError(f"Could not find a free deprecated name for '{name}'")


def parse_deprecated_name(name: str) -> Optional[Tuple[str, date]]:
    """Return (original_name, deprecation_date) for a deprecated identifier."""
    match = _DEPRECATED_RE.match(name)
    if not match:
        return None
    try:
        stamp = datetime.strptime(match.group("stamp"), "%Y%m%d").date()
    except ValueError:
        return None
    return match.group("original"), stamp


def is_deprecated_name(name: str) -> bool:
    return parse_deprecated_name(name) is not None


def validate_identifier(name: str) -> List[str]:
    """Problems that prevent an identifier from being deprecated."""
    problems = []
    if not _IDENTIFIER_RE.match(name):
        problems.append(f"'{name}' contains characters other than letters, digits and underscore")
    lowered = name.lower()
    for prefix in RESERVED_PREFIXES:
        if lowered.startswith(prefix):
            problems.append(f"'{name}' uses the reserved prefix '{prefix}'")
            break
    if is_deprecated_name(name):
        problems.append(f"'{name}' is already deprecated")
    if len(name) > MAX_IDENTIFIER_LENGTH:
        problems.append(f"'{name}' exceeds {MAX_IDENTIFIER_LENGTH} characters")
    return problems
