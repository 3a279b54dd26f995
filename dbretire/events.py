"""
Access Events
=============

An AccessEvent records one touch of a deprecated element. Events are
immutable and carry a stable id so downstream ingestion can skip events
it has already stored.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from dbretire.clock import parse_timestamp


class QueryType(Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALTER = "ALTER"
    CREATE = "CREATE"
    DROP = "DROP"
    OTHER = "OTHER"


class SourceType(Enum):
    APPLICATION = "application"
    MIGRATION = "migration"
    ADMIN = "admin"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AccessSource:
    """Who touched the element."""
    type: SourceType = SourceType.UNKNOWN
    identifier: str = "unknown"
    origin: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.identifier}"

    def to_dict(self) -> dict:
        return {"type": self.type.value, "identifier": self.identifier, "origin": self.origin}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AccessSource":
        if not data:
            return cls()
        return cls(
            type=SourceType(data.get("type", "unknown")),
            identifier=data.get("identifier", "unknown"),
            origin=data.get("origin"),
        )


@dataclass(frozen=True)
class AccessEvent:
    element_name: str
    element_type: str
    timestamp: datetime
    source: AccessSource = field(default_factory=AccessSource)
    query_type: QueryType = QueryType.OTHER
    execution_time_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "element_name": self.element_name,
            "element_type": self.element_type,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.to_dict(),
            "query_type": self.query_type.value,
            "execution_time_ms": self.execution_time_ms,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AccessEvent":
        return cls(
            id=data["id"],
            element_name=data["element_name"],
            element_type=data["element_type"],
            timestamp=parse_timestamp(data["timestamp"]),
            source=AccessSource.from_dict(data.get("source")),
            query_type=QueryType(data.get("query_type", "OTHER")),
            execution_time_ms=data.get("execution_time_ms"),
            metadata=data.get("metadata") or {},
        )


_COMMENT_RE = re.compile(r"(--[^\n]*\n?)|(/\*.*?\*/)", re.DOTALL)
_LEADING_KEYWORD_RE = re.compile(r"^\s*\(*\s*([A-Za-z]+)")
_CTE_BODY_RE = re.compile(r"\)\s*(SELECT|INSERT|UPDATE|DELETE)\b", re.IGNORECASE)


def detect_query_type(sql: str) -> QueryType:
    """Classify a statement by its leading keyword."""
    stripped = _COMMENT_RE.sub(" ", sql or "")
    match = _LEADING_KEYWORD_RE.match(stripped)
    if not match:
        return QueryType.OTHER

    keyword = match.group(1).upper()
    if keyword == "WITH":
        # The statement kind follows the last CTE body
        bodies = _CTE_BODY_RE.findall(stripped)
        keyword = bodies[-1].upper() if bodies else "SELECT"

    try:
        return QueryType(keyword)
    except ValueError:
        return QueryType.OTHER
