"""
Query Interceptor
=================

Edge adapter between application SQL and the monitor. Matches statement
text against the names of currently deprecated elements and records an
access for every match before the statement runs. In strict mode the
statement is refused instead.

Two ways to use it:

    # explicit, for code paths that hold the SQL text
    result = await interceptor.intercept(sql, source=AccessSource(...))
    if not result.proceed:
        ...

    # transparent, on a SQLAlchemy engine
    interceptor.install(engine.sync_engine)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Set

from sqlalchemy import event

from dbretire.elements import DeprecatedElement
from dbretire.errors import DeprecatedAccessBlockedError
from dbretire.events import AccessSource, QueryType, SourceType, detect_query_type
from dbretire.monitor import DeprecatedMonitor

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def _narrow_by_table(candidates: List[DeprecatedElement], words: Set[str]) -> List[DeprecatedElement]:
    """Keep the elements whose table the statement names; all of them if none is named."""
    named = [e for e in candidates if e.parent_table and e.parent_table.lower() in words]
    return named or candidates


@dataclass
class InterceptResult:
    proceed: bool
    query_type: QueryType
    matches: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class QueryInterceptor:
    """Spots deprecated names in SQL and reports them to the monitor."""

    def __init__(
        self,
        monitor: DeprecatedMonitor,
        strict_mode: bool = False,
        default_source: Optional[AccessSource] = None,
    ):
        self.monitor = monitor
        self.strict_mode = strict_mode
        self.default_source = default_source or AccessSource(SourceType.APPLICATION, "sqlalchemy")
        self._pattern: Optional[Pattern[str]] = None
        self._by_name: Dict[str, List[DeprecatedElement]] = {}
        self._registry_snapshot: frozenset = frozenset()
        self._engine = None

    def refresh_patterns(self) -> None:
        """Rebuild the matcher from the monitor's registry."""
        elements = self.monitor.monitored_elements()
        by_name: Dict[str, List[DeprecatedElement]] = {}
        for element in elements:
            by_name.setdefault(element.deprecated_object_name.lower(), []).append(element)
        self._by_name = by_name
        self._registry_snapshot = frozenset(e.monitor_key for e in elements)
        if not self._by_name:
            self._pattern = None
            return
        # Longest first so a name never shadows a longer one sharing its prefix
        names = sorted(self._by_name, key=len, reverse=True)
        self._pattern = re.compile(
            r"\b(" + "|".join(re.escape(n) for n in names) + r")\b",
            re.IGNORECASE,
        )

    def _ensure_current(self) -> None:
        keys = frozenset(e.monitor_key for e in self.monitor.monitored_elements())
        if keys != self._registry_snapshot or (keys and self._pattern is None):
            self.refresh_patterns()

    def find_matches(self, sql: str) -> List[DeprecatedElement]:
        self._ensure_current()
        if self._pattern is None or not sql:
            return []
        found: Dict[str, DeprecatedElement] = {}
        words = None
        for match in self._pattern.finditer(sql):
            candidates = self._by_name[match.group(1).lower()]
            if len(candidates) > 1:
                if words is None:
                    words = {w.lower() for w in _IDENTIFIER.findall(sql)}
                candidates = _narrow_by_table(candidates, words)
            for element in candidates:
                found.setdefault(element.monitor_key, element)
        return list(found.values())

    def _result(self, sql: str, matches: List[DeprecatedElement]) -> InterceptResult:
        names = [e.deprecated_name for e in matches]
        warnings = [
            f"Query references deprecated {e.element_type.value} '{e.deprecated_name}' "
            f"(formerly '{e.original_name}')"
            for e in matches
        ]
        return InterceptResult(
            proceed=not (self.strict_mode and matches),
            query_type=detect_query_type(sql),
            matches=names,
            warnings=warnings,
        )

    async def intercept(
        self,
        sql: str,
        source: Optional[AccessSource] = None,
        execution_time_ms: Optional[float] = None,
    ) -> InterceptResult:
        """Record an access per matched element; proceed is False in strict mode."""
        matches = self.find_matches(sql)
        result = self._result(sql, matches)
        for element in matches:
            await self.monitor.record_access(
                element.deprecated_name,
                element.element_type.value,
                source=source or self.default_source,
                query_type=result.query_type,
                execution_time_ms=execution_time_ms,
                metadata={"blocked": not result.proceed},
            )
        for warning in result.warnings:
            logger.warning(warning)
        return result

    # =========================================================================
    # SQLAlchemy integration
    # =========================================================================

    def _before_cursor_execute(self, conn, cursor, statement, parameters, context, executemany) -> None:
        matches = self.find_matches(statement)
        if not matches:
            return
        result = self._result(statement, matches)
        for element in matches:
            self.monitor.record_access_nowait(
                element.deprecated_name,
                element.element_type.value,
                source=self.default_source,
                query_type=result.query_type,
                metadata={"blocked": not result.proceed},
            )
        if not result.proceed:
            raise DeprecatedAccessBlockedError(
                "Blocked query touching deprecated elements: " + ", ".join(result.matches),
                elements=result.matches,
            )

    def install(self, engine: Any) -> None:
        """Attach to a synchronous Engine (use AsyncEngine.sync_engine)."""
        if self._engine is not None:
            return
        event.listen(engine, "before_cursor_execute", self._before_cursor_execute)
        self._engine = engine

    def uninstall(self) -> None:
        if self._engine is None:
            return
        event.remove(self._engine, "before_cursor_execute", self._before_cursor_execute)
        self._engine = None
