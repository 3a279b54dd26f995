"""
Safety-Check Evaluator
======================

Named, pure predicates over a proposed deprecation. Each check looks at
one element plus schema metadata gathered beforehand and returns pass or
fail with a message. The orchestrator aggregates the results:

- a failed check tagged ``critical`` blocks planning entirely
- any other failure only raises the migration's risk level

Usage:
    evaluator = SafetyCheckEvaluator(config.safety)
    results = evaluator.evaluate(elements, metadata, context)
    risk = aggregate_risk(results)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from dbretire.config import SafetyConfig
from dbretire.elements import DeprecatedElement, ElementType, validate_identifier
from dbretire.migration import RiskLevel

logger = logging.getLogger(__name__)

CheckOutcome = Union[Tuple[bool, str], Tuple[bool, str, Dict[str, Any]]]


@dataclass
class ElementMetadata:
    """Schema facts about one element, read from the target database."""
    exists: bool = True
    deprecated_name_taken: bool = False
    row_count: Optional[int] = None
    foreign_key_dependents: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class CheckContext:
    """Batch-level facts shared by every check."""
    elements: Sequence[DeprecatedElement]
    environment: str
    safety: SafetyConfig
    backups_enabled: bool = False


@dataclass
class CheckResult:
    """Outcome of one check against one element."""
    name: str
    passed: bool
    message: str
    severity: RiskLevel
    element: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "severity": self.severity.label,
            "element": self.element,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CheckResult":
        return cls(
            name=data["name"],
            passed=data["passed"],
            message=data["message"],
            severity=RiskLevel.from_label(data["severity"]),
            element=data["element"],
            details=data.get("details", {}),
        )


Predicate = Callable[[DeprecatedElement, ElementMetadata, CheckContext], CheckOutcome]


@dataclass
class SafetyCheck:
    name: str
    description: str
    severity: RiskLevel
    predicate: Predicate


# =============================================================================
# Built-in Checks
# =============================================================================

def _element_exists(element, meta, ctx):
    if meta.exists:
        return True, f"{element.element_type.value} '{element.original_name}' exists"
    return False, f"{element.element_type.value} '{element.original_name}' was not found in schema '{element.schema}'"


def _identifier_valid(element, meta, ctx):
    problems = validate_identifier(element.object_name)
    if problems:
        return False, "; ".join(problems), {"problems": problems}
    return True, "Identifier is eligible for deprecation"


def _naming_collision(element, meta, ctx):
    if meta.deprecated_name_taken:
        return False, f"Deprecated name '{element.deprecated_name}' is already in use"
    return True, f"Deprecated name '{element.deprecated_name}' is free"


def _parent_table_conflict(element, meta, ctx):
    if element.element_type == ElementType.TABLE:
        return True, "Not applicable to tables"
    tables = {
        e.original_name.lower() for e in ctx.elements if e.element_type == ElementType.TABLE
    }
    parent = (element.parent_table or "").lower()
    if parent and parent in tables:
        return False, f"Parent table '{element.parent_table}' is deprecated in the same migration"
    return True, "Parent table is not part of this migration"


def _foreign_key_dependents(element, meta, ctx):
    if element.element_type != ElementType.TABLE:
        return True, "Not applicable"
    dependents = meta.foreign_key_dependents
    if not dependents:
        return True, "No foreign keys reference this table"
    tables = sorted({d["table"] for d in dependents})
    details = {"dependents": dependents}
    if ctx.safety.allow_risky_operations:
        return True, f"Referenced by {', '.join(tables)} (risky operations allowed)", details
    return False, f"Referenced by foreign keys in {', '.join(tables)}", details


def _production_table(element, meta, ctx):
    if element.element_type != ElementType.TABLE or ctx.environment != "production":
        return True, "Not a production table deprecation"
    if ctx.safety.allow_risky_operations:
        return True, "Production table deprecation allowed by configuration"
    return False, "Deprecating a whole table in production"


def _table_has_data(element, meta, ctx):
    if element.element_type != ElementType.TABLE or meta.row_count is None:
        return True, "Not applicable"
    if meta.row_count == 0:
        return True, "Table is empty"
    details = {"row_count": meta.row_count}
    if ctx.safety.allow_risky_operations:
        return True, f"Table holds {meta.row_count} rows (risky operations allowed)", details
    return False, f"Table holds {meta.row_count} rows", details


def _dependency_fanout(element, meta, ctx):
    count = len(meta.foreign_key_dependents)
    if count > 5:
        return False, f"{count} dependents make the rename transaction large", {"dependents": count}
    return True, f"{count} dependents"


def _backup_available(element, meta, ctx):
    if ctx.safety.require_backup and not ctx.backups_enabled:
        return False, "A backup is required but backups are disabled"
    return True, "Backup requirements satisfied"


DEFAULT_CHECKS = [
    SafetyCheck("element-exists", "Element exists in the schema", RiskLevel.CRITICAL, _element_exists),
    SafetyCheck("identifier-valid", "Identifier can be renamed safely", RiskLevel.CRITICAL, _identifier_valid),
    SafetyCheck("naming-collision", "Deprecated name does not collide", RiskLevel.CRITICAL, _naming_collision),
    SafetyCheck("parent-table-conflict", "Parent table is not renamed in the same batch", RiskLevel.CRITICAL, _parent_table_conflict),
    SafetyCheck("foreign-key-dependents", "No foreign keys reference the table", RiskLevel.HIGH, _foreign_key_dependents),
    SafetyCheck("production-table", "Table deprecations in production", RiskLevel.HIGH, _production_table),
    SafetyCheck("table-has-data", "Table holds no rows", RiskLevel.MEDIUM, _table_has_data),
    SafetyCheck("dependency-fanout", "At most five dependents", RiskLevel.MEDIUM, _dependency_fanout),
    SafetyCheck("backup-available", "Backups available when required", RiskLevel.HIGH, _backup_available),
]


# =============================================================================
# Evaluator
# =============================================================================

class SafetyCheckEvaluator:
    """Runs the registered checks against a batch of elements."""

    def __init__(self, config: Optional[SafetyConfig] = None, checks: Optional[List[SafetyCheck]] = None):
        self.config = config or SafetyConfig()
        self.checks: List[SafetyCheck] = list(checks if checks is not None else DEFAULT_CHECKS)

    def register(self, check: SafetyCheck) -> None:
        self.checks = [c for c in self.checks if c.name != check.name] + [check]

    def evaluate(
        self,
        elements: Sequence[DeprecatedElement],
        metadata: Dict[str, ElementMetadata],
        context: CheckContext,
    ) -> List[CheckResult]:
        """Run every non-skipped check; metadata is keyed by element.monitor_key."""
        skipped = set(self.config.skip_checks)
        results = []
        for element in elements:
            meta = metadata.get(element.monitor_key, ElementMetadata())
            for check in self.checks:
                if check.name in skipped:
                    continue
                results.append(self._run(check, element, meta, context))
        return results

    def _run(self, check: SafetyCheck, element, meta, context) -> CheckResult:
        try:
            outcome = check.predicate(element, meta, context)
        except Exception as e:
            # A broken check must never read as a pass
            logger.exception("Safety check %s raised", check.name)
            return CheckResult(
                name=check.name,
                passed=False,
                message=f"Check raised {type(e).__name__}: {e}",
                severity=RiskLevel.CRITICAL,
                element=element.original_name,
            )

        passed, message = outcome[0], outcome[1]
        details = outcome[2] if len(outcome) > 2 else {}
        return CheckResult(
            name=check.name,
            passed=bool(passed),
            message=message,
            severity=check.severity,
            element=element.original_name,
            details=details,
        )


def critical_failures(results: Sequence[CheckResult]) -> List[CheckResult]:
    return [r for r in results if not r.passed and r.severity == RiskLevel.CRITICAL]


def aggregate_risk(results: Sequence[CheckResult]) -> RiskLevel:
    """Highest severity among failed checks, or LOW if everything passed."""
    failed = [r.severity for r in results if not r.passed]
    return max(failed) if failed else RiskLevel.LOW


def requires_approval(risk: RiskLevel) -> bool:
    return risk >= RiskLevel.HIGH


def summarize(results: Sequence[CheckResult]) -> Dict[str, Any]:
    """Totals and failures by severity, for display and plan files."""
    failed = [r for r in results if not r.passed]
    by_severity: Dict[str, int] = {}
    for r in failed:
        by_severity[r.severity.label] = by_severity.get(r.severity.label, 0) + 1
    return {
        "total": len(results),
        "passed": len(results) - len(failed),
        "failed": len(failed),
        "failed_by_severity": by_severity,
        "critical_failures": [f"{r.element}: {r.name}" for r in critical_failures(results)],
        "risk_level": aggregate_risk(results).label,
    }
