"""
Migration Records
=================

A migration is the unit of planning and execution: a batch of element
deprecations with its safety findings, risk metadata and lifecycle phase.

Phase transitions are enforced here and every transition is appended to
an append-only history.

    planned ──> executing ──> completed ──> rolled_back
       │            │
       └────────────┴──> failed
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from dbretire.clock import parse_timestamp
from dbretire.elements import DeprecatedElement, ElementType
from dbretire.errors import InvalidStateError


class MigrationPhase(Enum):
    PLANNED = "planned"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    MigrationPhase.PLANNED: {MigrationPhase.EXECUTING, MigrationPhase.FAILED},
    MigrationPhase.EXECUTING: {MigrationPhase.COMPLETED, MigrationPhase.FAILED},
    MigrationPhase.COMPLETED: {MigrationPhase.ROLLED_BACK},
    MigrationPhase.ROLLED_BACK: set(),
    MigrationPhase.FAILED: set(),
}


class RiskLevel(IntEnum):
    """Aggregate risk of a migration, ordered by severity."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "RiskLevel":
        return cls[label.upper()]


# Seconds of estimated work per element type
_DURATION_BY_TYPE = {
    ElementType.TABLE: 30,
    ElementType.INDEX: 10,
}
_DEFAULT_DURATION = 5
_DURATION_PER_DEPENDENT = 5


def estimate_duration(elements: List[DeprecatedElement], dependents: Dict[str, int]) -> int:
    """Rough duration of a migration; dependents maps monitor_key to FK count."""
    total = 0
    for element in elements:
        total += _DURATION_BY_TYPE.get(element.element_type, _DEFAULT_DURATION)
        total += _DURATION_PER_DEPENDENT * dependents.get(element.monitor_key, 0)
    return total


def generate_migration_id(now: datetime) -> str:
    """Return ``dep_YYYYMMDDHHMMSS_xxxxxx``."""
    return f"dep_{now.strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(3)}"


@dataclass
class MigrationMetadata:
    risk_level: RiskLevel = RiskLevel.LOW
    estimated_duration_seconds: int = 0
    approval_required: bool = False
    created_by: str = "system"
    environment: str = "development"
    reason: str = ""
    backup_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "risk_level": self.risk_level.label,
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "approval_required": self.approval_required,
            "created_by": self.created_by,
            "environment": self.environment,
            "reason": self.reason,
            "backup_id": self.backup_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MigrationMetadata":
        return cls(
            risk_level=RiskLevel.from_label(data.get("risk_level", "low")),
            estimated_duration_seconds=data.get("estimated_duration_seconds", 0),
            approval_required=data.get("approval_required", False),
            created_by=data.get("created_by", "system"),
            environment=data.get("environment", "development"),
            reason=data.get("reason", ""),
            backup_id=data.get("backup_id"),
        )


@dataclass
class Migration:
    """A planned, executed or rolled back batch of deprecations."""
    id: str
    elements: List[DeprecatedElement]
    phase: MigrationPhase
    timestamp: datetime
    metadata: MigrationMetadata
    # CheckResult dicts, attached at planning time
    safety_checks: List[Dict[str, Any]] = field(default_factory=list)
    approval: Optional[Dict[str, str]] = None
    notes: List[str] = field(default_factory=list)
    phase_history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_approved(self) -> bool:
        return self.approval is not None

    def can_transition_to(self, phase: MigrationPhase) -> bool:
        return phase in ALLOWED_TRANSITIONS[self.phase]

    def transition_to(self, phase: MigrationPhase, at: datetime, note: Optional[str] = None) -> None:
        """Move to a new phase, recording it in the history."""
        if not self.can_transition_to(phase):
            raise InvalidStateError(
                f"Migration {self.id} cannot move from {self.phase.value} to {phase.value}"
            )
        self.phase_history.append({
            "from": self.phase.value,
            "to": phase.value,
            "at": at.isoformat(),
            "note": note,
        })
        self.phase = phase
        if note:
            self.notes.append(note)

    def add_note(self, note: str) -> None:
        self.notes.append(note)

    def approve(self, approved_by: str, at: datetime) -> None:
        if self.phase != MigrationPhase.PLANNED:
            raise InvalidStateError(
                f"Migration {self.id} is {self.phase.value}; only planned migrations can be approved"
            )
        self.approval = {"approved_by": approved_by, "approved_at": at.isoformat()}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "elements": [e.to_dict() for e in self.elements],
            "phase": self.phase.value,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata.to_dict(),
            "safety_checks": list(self.safety_checks),
            "approval": self.approval,
            "notes": list(self.notes),
            "phase_history": list(self.phase_history),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Migration":
        return cls(
            id=data["id"],
            elements=[DeprecatedElement.from_dict(e) for e in data.get("elements", [])],
            phase=MigrationPhase(data["phase"]),
            timestamp=parse_timestamp(data["timestamp"]),
            metadata=MigrationMetadata.from_dict(data.get("metadata", {})),
            safety_checks=list(data.get("safety_checks", [])),
            approval=data.get("approval"),
            notes=list(data.get("notes", [])),
            phase_history=list(data.get("phase_history", [])),
        )
