"""
Deprecation Errors
==================

Exception hierarchy for the deprecation subsystem. Everything raised on
purpose derives from DeprecationError so callers (the CLI in particular)
can branch on a single base class.
"""

from typing import Any, List, Optional


class DeprecationError(Exception):
    """Base class for all deprecation subsystem errors."""


class ValidationError(DeprecationError):
    """Malformed element spec, identifier or configuration."""


class NotFoundError(DeprecationError):
    """Unknown migration id."""


class InvalidStateError(DeprecationError):
    """Operation not legal in the migration's current phase."""


class UnsafeDeprecationError(DeprecationError):
    """A critical safety check failed while planning."""

    def __init__(self, message: str, failures: Optional[List[Any]] = None):
        super().__init__(message)
        self.failures = failures or []


class ApprovalRequiredError(DeprecationError):
    """Migration requires approval before it can be executed."""


class ExecutionError(DeprecationError):
    """The rename transaction failed; nothing was applied."""


class RollbackError(DeprecationError):
    """The reverse-rename transaction failed; nothing was reverted."""

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result


class BackupInvalidError(DeprecationError):
    """Backup validation failed while a valid backup is required."""

    def __init__(self, message: str, validation: Any = None):
        super().__init__(message)
        self.validation = validation


class DeprecatedAccessBlockedError(DeprecationError):
    """Strict mode refused a query that touches a deprecated element."""

    def __init__(self, message: str, elements: Optional[List[str]] = None):
        super().__init__(message)
        self.elements = elements or []
