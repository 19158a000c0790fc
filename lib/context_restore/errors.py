"""Error taxonomy for context restoration and recovery.

Every error carries a stable ``code`` so failed results can report which
failure happened without the caller catching anything.
"""

from typing import Any, Optional


class RecoveryError(Exception):
    """Base exception for restoration and recovery operations."""
    code = "recovery_error"


class AccessorUnavailable(RecoveryError):
    """Storage cannot be read or written."""
    code = "accessor_unavailable"


class MalformedStructure(RecoveryError):
    """A state key holds a value of the wrong Redis type."""
    code = "malformed_structure"


class IntegrityViolation(RecoveryError):
    """Snapshot payload does not match its integrity hash."""
    code = "integrity_violation"


class SchemaIncompatible(RecoveryError):
    """Snapshot was written with an unsupported schema version."""
    code = "schema_incompatible"


class SnapshotNotFound(RecoveryError):
    """No snapshot matches the requested reference."""
    code = "snapshot_not_found"


class StepTimeout(RecoveryError):
    """A recovery step exceeded its timeout."""
    code = "step_timeout"


class StepFailed(RecoveryError):
    """A recovery step handler reported failure."""
    code = "step_failed"


class CriticalValidationFailed(RecoveryError):
    """A critical validation check failed after execution."""
    code = "critical_validation_failed"


class RecoveryAlreadyInProgress(RecoveryError):
    """Another recovery run holds the recovery lock."""
    code = "recovery_already_in_progress"


class RecoveryEscalated(RecoveryError):
    """A step with failure mode ``escalate`` failed.

    Carries the partial RecoveryResult so the caller can see which steps ran.
    """
    code = "recovery_escalated"

    def __init__(self, message: str, result: Optional[Any] = None, step_id: Optional[str] = None):
        super().__init__(message)
        self.result = result
        self.step_id = step_id


def error_code(exc: BaseException) -> str:
    """Return the taxonomy code for an exception."""
    if isinstance(exc, RecoveryError):
        return exc.code
    return StepFailed.code
