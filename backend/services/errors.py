"""
Payflow Hub - Workflow Errors

Every refusal the engine can produce. Single-record operations raise these;
the bulk coordinator catches them and records kind + message per item.
"""

from typing import Optional, Dict, Any


class WorkflowError(Exception):
    """Base class. `kind` is the stable identifier reported to callers."""

    kind = "WorkflowError"
    retryable = False

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.record_id = record_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }


class IllegalTransitionError(WorkflowError):
    """Edge not present in the kind's transition table."""
    kind = "IllegalTransition"


class UnauthorizedError(WorkflowError):
    """Role or ownership check failed."""
    kind = "Unauthorized"


class MissingRequiredFieldError(WorkflowError):
    kind = "MissingRequiredField"

    def __init__(self, field: str, message: Optional[str] = None, record_id: Optional[str] = None):
        super().__init__(message or f"{field} is required", record_id=record_id)
        self.field = field


class StaleStateError(WorkflowError):
    """Optimistic precondition failed: someone else changed the record first."""
    kind = "StaleState"
    retryable = True

    def __init__(self, message: str = "Record was modified by another user. Please refresh.",
                 record_id: Optional[str] = None):
        super().__init__(message, record_id=record_id)


class NotReversibleError(WorkflowError):
    kind = "NotReversible"

    EXPIRED = "expired"
    NOT_REVERSIBLE = "not_reversible"

    def __init__(self, code: str, message: str, record_id: Optional[str] = None):
        super().__init__(message, record_id=record_id)
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["code"] = self.code
        return data


class StorageFailureError(WorkflowError):
    kind = "StorageFailure"
    retryable = True


class AuditFailureError(StorageFailureError):
    """Audit append failed; the status change was rolled back."""
    kind = "AuditFailure"


class RecordNotFoundError(WorkflowError):
    kind = "RecordNotFound"

    def __init__(self, record_id: str):
        super().__init__(f"Record {record_id} not found", record_id=record_id)


class BulkLimitExceededError(WorkflowError):
    """Bulk request larger than MAX_BULK_RECORDS; nothing was applied."""
    kind = "BulkLimitExceeded"
