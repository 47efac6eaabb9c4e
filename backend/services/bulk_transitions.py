"""
Payflow Hub - Bulk Transition Coordinator

Applies one transition request to many records, one at a time. Each record
succeeds or fails on its own; a bad item never aborts the batch and the
coordinator never raises for item errors.

Cancellation is cooperative: `should_cancel` is polled before each item,
already-applied items stay applied and the unreached ids are reported as
`Cancelled` failures.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Callable

from . import settings
from .errors import BulkLimitExceededError, StorageFailureError, WorkflowError
from .workflow_engine import Actor
from .workflow_service import WorkflowService

logger = logging.getLogger(__name__)

CANCELLED = "Cancelled"


@dataclass
class BulkOperationResult:
    """Per-item outcome of a bulk request. success_count + len(failures) == len(record_ids)."""
    requested_status: str
    success_count: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    event_ids: List[str] = field(default_factory=list)
    cancelled: bool = False

    def record_success(self, record_id: str, event_id: Optional[str] = None) -> None:
        self.success_count += 1
        if event_id:
            self.event_ids.append(event_id)
        else:
            self.skipped.append(record_id)

    def record_failure(self, record_id: str, error: str, message: str) -> None:
        self.failures.append({
            "record_id": record_id,
            "error": error,
            "message": message,
        })

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def summary(self) -> str:
        """Human-readable line, e.g. '4 updated, 1 failed: IllegalTransition x1'."""
        if not self.failures:
            return f"{self.success_count} updated"
        by_error: Dict[str, int] = {}
        for failure in self.failures:
            by_error[failure["error"]] = by_error.get(failure["error"], 0) + 1
        detail = ", ".join(f"{name} x{count}" for name, count in sorted(by_error.items()))
        return f"{self.success_count} updated, {self.failure_count} failed: {detail}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested_status": self.requested_status,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "failures": self.failures,
            "skipped": self.skipped,
            "event_ids": self.event_ids,
            "cancelled": self.cancelled,
            "summary": self.summary(),
        }


class BulkTransitionCoordinator:

    def __init__(self, service: WorkflowService, max_records: Optional[int] = None):
        self.service = service
        self.max_records = max_records or settings.MAX_BULK_RECORDS

    async def bulk_apply(
        self,
        record_ids: List[str],
        requested_status: str,
        actor: Actor,
        fields: Optional[Dict[str, Any]] = None,
        should_cancel: Optional[Callable[[], Any]] = None,
    ) -> BulkOperationResult:
        """
        Apply `requested_status` to every id, in order.

        Raises:
            BulkLimitExceededError: more than max_records ids; nothing applied
        """
        if len(record_ids) > self.max_records:
            raise BulkLimitExceededError(
                f"Bulk requests are limited to {self.max_records} records, got {len(record_ids)}"
            )

        result = BulkOperationResult(requested_status=requested_status)

        for index, record_id in enumerate(record_ids):
            if should_cancel is not None and await self._poll(should_cancel):
                result.cancelled = True
                for remaining in record_ids[index:]:
                    result.record_failure(remaining, CANCELLED, "Bulk operation cancelled before this record")
                logger.info(
                    "Bulk %s cancelled after %d of %d records",
                    requested_status, index, len(record_ids),
                )
                break

            try:
                outcome = await self.service.transition(
                    record_id,
                    requested_status,
                    actor,
                    fields=fields,
                    audit_extra={"bulk": True},
                )
            except WorkflowError as e:
                result.record_failure(record_id, e.kind, e.message)
                continue
            except Exception as e:
                logger.exception("Unexpected error in bulk item %s", record_id)
                result.record_failure(record_id, StorageFailureError.kind, str(e))
                continue

            result.record_success(record_id, outcome.event.id if outcome.changed else None)

        logger.info(
            "Bulk %s by %s: %s", requested_status, actor.actor_id, result.summary()
        )
        return result

    @staticmethod
    async def _poll(should_cancel: Callable[[], Any]) -> bool:
        value = should_cancel()
        if inspect.isawaitable(value):
            value = await value
        return bool(value)
