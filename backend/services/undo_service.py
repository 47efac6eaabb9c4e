"""
Payflow Hub - Undo Service

Time-boxed compensating transitions. The grace window is enforced here, on
the server, against the audit event's timestamp; a client that disconnects
after offering undo cannot leave the record half-reverted.

An undo is an ordinary transition back to the event's from_status, with the
event's to_status as an optimistic precondition. It is audited as a new
status_changed event carrying `undo_of`.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from . import settings
from .audit_log import AuditLog
from .errors import (
    IllegalTransitionError,
    NotReversibleError,
    UnauthorizedError,
)
from .records import parse_timestamp, utc_now
from .workflow_engine import Actor, AuditEvent
from .workflow_service import WorkflowService, TransitionResult

logger = logging.getLogger(__name__)


@dataclass
class CompensatingAction:
    """Undo offer for one status_changed event."""
    event_id: str
    record_id: str
    revert_to_status: str
    expected_status: str
    expires_at: datetime
    restore_fields: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "record_id": self.record_id,
            "revert_to_status": self.revert_to_status,
            "expected_status": self.expected_status,
            "restore_fields": self.restore_fields,
            "expires_at": self.expires_at.isoformat(),
        }


class UndoService:

    def __init__(
        self,
        service: WorkflowService,
        audit: AuditLog,
        grace_seconds: Optional[float] = None,
    ):
        self.service = service
        self.audit = audit
        self.grace_seconds = settings.UNDO_GRACE_SECONDS if grace_seconds is None else grace_seconds

    def _is_undoable(self, event: AuditEvent) -> bool:
        return (
            event.is_status_change
            and event.from_status is not None
            and event.undo_of is None
        )

    async def offer_undo(self, event_id: str, now: Optional[datetime] = None) -> Optional[CompensatingAction]:
        """
        Build the undo offer for `event_id`.

        Returns None when the event is unknown, not a reversible status change,
        already compensated, or outside the grace window.
        """
        now = parse_timestamp(now) or utc_now()
        event = await self.audit.get(event_id)
        if event is None or not self._is_undoable(event):
            return None

        expires_at = event.created_at + timedelta(seconds=self.grace_seconds)
        if now > expires_at:
            return None
        if await self.audit.find_undo_of(event_id) is not None:
            return None

        restore = {
            name: change.get("from")
            for name, change in event.payload_diff.items()
            if isinstance(change, dict) and "from" in change
        }
        return CompensatingAction(
            event_id=event.id,
            record_id=event.record_id,
            revert_to_status=event.from_status,
            expected_status=event.to_status,
            expires_at=expires_at,
            restore_fields=restore,
        )

    async def apply_undo(
        self, action: CompensatingAction, actor: Actor, now: Optional[datetime] = None
    ) -> TransitionResult:
        """
        Run the compensating transition.

        Raises:
            NotReversibleError: window passed, already undone, or reverse edge denied
            StaleStateError: record moved on since the event
        """
        now = parse_timestamp(now) or utc_now()
        if action.is_expired(now):
            raise NotReversibleError(
                NotReversibleError.EXPIRED, "Undo window has expired", record_id=action.record_id
            )
        if await self.audit.find_undo_of(action.event_id) is not None:
            raise NotReversibleError(
                NotReversibleError.NOT_REVERSIBLE, "Change was already undone", record_id=action.record_id
            )

        try:
            result = await self.service.transition(
                action.record_id,
                action.revert_to_status,
                actor,
                expected_status=action.expected_status,
                restore_fields=action.restore_fields,
                audit_extra={"undo_of": action.event_id},
            )
        except (IllegalTransitionError, UnauthorizedError) as e:
            logger.warning("Undo refused for event %s: %s", action.event_id, e.message)
            raise NotReversibleError(
                NotReversibleError.NOT_REVERSIBLE, "state is final", record_id=action.record_id
            )

        logger.info(
            "Undo applied: event=%s record=%s back to %s",
            action.event_id, action.record_id, action.revert_to_status,
        )
        return result

    async def undo(self, event_id: str, actor: Actor, now: Optional[datetime] = None) -> TransitionResult:
        """offer_undo + apply_undo, reporting why an undo is unavailable."""
        now = parse_timestamp(now) or utc_now()
        action = await self.offer_undo(event_id, now=now)
        if action is not None:
            return await self.apply_undo(action, actor, now=now)

        event = await self.audit.get(event_id)
        if (
            event is not None
            and self._is_undoable(event)
            and now > event.created_at + timedelta(seconds=self.grace_seconds)
        ):
            raise NotReversibleError(
                NotReversibleError.EXPIRED, "Undo window has expired",
                record_id=event.record_id,
            )
        raise NotReversibleError(
            NotReversibleError.NOT_REVERSIBLE, "This change cannot be undone",
            record_id=event.record_id if event else None,
        )
