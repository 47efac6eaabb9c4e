"""
Payflow Hub - Workflow Service

Single-record transaction boundary. Every status change, field edit, note,
tag change and extraction result goes through here so that the store and the
audit stream never disagree.

Transition order:
1. Load record (RecordNotFound)
2. Optional expected_status precondition (StaleState)
3. Already in target state -> success, nothing written
4. WorkflowEngine.validate (IllegalTransition / Unauthorized / MissingRequiredField)
5. Compare-and-swap on (status, version) (StaleState)
6. Audit append; on any failure revert the workflow and raise AuditFailure
7. Schedule the notification in the background, never failing the transition

Field edits, tag changes, extraction results and submissions follow the same
rule: the store write is undone when its audit event cannot be written.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from functools import partial
from typing import Optional, Dict, List, Any, Set, Callable, Awaitable

from .audit_log import AuditLog
from .errors import (
    AuditFailureError,
    MissingRequiredFieldError,
    RecordNotFoundError,
    StaleStateError,
    UnauthorizedError,
)
from .manager_assignment import resolve_assignee
from .records import Record, RecordQuery, Workflow, normalize_tags, utc_now
from .record_store import RecordStore
from .workflow_engine import (
    Actor,
    ActorRole,
    AuditEvent,
    AuditEventType,
    WorkflowEngine,
)

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    """Outcome of a successful single-record transition."""
    record: Record
    changed: bool
    event: Optional[AuditEvent] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ok": True,
            "changed": self.changed,
            "record": self.record.to_dict(),
            "event": self.event.to_dict() if self.event else None,
        }
        if not self.changed:
            result["message"] = f"Record already in state '{self.record.status}'"
        return result


class WorkflowService:
    """
    Args:
        store: RecordStore driver
        audit: AuditLog driver
        notifier: optional NotificationService; runs in the background after
            notable transitions
    """

    def __init__(self, store: RecordStore, audit: AuditLog, notifier=None):
        self.store = store
        self.audit = audit
        self.notifier = notifier
        self._notifications: Set[asyncio.Task] = set()

    # ==================== READS ====================

    async def get_record(self, record_id: str) -> Record:
        record = await self.store.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def list_records(self, query: RecordQuery) -> List[Record]:
        return await self.store.list_by_filter(query)

    async def history(self, record_id: str) -> List[AuditEvent]:
        await self.get_record(record_id)
        return await self.audit.history(record_id)

    async def status_at(self, record_id: str, at: datetime) -> Optional[str]:
        await self.get_record(record_id)
        return await self.audit.status_at(record_id, at)

    # ==================== SUBMISSION ====================

    async def submit(
        self,
        kind: str,
        actor: Actor,
        payload: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        assignee_id: Optional[str] = None,
    ) -> Record:
        """
        Create a record in its kind's initial status with a null -> initial audit event.

        Kinds reviewed by a manager get an assignee: the one supplied, or
        else one picked from the manager directory. If the submission event
        cannot be written the record is removed again.
        """
        initial, rule = WorkflowEngine.validate_submission(kind, actor)

        now = utc_now()
        workflow = Workflow(status=initial, updated_at=now)
        if "assignee_id" in rule.accepts:
            workflow.assignee_id = assignee_id or await resolve_assignee(self.store, payload or {})

        record = Record(
            id=Record.new_id(),
            kind=kind,
            owner_id=actor.actor_id,
            workflow=workflow,
            payload=dict(payload or {}),
            tags=normalize_tags(tags),
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(record)

        diff = {}
        if workflow.assignee_id:
            diff["assignee_id"] = {"from": None, "to": workflow.assignee_id}
        event = AuditEvent(
            record_id=record.id,
            actor_id=actor.actor_id,
            event_type=AuditEventType.STATUS_CHANGED.value,
            from_status=None,
            to_status=initial,
            payload_diff=diff,
            created_at=now,
        )
        await self._append_or_rollback(event, partial(self.store.delete, record.id))

        logger.info("Record submitted: id=%s kind=%s owner=%s", record.id, kind, actor.actor_id)
        return record

    # ==================== TRANSITIONS ====================

    async def transition(
        self,
        record_id: str,
        to_status: str,
        actor: Actor,
        fields: Optional[Dict[str, Any]] = None,
        expected_status: Optional[str] = None,
        restore_fields: Optional[Dict[str, Any]] = None,
        audit_extra: Optional[Dict[str, Any]] = None,
        today: Optional[date] = None,
    ) -> TransitionResult:
        """
        Move one record to `to_status`.

        Args:
            fields: side fields for the edge (rejection_reason, paid_date, ...)
            expected_status: the status the caller last saw
            restore_fields: workflow fields to set verbatim after validation
                (used by compensating transitions)
            audit_extra: extra keys merged into the audit payload_diff
                (e.g. {"bulk": True}, {"undo_of": event_id})
        """
        record = await self.get_record(record_id)
        current_status = record.workflow.status

        if expected_status is not None and expected_status != current_status:
            raise StaleStateError(record_id=record_id)

        if current_status == to_status:
            logger.info("Transition no-op: id=%s already %s", record_id, to_status)
            return TransitionResult(record=record, changed=False)

        fields = dict(fields or {})
        if restore_fields:
            for name, value in restore_fields.items():
                if value is not None and name not in fields:
                    fields[name] = value

        decision = WorkflowEngine.validate(record, to_status, actor, fields, today=today)
        if not decision.allowed:
            logger.warning(
                "Transition denied: id=%s %s->%s actor=%s role=%s reason=%s",
                record_id, current_status, to_status, actor.actor_id, actor.role,
                decision.error.message,
            )
            decision.raise_for_denial()

        new_workflow = decision.workflow
        event = decision.event
        if restore_fields:
            for name, value in restore_fields.items():
                setattr(new_workflow, name, value)
            event.payload_diff = WorkflowEngine.diff_workflows(record.workflow, new_workflow)
        if audit_extra:
            event.payload_diff.update(audit_extra)

        swapped = await self.store.compare_and_swap_status(
            record_id, current_status, record.workflow.version, new_workflow
        )
        if not swapped:
            logger.warning("Transition lost race: id=%s %s->%s", record_id, current_status, to_status)
            raise StaleStateError(record_id=record_id)

        await self._append_or_rollback(event, partial(self._revert, record, new_workflow))

        logger.info(
            "Transition applied: id=%s %s->%s actor=%s version=%s",
            record_id, current_status, to_status, actor.actor_id, new_workflow.version,
        )

        record.workflow = new_workflow
        record.updated_at = new_workflow.updated_at
        self._notify(record, event)
        return TransitionResult(record=record, changed=True, event=event)

    async def _append_or_rollback(
        self, event: AuditEvent, rollback: Optional[Callable[[], Awaitable[Any]]] = None
    ) -> None:
        """
        Append `event`; on any failure run `rollback` to undo the store write
        it describes, then raise AuditFailure. Cancellation is re-raised as is
        once the rollback has run.
        """
        try:
            await self.audit.append(event)
        except BaseException as e:
            logger.error(
                "Audit append failed: record=%s event=%s error=%r", event.record_id, event.event_type, e
            )
            if rollback is not None:
                await rollback()
            if isinstance(e, AuditFailureError) or not isinstance(e, Exception):
                raise
            raise AuditFailureError(
                f"Change rolled back, audit append failed: {e}", record_id=event.record_id
            ) from e

    async def _revert(self, record: Record, applied: Workflow) -> None:
        restored = replace(record.workflow, updated_at=utc_now())
        reverted = await self.store.compare_and_swap_status(
            record.id, applied.status, applied.version, restored
        )
        if reverted:
            logger.error("Audit append failed, reverted %s to %s", record.id, record.workflow.status)
        else:
            logger.error(
                "Audit append failed and revert lost a race: id=%s status=%s",
                record.id, applied.status,
            )

    def _notify(self, record: Record, event: AuditEvent) -> None:
        if self.notifier is None or not WorkflowEngine.should_notify(event):
            return
        snapshot = Record.from_dict(record.to_dict())
        task = asyncio.create_task(self._send_notification(snapshot, event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _send_notification(self, record: Record, event: AuditEvent) -> None:
        try:
            await self.notifier.notify_transition(record, event)
        except Exception as e:
            logger.warning("Notification failed for %s (%s): %s", record.id, event.to_status, e)

    async def drain_notifications(self) -> None:
        """Wait for background notifications still in flight."""
        while self._notifications:
            await asyncio.gather(*list(self._notifications))

    # ==================== AUDITED EDITS ====================

    def _check_can_edit(self, record: Record, actor: Actor) -> None:
        if actor.is_read_only:
            raise UnauthorizedError(f"Role '{actor.role}' is read-only", record_id=record.id)
        owner_only = {ActorRole.SUBMITTER.value, ActorRole.FINANCE.value}
        if actor.role in owner_only and record.owner_id != actor.actor_id:
            raise UnauthorizedError("Only the owner can edit this record", record_id=record.id)

    async def edit_fields(self, record_id: str, actor: Actor, changes: Dict[str, Any]) -> Record:
        """Edit payload fields. Never changes status; no-op edits write nothing."""
        record = await self.get_record(record_id)
        self._check_can_edit(record, actor)

        diff = {
            key: {"from": record.payload.get(key), "to": value}
            for key, value in (changes or {}).items()
            if record.payload.get(key) != value
        }
        if not diff:
            return record

        payload = {**record.payload, **{k: v["to"] for k, v in diff.items()}}
        await self.store.update_payload(record_id, payload)
        await self._append(
            record, actor, AuditEventType.FIELD_EDITED, diff,
            rollback=partial(self.store.update_payload, record_id, record.payload),
        )

        record.payload = payload
        logger.info("Fields edited: id=%s keys=%s", record_id, sorted(diff))
        return record

    async def record_extraction(self, record_id: str, actor: Actor, fields: Dict[str, Any]) -> Record:
        """Merge externally extracted fields into the payload."""
        record = await self.get_record(record_id)
        if actor.is_read_only:
            raise UnauthorizedError(f"Role '{actor.role}' is read-only", record_id=record_id)

        diff = {
            key: {"from": record.payload.get(key), "to": value}
            for key, value in (fields or {}).items()
            if record.payload.get(key) != value
        }
        payload = {**record.payload, **(fields or {})}
        rollback = None
        if diff:
            await self.store.update_payload(record_id, payload)
            rollback = partial(self.store.update_payload, record_id, record.payload)
        await self._append(record, actor, AuditEventType.EXTRACTION_COMPLETED, diff, rollback=rollback)

        record.payload = payload
        return record

    async def add_note(self, record_id: str, actor: Actor, text: str) -> AuditEvent:
        record = await self.get_record(record_id)
        if actor.is_read_only:
            raise UnauthorizedError(f"Role '{actor.role}' is read-only", record_id=record_id)
        if not text or not text.strip():
            raise MissingRequiredFieldError("note", "Note content is required", record_id=record_id)
        return await self._append(record, actor, AuditEventType.NOTE_ADDED, {"note": text.strip()})

    async def set_tags(self, record_id: str, actor: Actor, tags: List[str]) -> Record:
        record = await self.get_record(record_id)
        allowed = {ActorRole.ADMIN.value, ActorRole.MANAGER.value, ActorRole.OPERATIONS.value}
        if actor.role not in allowed and not (
            record.owner_id == actor.actor_id and not actor.is_read_only
        ):
            raise UnauthorizedError("Not permitted to change tags", record_id=record_id)

        new_tags = normalize_tags(tags)
        if new_tags == record.tags:
            return record

        await self.store.set_tags(record_id, new_tags)
        await self._append(
            record, actor, AuditEventType.TAG_CHANGED,
            {"tags": {"from": list(record.tags), "to": new_tags}},
            rollback=partial(self.store.set_tags, record_id, list(record.tags)),
        )
        record.tags = new_tags
        return record

    async def _append(
        self,
        record: Record,
        actor: Actor,
        event_type: AuditEventType,
        diff: Dict[str, Any],
        rollback: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            record_id=record.id,
            actor_id=actor.actor_id,
            event_type=event_type.value,
            payload_diff=diff,
        )
        await self._append_or_rollback(event, rollback)
        return event
