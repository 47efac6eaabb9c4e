"""
Payflow Hub - Multi-Kind Workflow Engine Service

This module implements the deterministic state machine for record workflows
across all record kinds. One transition table per kind replaces the status
logic each review screen used to carry on its own.

The workflow engine is pure business logic with no direct HTTP or DB calls.
All state transitions are deterministic and can be covered by unit tests.

Record Kinds Supported:
- invoice: Full review workflow (manager -> operations -> finance)
- other_invoice: Same workflow as guest invoices
- payslip: Operations/finance workflow without manager review
- assignment: pending -> confirmed -> cancelled
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Tuple, Any, FrozenSet, Iterable
import logging

from dateutil import parser as date_parser

from .errors import (
    WorkflowError,
    IllegalTransitionError,
    UnauthorizedError,
    MissingRequiredFieldError,
)
from .records import Record, RecordKind, Workflow, utc_now, parse_timestamp

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS, ROLE & EVENT DEFINITIONS
# =============================================================================

class WorkflowStatus(str, Enum):
    """
    Workflow status values. Shared across all record kinds.
    Not all statuses apply to all kinds.
    """
    # Invoice / payslip pipeline
    SUBMITTED = "submitted"
    PENDING_MANAGER = "pending_manager"
    APPROVED_BY_MANAGER = "approved_by_manager"
    PENDING_ADMIN = "pending_admin"                 # Operations review
    READY_FOR_PAYMENT = "ready_for_payment"
    PAID = "paid"
    REJECTED = "rejected"
    ARCHIVED = "archived"                           # Closed, no payment needed

    # Assignment pipeline
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class ActorRole(str, Enum):
    """Roles supplied by the identity provider."""
    SUBMITTER = "submitter"
    MANAGER = "manager"
    FINANCE = "finance"
    OPERATIONS = "operations"
    ADMIN = "admin"
    VIEWER = "viewer"


class AuditEventType(str, Enum):
    STATUS_CHANGED = "status_changed"
    FIELD_EDITED = "field_edited"
    NOTE_ADDED = "note_added"
    TAG_CHANGED = "tag_changed"
    EXTRACTION_COMPLETED = "extraction_completed"


@dataclass(frozen=True)
class Actor:
    """
    The caller of an operation.

    `delegate_for` holds the ids of managers this actor currently stands in for
    (approval delegations active today).
    """
    actor_id: str
    role: str
    delegate_for: FrozenSet[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN.value

    @property
    def is_read_only(self) -> bool:
        return self.role == ActorRole.VIEWER.value


# =============================================================================
# AUDIT EVENT
# =============================================================================

class AuditEvent:
    """A single immutable entry in a record's audit trail."""

    def __init__(
        self,
        record_id: str,
        actor_id: Optional[str],
        event_type: str,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        payload_diff: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None,
    ):
        self.id = id or str(uuid.uuid4())
        self.record_id = record_id
        self.actor_id = actor_id
        self.event_type = event_type
        self.from_status = from_status
        self.to_status = to_status
        self.payload_diff = payload_diff or {}
        self.created_at = parse_timestamp(created_at) or utc_now()

    @property
    def is_status_change(self) -> bool:
        return self.event_type == AuditEventType.STATUS_CHANGED.value

    @property
    def undo_of(self) -> Optional[str]:
        return self.payload_diff.get("undo_of")

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "payload_diff": self.payload_diff,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AuditEvent":
        return cls(
            id=data["id"],
            record_id=data["record_id"],
            actor_id=data.get("actor_id"),
            event_type=data["event_type"],
            from_status=data.get("from_status"),
            to_status=data.get("to_status"),
            payload_diff=data.get("payload_diff") or {},
            created_at=data.get("created_at"),
        )

    def __repr__(self) -> str:
        return (
            f"AuditEvent({self.event_type} {self.record_id} "
            f"{self.from_status}->{self.to_status} at {self.created_at.isoformat()})"
        )


# =============================================================================
# TRANSITION RULES
# =============================================================================

@dataclass(frozen=True)
class TransitionRule:
    """
    One edge of a transition table.

    roles:          roles allowed to take the edge
    owner_may:      the record owner may take the edge whatever their role
    forbid_owner:   the owner may NOT take the edge (self-approval), admins exempt
    assignee_only:  roles that must be the assignee (or an active delegate)
    required:       fields that must be supplied
    accepts:        optional fields copied onto the workflow when supplied
    clears:         workflow fields reset to None
    """
    roles: FrozenSet[str] = frozenset()
    owner_may: bool = False
    forbid_owner: bool = False
    assignee_only: FrozenSet[str] = frozenset()
    required: Tuple[str, ...] = ()
    accepts: Tuple[str, ...] = ()
    clears: Tuple[str, ...] = ()
    assign_to_actor: bool = False
    backward: bool = False

    def check_actor(self, actor: Actor, is_owner: bool, is_assignee: bool) -> Optional[str]:
        """Return a denial reason, or None when the actor may take this edge."""
        if actor.is_read_only:
            return f"Role '{actor.role}' is read-only"
        if self.forbid_owner and is_owner and not actor.is_admin:
            return "You cannot approve or reject your own record"
        if actor.role in self.roles:
            if actor.role in self.assignee_only and not is_assignee:
                return "Only the assigned reviewing manager (or their delegate) can do this"
            return None
        if self.owner_may and is_owner:
            return None
        return f"Role '{actor.role}' is not permitted to make this transition"


def _roles(*roles: ActorRole) -> FrozenSet[str]:
    return frozenset(r.value for r in roles)


S = WorkflowStatus
R = ActorRole

ANY_WRITER = _roles(R.SUBMITTER, R.MANAGER, R.FINANCE, R.OPERATIONS, R.ADMIN)
MANAGER_OR_ADMIN = _roles(R.MANAGER, R.ADMIN)
OPS_OR_ADMIN = _roles(R.OPERATIONS, R.ADMIN)
FINANCE_OR_ADMIN = _roles(R.FINANCE, R.ADMIN)
ADMIN_ONLY = _roles(R.ADMIN)
MANAGER_ONLY = _roles(R.MANAGER)

REJECT_FIELDS = ("rejection_reason",)
PAY_FIELDS = ("paid_date",)


def _review(roles: FrozenSet[str], **kwargs) -> TransitionRule:
    """Manager review edge: assignee-only for managers, never the owner."""
    return TransitionRule(roles=roles, forbid_owner=True, assignee_only=MANAGER_ONLY, **kwargs)


# Format: {kind: {current_status: {requested_status: TransitionRule}}}
# `None` as current status is the submission edge.

INVOICE_WORKFLOW: Dict[Optional[str], Dict[str, TransitionRule]] = {
    None: {
        S.SUBMITTED.value: TransitionRule(roles=ANY_WRITER, accepts=("assignee_id",)),
    },
    S.SUBMITTED.value: {
        S.PENDING_MANAGER.value: TransitionRule(
            roles=OPS_OR_ADMIN, owner_may=True, accepts=("assignee_id",)
        ),
        S.APPROVED_BY_MANAGER.value: _review(MANAGER_OR_ADMIN, assign_to_actor=True),
        S.REJECTED.value: _review(
            MANAGER_OR_ADMIN, required=REJECT_FIELDS, accepts=("admin_comment",)
        ),
    },
    S.PENDING_MANAGER.value: {
        S.APPROVED_BY_MANAGER.value: _review(MANAGER_OR_ADMIN, assign_to_actor=True),
        S.PENDING_ADMIN.value: _review(MANAGER_OR_ADMIN, assign_to_actor=True),
        S.READY_FOR_PAYMENT.value: TransitionRule(roles=ADMIN_ONLY, accepts=("admin_comment",)),
        S.REJECTED.value: _review(
            MANAGER_OR_ADMIN, required=REJECT_FIELDS, accepts=("admin_comment",)
        ),
    },
    S.APPROVED_BY_MANAGER.value: {
        S.PENDING_ADMIN.value: TransitionRule(roles=OPS_OR_ADMIN, accepts=("admin_comment",)),
        S.READY_FOR_PAYMENT.value: TransitionRule(roles=OPS_OR_ADMIN, accepts=("admin_comment",)),
        S.REJECTED.value: TransitionRule(
            roles=OPS_OR_ADMIN, required=REJECT_FIELDS, accepts=("admin_comment",)
        ),
        # Recall: the approving manager or an admin sends it back for review
        S.PENDING_MANAGER.value: TransitionRule(
            roles=MANAGER_OR_ADMIN, assignee_only=MANAGER_ONLY, backward=True
        ),
    },
    S.PENDING_ADMIN.value: {
        S.READY_FOR_PAYMENT.value: TransitionRule(roles=OPS_OR_ADMIN, accepts=("admin_comment",)),
        S.REJECTED.value: TransitionRule(
            roles=OPS_OR_ADMIN, required=REJECT_FIELDS, accepts=("admin_comment",)
        ),
        S.PENDING_MANAGER.value: TransitionRule(roles=ADMIN_ONLY, backward=True),
    },
    S.READY_FOR_PAYMENT.value: {
        S.PAID.value: TransitionRule(
            roles=FINANCE_OR_ADMIN, required=PAY_FIELDS, accepts=("payment_reference",)
        ),
        S.ARCHIVED.value: TransitionRule(roles=FINANCE_OR_ADMIN, accepts=("admin_comment",)),
        S.REJECTED.value: TransitionRule(
            roles=FINANCE_OR_ADMIN, required=REJECT_FIELDS, accepts=("admin_comment",)
        ),
        S.PENDING_MANAGER.value: TransitionRule(roles=ADMIN_ONLY, backward=True),
    },
    S.PAID.value: {
        S.READY_FOR_PAYMENT.value: TransitionRule(
            roles=FINANCE_OR_ADMIN, clears=("paid_date", "payment_reference"), backward=True
        ),
    },
    S.ARCHIVED.value: {
        S.READY_FOR_PAYMENT.value: TransitionRule(roles=FINANCE_OR_ADMIN, backward=True),
    },
    S.REJECTED.value: {
        # Re-submission
        S.PENDING_MANAGER.value: TransitionRule(
            roles=MANAGER_OR_ADMIN,
            owner_may=True,
            assignee_only=MANAGER_ONLY,
            clears=("rejection_reason",),
        ),
    },
}

PAYSLIP_WORKFLOW: Dict[Optional[str], Dict[str, TransitionRule]] = {
    None: {
        S.SUBMITTED.value: TransitionRule(roles=_roles(R.OPERATIONS, R.FINANCE, R.ADMIN)),
    },
    S.SUBMITTED.value: {
        S.READY_FOR_PAYMENT.value: TransitionRule(roles=OPS_OR_ADMIN, accepts=("admin_comment",)),
        S.REJECTED.value: TransitionRule(
            roles=OPS_OR_ADMIN, required=REJECT_FIELDS, accepts=("admin_comment",)
        ),
    },
    S.READY_FOR_PAYMENT.value: {
        S.PAID.value: TransitionRule(
            roles=_roles(R.FINANCE, R.OPERATIONS, R.ADMIN),
            required=PAY_FIELDS,
            accepts=("payment_reference",),
        ),
        S.ARCHIVED.value: TransitionRule(roles=FINANCE_OR_ADMIN),
        S.SUBMITTED.value: TransitionRule(roles=ADMIN_ONLY, backward=True),
    },
    S.PAID.value: {
        S.READY_FOR_PAYMENT.value: TransitionRule(
            roles=_roles(R.FINANCE, R.OPERATIONS, R.ADMIN),
            clears=("paid_date", "payment_reference"),
            backward=True,
        ),
    },
    S.ARCHIVED.value: {
        S.READY_FOR_PAYMENT.value: TransitionRule(roles=FINANCE_OR_ADMIN, backward=True),
    },
    S.REJECTED.value: {
        S.SUBMITTED.value: TransitionRule(roles=OPS_OR_ADMIN, clears=("rejection_reason",)),
    },
}

ASSIGNMENT_WORKFLOW: Dict[Optional[str], Dict[str, TransitionRule]] = {
    None: {
        S.PENDING.value: TransitionRule(roles=ANY_WRITER),
    },
    S.PENDING.value: {
        S.CONFIRMED.value: TransitionRule(roles=_roles(R.MANAGER, R.OPERATIONS, R.ADMIN)),
        S.CANCELLED.value: TransitionRule(
            roles=_roles(R.MANAGER, R.OPERATIONS, R.ADMIN), owner_may=True,
            accepts=("admin_comment",),
        ),
    },
    S.CONFIRMED.value: {
        S.CANCELLED.value: TransitionRule(
            roles=_roles(R.MANAGER, R.OPERATIONS, R.ADMIN), accepts=("admin_comment",)
        ),
        S.PENDING.value: TransitionRule(
            roles=_roles(R.MANAGER, R.OPERATIONS, R.ADMIN), backward=True
        ),
    },
    S.CANCELLED.value: {
        S.PENDING.value: TransitionRule(roles=OPS_OR_ADMIN, backward=True),
    },
}

WORKFLOW_DEFINITIONS: Dict[str, Dict[Optional[str], Dict[str, TransitionRule]]] = {
    RecordKind.INVOICE.value: INVOICE_WORKFLOW,
    RecordKind.OTHER_INVOICE.value: INVOICE_WORKFLOW,
    RecordKind.PAYSLIP.value: PAYSLIP_WORKFLOW,
    RecordKind.ASSIGNMENT.value: ASSIGNMENT_WORKFLOW,
}

# Statuses that trigger the notification sink
NOTIFY_ON_STATUSES = frozenset({
    S.APPROVED_BY_MANAGER.value,
    S.REJECTED.value,
    S.PAID.value,
})


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class TransitionDecision:
    """Outcome of validating one transition request."""
    allowed: bool
    error: Optional[WorkflowError] = None
    rule: Optional[TransitionRule] = None
    workflow: Optional[Workflow] = None
    event: Optional[AuditEvent] = None

    @classmethod
    def deny(cls, error: WorkflowError) -> "TransitionDecision":
        return cls(allowed=False, error=error)

    def raise_for_denial(self) -> None:
        if not self.allowed and self.error is not None:
            raise self.error


def _parse_paid_date(value: Any, today: date) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return today.isoformat()
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date_parser.parse(str(value)).date().isoformat()
    except (ValueError, OverflowError):
        raise MissingRequiredFieldError("paid_date", f"paid_date '{value}' is not a valid date")


# =============================================================================
# MAIN WORKFLOW ENGINE
# =============================================================================

class WorkflowEngine:
    """
    Multi-kind record workflow state machine.

    Reads `kind` from the record and chooses the appropriate transition table.
    """

    @staticmethod
    def get_workflow_definition(kind: str) -> Dict[Optional[str], Dict[str, TransitionRule]]:
        """Get the transition table for a record kind."""
        if kind not in WORKFLOW_DEFINITIONS:
            raise IllegalTransitionError(f"Unknown record kind '{kind}'")
        return WORKFLOW_DEFINITIONS[kind]

    @staticmethod
    def get_initial_status(kind: str) -> str:
        definition = WorkflowEngine.get_workflow_definition(kind)
        return next(iter(definition[None]))

    @staticmethod
    def get_statuses_for_kind(kind: str) -> List[str]:
        """Every status reachable in the kind's table, in table order."""
        definition = WorkflowEngine.get_workflow_definition(kind)
        statuses: List[str] = []
        for current, edges in definition.items():
            for status in ([current] if current else []) + list(edges):
                if status not in statuses:
                    statuses.append(status)
        return statuses

    @staticmethod
    def get_rule(kind: str, current_status: Optional[str], requested_status: str) -> Optional[TransitionRule]:
        definition = WorkflowEngine.get_workflow_definition(kind)
        return definition.get(current_status, {}).get(requested_status)

    @staticmethod
    def can_transition(
        kind: str,
        current_status: Optional[str],
        requested_status: str
    ) -> Tuple[bool, str]:
        """
        Check if an edge exists in the kind's table (role checks excluded).

        Returns:
            (can_transition, reason)
        """
        try:
            definition = WorkflowEngine.get_workflow_definition(kind)
        except IllegalTransitionError as e:
            return (False, e.message)

        if requested_status not in WorkflowEngine.get_statuses_for_kind(kind):
            return (False, f"'{requested_status}' is not a {kind} status")

        edges = definition.get(current_status)
        if not edges:
            return (False, f"No transitions defined from '{current_status}' in {kind} workflow")

        if requested_status not in edges:
            return (
                False,
                f"Cannot move {kind} from '{current_status}' to '{requested_status}'. "
                f"Valid: {list(edges.keys())}"
            )

        return (True, "Transition allowed")

    @staticmethod
    def is_assignee(record: Record, actor: Actor) -> bool:
        """Unassigned records may be picked up by any manager."""
        assignee = record.workflow.assignee_id
        if assignee is None:
            return True
        return actor.actor_id == assignee or assignee in actor.delegate_for

    @staticmethod
    def validate(
        record: Record,
        requested_status: str,
        actor: Actor,
        fields: Optional[Dict[str, Any]] = None,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> TransitionDecision:
        """
        Validate a transition and prepare what to persist.

        Denies on illegal edge, unauthorized actor or missing required field.
        On success returns the new Workflow (version bumped) and the
        status_changed AuditEvent describing it.
        """
        fields = fields or {}
        now = now or utc_now()
        today = today or now.date()
        current_status = record.workflow.status

        ok, reason = WorkflowEngine.can_transition(record.kind, current_status, requested_status)
        if not ok:
            return TransitionDecision.deny(IllegalTransitionError(reason, record_id=record.id))

        rule = WorkflowEngine.get_rule(record.kind, current_status, requested_status)

        denial = rule.check_actor(
            actor,
            is_owner=record.owner_id == actor.actor_id,
            is_assignee=WorkflowEngine.is_assignee(record, actor),
        )
        if denial:
            return TransitionDecision.deny(UnauthorizedError(denial, record_id=record.id))

        try:
            updates = WorkflowEngine._resolve_fields(rule, fields, today)
        except MissingRequiredFieldError as e:
            e.record_id = record.id
            return TransitionDecision.deny(e)

        previous = record.workflow
        new_workflow = replace(
            previous,
            status=requested_status,
            version=previous.version + 1,
            updated_at=now,
        )
        for name in rule.clears:
            setattr(new_workflow, name, None)
        # rejection_reason only survives while the record is rejected
        if requested_status != S.REJECTED.value:
            new_workflow.rejection_reason = None
        for name, value in updates.items():
            setattr(new_workflow, name, value)
        if rule.assign_to_actor:
            new_workflow.assignee_id = actor.actor_id

        event = AuditEvent(
            record_id=record.id,
            actor_id=actor.actor_id,
            event_type=AuditEventType.STATUS_CHANGED.value,
            from_status=current_status,
            to_status=requested_status,
            payload_diff=WorkflowEngine.diff_workflows(previous, new_workflow),
            created_at=now,
        )

        return TransitionDecision(
            allowed=True,
            rule=rule,
            workflow=new_workflow,
            event=event,
        )

    @staticmethod
    def validate_submission(kind: str, actor: Actor) -> Tuple[str, TransitionRule]:
        """Check the submission edge for a new record; returns (initial_status, rule)."""
        initial = WorkflowEngine.get_initial_status(kind)
        rule = WorkflowEngine.get_rule(kind, None, initial)
        denial = rule.check_actor(actor, is_owner=True, is_assignee=True)
        if denial:
            raise UnauthorizedError(denial)
        return initial, rule

    @staticmethod
    def _resolve_fields(rule: TransitionRule, fields: Dict[str, Any], today: date) -> Dict[str, Any]:
        updates: Dict[str, Any] = {}
        for name in rule.required:
            value = fields.get(name)
            if name == "paid_date":
                updates[name] = _parse_paid_date(value, today)
                continue
            if value is None or not str(value).strip():
                raise MissingRequiredFieldError(name)
            updates[name] = str(value).strip()
        for name in rule.accepts:
            value = fields.get(name)
            if value is not None and str(value).strip():
                updates[name] = str(value).strip()
        return updates

    @staticmethod
    def diff_workflows(before: Workflow, after: Workflow) -> Dict[str, Dict[str, Any]]:
        diff = {}
        for name in Workflow.SIDE_FIELDS:
            old, new = getattr(before, name), getattr(after, name)
            if old != new:
                diff[name] = {"from": old, "to": new}
        return diff

    @staticmethod
    def available_transitions(record: Record, actor: Actor) -> List[str]:
        """Statuses this actor may move the record to (required fields aside)."""
        edges = WorkflowEngine.get_workflow_definition(record.kind).get(record.workflow.status, {})
        is_owner = record.owner_id == actor.actor_id
        is_assignee = WorkflowEngine.is_assignee(record, actor)
        return [
            status for status, rule in edges.items()
            if rule.check_actor(actor, is_owner, is_assignee) is None
        ]

    @staticmethod
    def is_path_through_table(kind: str, edges: Iterable[Tuple[Optional[str], str]]) -> bool:
        """True if every (from, to) pair is a table edge and each starts where the last ended."""
        previous_to: Any = object()
        first = True
        for from_status, to_status in edges:
            if WorkflowEngine.get_rule(kind, from_status, to_status) is None:
                return False
            if not first and from_status != previous_to:
                return False
            previous_to = to_status
            first = False
        return True

    @staticmethod
    def get_terminal_statuses(kind: str) -> List[str]:
        """Statuses with no forward edge (only backward/reopen edges leave them)."""
        definition = WorkflowEngine.get_workflow_definition(kind)
        terminal = []
        for status in WorkflowEngine.get_statuses_for_kind(kind):
            edges = definition.get(status, {})
            if all(rule.backward for rule in edges.values()):
                terminal.append(status)
        return terminal

    @staticmethod
    def should_notify(event: AuditEvent) -> bool:
        return event.is_status_change and event.to_status in NOTIFY_ON_STATUSES
