"""
Payflow Hub - Record Model

Records are the business entities that move through the approval pipeline:
guest invoices, other invoices, payslips and contractor shift assignments.
Each record embeds exactly one Workflow holding its current status.

The engine only ever looks inside `payload` when a kind adapter asks for a
specific field (see record_flags.py); everything else is opaque.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any


class RecordKind(str, Enum):
    """Record kinds. Each kind selects one transition table."""
    INVOICE = "invoice"                 # Guest invoices
    OTHER_INVOICE = "other_invoice"     # Supplier / one-off invoices
    PAYSLIP = "payslip"                 # Salary payslips
    ASSIGNMENT = "assignment"           # Contractor shift assignments


INVOICE_KINDS = (RecordKind.INVOICE.value, RecordKind.OTHER_INVOICE.value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Accept a datetime or an ISO string; always return an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_tags(tags) -> List[str]:
    """Trim, lower-case, drop blanks and duplicates. Sorted for stable output."""
    return sorted({str(t).strip().lower() for t in (tags or []) if str(t).strip()})


@dataclass
class Workflow:
    """Status sub-record. `version` is bumped on every status change."""
    status: str
    assignee_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    paid_date: Optional[str] = None
    payment_reference: Optional[str] = None
    admin_comment: Optional[str] = None
    version: int = 1
    updated_at: datetime = field(default_factory=utc_now)

    # Fields a transition may set or clear, in diff order
    SIDE_FIELDS = (
        "assignee_id",
        "rejection_reason",
        "paid_date",
        "payment_reference",
        "admin_comment",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "assignee_id": self.assignee_id,
            "rejection_reason": self.rejection_reason,
            "paid_date": self.paid_date,
            "payment_reference": self.payment_reference,
            "admin_comment": self.admin_comment,
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workflow":
        return cls(
            status=data["status"],
            assignee_id=data.get("assignee_id"),
            rejection_reason=data.get("rejection_reason"),
            paid_date=data.get("paid_date"),
            payment_reference=data.get("payment_reference"),
            admin_comment=data.get("admin_comment"),
            version=data.get("version", 1),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
        )


@dataclass
class Record:
    id: str
    kind: str
    owner_id: str
    workflow: Workflow
    payload: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def status(self) -> str:
        return self.workflow.status

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "owner_id": self.owner_id,
            "payload": dict(self.payload),
            "tags": list(self.tags),
            "workflow": self.workflow.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        return cls(
            id=data["id"],
            kind=data["kind"],
            owner_id=data["owner_id"],
            workflow=Workflow.from_dict(data["workflow"]),
            payload=dict(data.get("payload") or {}),
            tags=list(data.get("tags") or []),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
        )


@dataclass
class RecordQuery:
    """
    Explicit filter for list operations.

    Callers build one per request; nothing here is remembered between calls.
    """
    kind: Optional[str] = None
    status: Optional[str] = None
    owner_id: Optional[str] = None
    assignee_id: Optional[str] = None
    tag: Optional[str] = None
    record_ids: Optional[List[str]] = None
    skip: int = 0
    limit: int = 200

    def matches(self, record: Record) -> bool:
        if self.kind and record.kind != self.kind:
            return False
        if self.status and record.workflow.status != self.status:
            return False
        if self.owner_id and record.owner_id != self.owner_id:
            return False
        if self.assignee_id and record.workflow.assignee_id != self.assignee_id:
            return False
        if self.tag and self.tag.strip().lower() not in record.tags:
            return False
        if self.record_ids is not None and record.id not in self.record_ids:
            return False
        return True

    def to_mongo_filter(self) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if self.kind:
            query["kind"] = self.kind
        if self.status:
            query["workflow.status"] = self.status
        if self.owner_id:
            query["owner_id"] = self.owner_id
        if self.assignee_id:
            query["workflow.assignee_id"] = self.assignee_id
        if self.tag:
            query["tags"] = self.tag.strip().lower()
        if self.record_ids is not None:
            query["id"] = {"$in": list(self.record_ids)}
        return query
