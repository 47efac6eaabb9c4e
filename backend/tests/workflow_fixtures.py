"""
Shared actors and record builders for the workflow tests.

Records are always built through real transitions so their audit history is
a genuine path through the transition table.
"""

from typing import Optional, Dict, Any

from services.records import Record
from services.workflow_engine import Actor


SUBMITTER = Actor("s1", "submitter")
OTHER_SUBMITTER = Actor("s2", "submitter")
MANAGER = Actor("m1", "manager")
OTHER_MANAGER = Actor("m2", "manager")
OPERATIONS = Actor("o1", "operations")
FINANCE = Actor("f1", "finance")
ADMIN = Actor("a1", "admin")
VIEWER = Actor("v1", "viewer")

REASON = {"rejection_reason": "missing bank details"}

# status -> steps from the initial status, as (to_status, actor, fields)
INVOICE_PATHS = {
    "submitted": [],
    "pending_manager": [("pending_manager", SUBMITTER, None)],
    "approved_by_manager": [
        ("pending_manager", SUBMITTER, None),
        ("approved_by_manager", MANAGER, None),
    ],
    "pending_admin": [
        ("pending_manager", SUBMITTER, None),
        ("pending_admin", MANAGER, None),
    ],
    "ready_for_payment": [
        ("pending_manager", SUBMITTER, None),
        ("approved_by_manager", MANAGER, None),
        ("ready_for_payment", OPERATIONS, None),
    ],
    "paid": [
        ("pending_manager", SUBMITTER, None),
        ("approved_by_manager", MANAGER, None),
        ("ready_for_payment", OPERATIONS, None),
        ("paid", FINANCE, {"paid_date": "2026-03-01"}),
    ],
    "archived": [
        ("pending_manager", SUBMITTER, None),
        ("approved_by_manager", MANAGER, None),
        ("ready_for_payment", OPERATIONS, None),
        ("archived", FINANCE, None),
    ],
    "rejected": [
        ("pending_manager", SUBMITTER, None),
        ("rejected", MANAGER, REASON),
    ],
}

PAYSLIP_PATHS = {
    "submitted": [],
    "ready_for_payment": [("ready_for_payment", OPERATIONS, None)],
    "paid": [
        ("ready_for_payment", OPERATIONS, None),
        ("paid", FINANCE, None),
    ],
    "rejected": [("rejected", OPERATIONS, REASON)],
}

ASSIGNMENT_PATHS = {
    "pending": [],
    "confirmed": [("confirmed", MANAGER, None)],
    "cancelled": [("cancelled", MANAGER, None)],
}

PATHS = {
    "invoice": INVOICE_PATHS,
    "other_invoice": INVOICE_PATHS,
    "payslip": PAYSLIP_PATHS,
    "assignment": ASSIGNMENT_PATHS,
}

SUBMITTERS = {
    "invoice": SUBMITTER,
    "other_invoice": SUBMITTER,
    "payslip": OPERATIONS,
    "assignment": SUBMITTER,
}


async def make_record(
    service,
    status: Optional[str] = None,
    kind: str = "invoice",
    payload: Optional[Dict[str, Any]] = None,
    assignee_id: Optional[str] = "m1",
) -> Record:
    """Submit a record and walk it to `status` (default: the kind's initial status)."""
    steps = PATHS[kind][status] if status else []
    record = await service.submit(
        kind,
        SUBMITTERS[kind],
        payload=payload or {},
        assignee_id=assignee_id,
    )
    for to_status, actor, fields in steps:
        await service.transition(record.id, to_status, actor, fields=fields)
    return await service.get_record(record.id)
