"""
Payflow Hub - Audit Log Router

Compliance view over the whole audit stream (admin only).
"""

from fastapi import APIRouter, HTTPException, Query, Depends
from typing import Optional
from datetime import date
import logging

from services.errors import WorkflowError
from services.workflow_engine import Actor
from .auth import get_current_actor
from .errors import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit-log", tags=["audit"])

# Audit log - set by main app
audit_log = None

def set_dependencies(audit):
    global audit_log
    audit_log = audit


@router.get("")
async def query_audit_log(
    record_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    limit: int = Query(500, ge=1, description="Capped at 2000"),
    actor: Actor = Depends(get_current_actor),
):
    """Audit events newest first, filtered by record, actor, type and day range."""
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    if from_date and to_date and to_date < from_date:
        raise HTTPException(status_code=400, detail="to_date must not be before from_date")

    try:
        events = await audit_log.query(
            record_id=record_id,
            actor_id=actor_id,
            event_type=event_type,
            from_date=from_date,
            to_date=to_date,
            limit=limit,
        )
    except WorkflowError as e:
        raise http_error(e)
    return {"events": [e.to_dict() for e in events], "count": len(events)}
