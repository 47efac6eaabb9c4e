"""
Payflow Hub - Workflows Router

Status transitions (single and bulk), audit history and undo.
"""

from fastapi import APIRouter, HTTPException, Query, Depends
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field
import logging

from services.errors import WorkflowError
from services.workflow_engine import Actor, WorkflowEngine
from .auth import get_current_actor
from .errors import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])

# Services - set by main app
workflow_service = None
bulk_coordinator = None
undo_service = None

def set_dependencies(service, bulk, undo):
    global workflow_service, bulk_coordinator, undo_service
    workflow_service = service
    bulk_coordinator = bulk
    undo_service = undo


# ==================== MODELS ====================

class TransitionRequest(BaseModel):
    to_status: str
    expected_status: Optional[str] = None
    rejection_reason: Optional[str] = None
    paid_date: Optional[str] = None
    payment_reference: Optional[str] = None
    admin_comment: Optional[str] = None
    assignee_id: Optional[str] = None

    def side_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"to_status", "expected_status"}, exclude_none=True)


class BulkTransitionRequest(TransitionRequest):
    record_ids: List[str] = Field(..., min_length=1)


# ==================== TRANSITIONS ====================

@router.post("/bulk-transition")
async def bulk_transition(req: BulkTransitionRequest, actor: Actor = Depends(get_current_actor)):
    """
    Apply one transition to many records.

    Item failures are reported in the result, never as an HTTP error.
    """
    try:
        result = await bulk_coordinator.bulk_apply(
            req.record_ids, req.to_status, actor, fields=req.side_fields()
        )
    except WorkflowError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/{record_id}/transition")
async def transition_record(record_id: str, req: TransitionRequest, actor: Actor = Depends(get_current_actor)):
    try:
        result = await workflow_service.transition(
            record_id,
            req.to_status,
            actor,
            fields=req.side_fields(),
            expected_status=req.expected_status,
        )
    except WorkflowError as e:
        raise http_error(e)

    response = result.to_dict()
    if result.changed:
        action = await undo_service.offer_undo(result.event.id)
        response["undo"] = action.to_dict() if action else None
    return response


@router.get("/{record_id}/available-transitions")
async def get_available_transitions(record_id: str, actor: Actor = Depends(get_current_actor)):
    """Statuses the current actor may move this record to."""
    try:
        record = await workflow_service.get_record(record_id)
    except WorkflowError as e:
        raise http_error(e)
    return {
        "record_id": record_id,
        "current_status": record.status,
        "available": WorkflowEngine.available_transitions(record, actor),
    }


# ==================== HISTORY ====================

@router.get("/{record_id}/history")
async def get_history(record_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        events = await workflow_service.history(record_id)
    except WorkflowError as e:
        raise http_error(e)
    return {"record_id": record_id, "events": [e.to_dict() for e in events]}


@router.get("/{record_id}/status-at")
async def get_status_at(
    record_id: str,
    at: datetime = Query(..., description="ISO timestamp"),
    actor: Actor = Depends(get_current_actor),
):
    """Reconstruct the record's status at a point in time from the audit stream."""
    try:
        status = await workflow_service.status_at(record_id, at)
    except WorkflowError as e:
        raise http_error(e)
    return {"record_id": record_id, "at": at.isoformat(), "status": status}


# ==================== UNDO ====================

@router.get("/events/{event_id}/undo")
async def get_undo_offer(event_id: str, actor: Actor = Depends(get_current_actor)):
    action = await undo_service.offer_undo(event_id)
    if action is None:
        raise HTTPException(status_code=404, detail="No undo available for this event")
    return action.to_dict()


@router.post("/events/{event_id}/undo")
async def undo_event(event_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        result = await undo_service.undo(event_id, actor)
    except WorkflowError as e:
        raise http_error(e)
    return result.to_dict()
