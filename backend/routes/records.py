"""
Payflow Hub - Records Router

Submission, listing and audited edits of records.
"""

from fastapi import APIRouter, Query, Depends
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
import logging

from services.errors import WorkflowError
from services.records import RecordQuery
from services.workflow_engine import Actor
from .auth import get_current_actor
from .errors import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/records", tags=["records"])

# Services - set by main app
workflow_service = None
record_store = None

def set_dependencies(service, store):
    global workflow_service, record_store
    workflow_service = service
    record_store = store


# ==================== MODELS ====================

class SubmitRecordRequest(BaseModel):
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    assignee_id: Optional[str] = None


class EditFieldsRequest(BaseModel):
    changes: Dict[str, Any]


class NoteRequest(BaseModel):
    text: str


class TagsRequest(BaseModel):
    tags: List[str]


class ExtractionRequest(BaseModel):
    fields: Dict[str, Any]


def record_query(
    kind: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    owner_id: Optional[str] = Query(None),
    assignee_id: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(200, ge=1, le=1000),
) -> RecordQuery:
    """Filter object shared by list and flag endpoints."""
    return RecordQuery(
        kind=kind,
        status=status,
        owner_id=owner_id,
        assignee_id=assignee_id,
        tag=tag,
        skip=skip,
        limit=limit,
    )


# ==================== SUBMISSION & LISTING ====================

@router.post("")
async def submit_record(req: SubmitRecordRequest, actor: Actor = Depends(get_current_actor)):
    try:
        record = await workflow_service.submit(
            req.kind, actor, payload=req.payload, tags=req.tags, assignee_id=req.assignee_id
        )
    except WorkflowError as e:
        raise http_error(e)
    return {"ok": True, "record": record.to_dict()}


@router.get("")
async def list_records(query: RecordQuery = Depends(record_query), actor: Actor = Depends(get_current_actor)):
    try:
        records = await workflow_service.list_records(query)
    except WorkflowError as e:
        raise http_error(e)
    return {"records": [r.to_dict() for r in records], "count": len(records)}


@router.get("/status-counts")
async def get_status_counts(kind: Optional[str] = Query(None), actor: Actor = Depends(get_current_actor)):
    """Counts by kind then status."""
    try:
        by_kind = await record_store.status_counts(kind)
    except WorkflowError as e:
        raise http_error(e)
    total = sum(count for counts in by_kind.values() for count in counts.values())
    return {"total": total, "by_kind": by_kind}


@router.get("/{record_id}")
async def get_record(record_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        record = await workflow_service.get_record(record_id)
    except WorkflowError as e:
        raise http_error(e)
    return record.to_dict()


# ==================== AUDITED EDITS ====================

@router.patch("/{record_id}")
async def edit_record(record_id: str, req: EditFieldsRequest, actor: Actor = Depends(get_current_actor)):
    try:
        record = await workflow_service.edit_fields(record_id, actor, req.changes)
    except WorkflowError as e:
        raise http_error(e)
    return {"ok": True, "record": record.to_dict()}


@router.post("/{record_id}/notes")
async def add_note(record_id: str, req: NoteRequest, actor: Actor = Depends(get_current_actor)):
    try:
        event = await workflow_service.add_note(record_id, actor, req.text)
    except WorkflowError as e:
        raise http_error(e)
    return {"ok": True, "event": event.to_dict()}


@router.put("/{record_id}/tags")
async def set_tags(record_id: str, req: TagsRequest, actor: Actor = Depends(get_current_actor)):
    try:
        record = await workflow_service.set_tags(record_id, actor, req.tags)
    except WorkflowError as e:
        raise http_error(e)
    return {"ok": True, "tags": record.tags}


@router.post("/{record_id}/extraction")
async def record_extraction(record_id: str, req: ExtractionRequest, actor: Actor = Depends(get_current_actor)):
    """Accept the result of an external field extraction."""
    try:
        record = await workflow_service.record_extraction(record_id, actor, req.fields)
    except WorkflowError as e:
        raise http_error(e)
    return {"ok": True, "record": record.to_dict()}
