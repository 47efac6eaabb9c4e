"""
Payflow Hub - Flags Router

Advisory duplicate and anomaly flags computed on demand over a record
snapshot. Nothing here is stored.
"""

from fastapi import APIRouter, HTTPException, Depends
from typing import Dict, Any
from pydantic import BaseModel, Field
import logging

from services.errors import WorkflowError
from services.records import RecordQuery
from services.record_flags import (
    check_candidate,
    detect_anomalies,
    find_duplicate_groups,
)
from services.workflow_engine import Actor
from .auth import get_current_actor
from .errors import http_error
from .records import record_query

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/flags", tags=["flags"])

# Record store - set by main app
record_store = None

def set_dependencies(store):
    global record_store
    record_store = store


class CandidateRequest(BaseModel):
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)


async def _snapshot(query: RecordQuery):
    try:
        return await record_store.list_by_filter(query)
    except WorkflowError as e:
        raise http_error(e)


@router.get("/duplicates")
async def get_duplicates(query: RecordQuery = Depends(record_query), actor: Actor = Depends(get_current_actor)):
    records = await _snapshot(query)
    groups = find_duplicate_groups(records)
    flagged = sorted({rid for g in groups for rid in g.record_ids})
    return {
        "groups": [g.to_dict() for g in groups],
        "flagged_ids": flagged,
        "scanned": len(records),
    }


@router.get("/anomalies")
async def get_anomalies(query: RecordQuery = Depends(record_query), actor: Actor = Depends(get_current_actor)):
    records = await _snapshot(query)
    flags = detect_anomalies(records)
    return {"flags": flags, "flagged": len(flags), "scanned": len(records)}


@router.post("/check-duplicates")
async def check_duplicates(req: CandidateRequest, actor: Actor = Depends(get_current_actor)):
    """Possible duplicates of a record that has not been submitted yet."""
    records = await _snapshot(RecordQuery(kind=req.kind, limit=500))
    try:
        matches = check_candidate(req.kind, req.payload, records)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"duplicates": matches}
