"""
Payflow Hub - Config Router

Effective engine settings, the fixed transition tables and the manager
directory used to assign reviewers to new invoices.
"""

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field
from typing import Optional, List
import logging

from services.errors import WorkflowError
from services.settings import get_engine_settings
from services.workflow_engine import WORKFLOW_DEFINITIONS, Actor, WorkflowEngine
from .auth import get_current_actor
from .errors import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/config", tags=["config"])

# Record store - set by main app
record_store = None

def set_dependencies(store):
    global record_store
    record_store = store


@router.get("/engine")
async def get_engine_config():
    """Engine tunables (secrets reported as configured / not configured)."""
    return get_engine_settings()


@router.get("/workflows/{kind}")
async def get_workflow_table(kind: str):
    """Statuses and edges for one record kind."""
    if kind not in WORKFLOW_DEFINITIONS:
        raise HTTPException(status_code=404, detail=f"Unknown record kind '{kind}'")

    edges = []
    for current, targets in WORKFLOW_DEFINITIONS[kind].items():
        for target, rule in targets.items():
            edges.append({
                "from": current,
                "to": target,
                "roles": sorted(rule.roles),
                "owner_may": rule.owner_may,
                "forbid_owner": rule.forbid_owner,
                "required": list(rule.required),
                "backward": rule.backward,
            })

    return {
        "kind": kind,
        "initial_status": WorkflowEngine.get_initial_status(kind),
        "statuses": WorkflowEngine.get_statuses_for_kind(kind),
        "terminal_statuses": WorkflowEngine.get_terminal_statuses(kind),
        "edges": edges,
    }


# ==================== MANAGER DIRECTORY ====================

class ManagerEntry(BaseModel):
    department_id: Optional[str] = None
    program_ids: List[str] = Field(default_factory=list)


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")


@router.get("/managers")
async def list_managers(actor: Actor = Depends(get_current_actor)):
    """Managers new invoices can be assigned to, with their departments and programs."""
    _require_admin(actor)
    try:
        managers = await record_store.list_managers()
    except WorkflowError as e:
        raise http_error(e)
    return {"managers": managers}


@router.put("/managers/{manager_id}")
async def upsert_manager(manager_id: str, req: ManagerEntry, actor: Actor = Depends(get_current_actor)):
    _require_admin(actor)
    try:
        entry = await record_store.upsert_manager(manager_id, req.department_id, req.program_ids)
    except WorkflowError as e:
        raise http_error(e)
    logger.info("Manager directory updated: %s department=%s programs=%s",
                manager_id, req.department_id, req.program_ids)
    return {"ok": True, "manager": entry}
