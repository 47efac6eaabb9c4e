"""
Payflow Hub - Manager Assignment

Picks the reviewing manager for a newly submitted invoice when the submitter
does not name one. Managers are matched on the payload's `program_id` first,
then `department_id`; when neither matches, the first manager in the
directory takes the record.
"""

import logging
from typing import Optional, Dict, List, Any

from .record_store import RecordStore

logger = logging.getLogger(__name__)


def pick_manager(
    managers: List[Dict[str, Any]],
    department_id: Optional[str],
    program_id: Optional[str],
) -> Optional[str]:
    if not managers:
        return None
    if program_id:
        for manager in managers:
            if program_id in (manager.get("program_ids") or []):
                return manager["manager_id"]
    if department_id:
        for manager in managers:
            if manager.get("department_id") == department_id:
                return manager["manager_id"]
    return managers[0]["manager_id"]


async def resolve_assignee(store: RecordStore, payload: Dict[str, Any]) -> Optional[str]:
    """Manager id for a payload, or None when the directory is empty."""
    program_id = payload.get("program_id") or None
    department_id = payload.get("department_id") or None
    managers = await store.list_managers()
    assignee = pick_manager(managers, department_id, program_id)
    logger.debug(
        "Assignee resolved: program=%s department=%s -> %s", program_id, department_id, assignee
    )
    return assignee
