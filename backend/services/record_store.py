"""
Payflow Hub - Record Store

Persistence for records and their embedded workflow. The store is the single
source of truth and the only component concurrent callers contend over.

Status changes go exclusively through compare_and_swap_status(), which only
writes when both the status and the version the caller validated against are
still current.

Implementations:
- InMemoryRecordStore: tests and local runs
- MongoRecordStore: motor-backed production driver
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date
from typing import Optional, Dict, List, Any, Set

from pymongo.errors import PyMongoError

from .errors import StorageFailureError
from .records import Record, RecordQuery, Workflow, utc_now

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """Abstract record store consumed by the workflow service."""

    @abstractmethod
    async def insert(self, record: Record) -> None:
        pass

    @abstractmethod
    async def get(self, record_id: str) -> Optional[Record]:
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> None:
        """Remove a record whose submission could not be audited."""
        pass

    @abstractmethod
    async def compare_and_swap_status(
        self,
        record_id: str,
        expected_status: str,
        expected_version: int,
        workflow: Workflow,
    ) -> bool:
        """Write `workflow` only if the stored status/version still match. Returns success."""
        pass

    @abstractmethod
    async def update_payload(self, record_id: str, payload: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def set_tags(self, record_id: str, tags: List[str]) -> None:
        pass

    @abstractmethod
    async def list_by_filter(self, query: RecordQuery) -> List[Record]:
        pass

    @abstractmethod
    async def status_counts(self, kind: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """Counts by kind then status."""
        pass

    @abstractmethod
    async def add_delegation(
        self, delegator_id: str, delegate_id: str, valid_from: str, valid_until: str
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def active_delegators(self, delegate_id: str, on_date: date) -> Set[str]:
        """Managers the given user currently stands in for."""
        pass

    @abstractmethod
    async def upsert_manager(
        self, manager_id: str, department_id: Optional[str] = None, program_ids: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def list_managers(self) -> List[Dict[str, Any]]:
        """Manager directory entries, ordered by manager id."""
        pass


# =============================================================================
# IN-MEMORY DRIVER
# =============================================================================

class InMemoryRecordStore(RecordStore):
    """
    Dict-backed store. Records are kept serialized so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._delegations: List[Dict[str, Any]] = []
        self._managers: Dict[str, Dict[str, Any]] = {}

    async def insert(self, record: Record) -> None:
        if record.id in self._records:
            raise StorageFailureError(f"Record {record.id} already exists", record_id=record.id)
        self._records[record.id] = record.to_dict()

    async def get(self, record_id: str) -> Optional[Record]:
        data = self._records.get(record_id)
        return Record.from_dict(data) if data else None

    async def delete(self, record_id: str) -> None:
        self._records.pop(record_id, None)

    async def compare_and_swap_status(
        self,
        record_id: str,
        expected_status: str,
        expected_version: int,
        workflow: Workflow,
    ) -> bool:
        data = self._records.get(record_id)
        if data is None:
            return False
        current = data["workflow"]
        if current["status"] != expected_status or current.get("version", 1) != expected_version:
            return False
        data["workflow"] = workflow.to_dict()
        data["updated_at"] = workflow.updated_at.isoformat()
        return True

    async def update_payload(self, record_id: str, payload: Dict[str, Any]) -> None:
        data = self._records[record_id]
        data["payload"] = dict(payload)
        data["updated_at"] = utc_now().isoformat()

    async def set_tags(self, record_id: str, tags: List[str]) -> None:
        data = self._records[record_id]
        data["tags"] = list(tags)
        data["updated_at"] = utc_now().isoformat()

    async def list_by_filter(self, query: RecordQuery) -> List[Record]:
        records = [Record.from_dict(d) for d in self._records.values()]
        matched = [r for r in records if query.matches(r)]
        matched.sort(key=lambda r: r.created_at, reverse=True)
        return matched[query.skip:query.skip + query.limit]

    async def status_counts(self, kind: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = defaultdict(dict)
        for data in self._records.values():
            if kind and data["kind"] != kind:
                continue
            status = data["workflow"]["status"]
            counts[data["kind"]][status] = counts[data["kind"]].get(status, 0) + 1
        return dict(counts)

    async def add_delegation(
        self, delegator_id: str, delegate_id: str, valid_from: str, valid_until: str
    ) -> Dict[str, Any]:
        delegation = {
            "delegator_id": delegator_id,
            "delegate_id": delegate_id,
            "valid_from": valid_from,
            "valid_until": valid_until,
        }
        self._delegations.append(delegation)
        return dict(delegation)

    async def active_delegators(self, delegate_id: str, on_date: date) -> Set[str]:
        today = on_date.isoformat()
        return {
            d["delegator_id"] for d in self._delegations
            if d["delegate_id"] == delegate_id and d["valid_from"] <= today <= d["valid_until"]
        }

    async def upsert_manager(
        self, manager_id: str, department_id: Optional[str] = None, program_ids: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        entry = {
            "manager_id": manager_id,
            "department_id": department_id,
            "program_ids": list(program_ids or []),
        }
        self._managers[manager_id] = entry
        return dict(entry)

    async def list_managers(self) -> List[Dict[str, Any]]:
        return [dict(self._managers[k]) for k in sorted(self._managers)]


# =============================================================================
# MONGODB DRIVER
# =============================================================================

class MongoRecordStore(RecordStore):
    """
    motor-backed store.

    Args:
        db: AsyncIOMotorDatabase; uses the `records`, `approval_delegations`
            and `managers` collections.
    """

    def __init__(self, db):
        self.db = db
        self.collection = db.records
        self.delegations = db.approval_delegations
        self.managers = db.managers

    async def insert(self, record: Record) -> None:
        try:
            await self.collection.insert_one(record.to_dict())
        except PyMongoError as e:
            logger.error("Record insert failed: id=%s error=%s", record.id, e)
            raise StorageFailureError(f"Could not store record: {e}", record_id=record.id)

    async def get(self, record_id: str) -> Optional[Record]:
        try:
            doc = await self.collection.find_one({"id": record_id}, {"_id": 0})
        except PyMongoError as e:
            raise StorageFailureError(f"Could not load record: {e}", record_id=record_id)
        return Record.from_dict(doc) if doc else None

    async def delete(self, record_id: str) -> None:
        try:
            await self.collection.delete_one({"id": record_id})
        except PyMongoError as e:
            raise StorageFailureError(f"Could not delete record: {e}", record_id=record_id)

    async def compare_and_swap_status(
        self,
        record_id: str,
        expected_status: str,
        expected_version: int,
        workflow: Workflow,
    ) -> bool:
        try:
            result = await self.collection.update_one(
                {
                    "id": record_id,
                    "workflow.status": expected_status,
                    "workflow.version": expected_version,
                },
                {"$set": {
                    "workflow": workflow.to_dict(),
                    "updated_at": workflow.updated_at.isoformat(),
                }}
            )
        except PyMongoError as e:
            raise StorageFailureError(f"Could not update workflow: {e}", record_id=record_id)
        return result.matched_count == 1

    async def update_payload(self, record_id: str, payload: Dict[str, Any]) -> None:
        await self._set(record_id, {"payload": dict(payload)})

    async def set_tags(self, record_id: str, tags: List[str]) -> None:
        await self._set(record_id, {"tags": list(tags)})

    async def _set(self, record_id: str, fields: Dict[str, Any]) -> None:
        try:
            await self.collection.update_one(
                {"id": record_id},
                {"$set": {**fields, "updated_at": utc_now().isoformat()}}
            )
        except PyMongoError as e:
            raise StorageFailureError(f"Could not update record: {e}", record_id=record_id)

    async def list_by_filter(self, query: RecordQuery) -> List[Record]:
        try:
            docs = await self.collection.find(
                query.to_mongo_filter(), {"_id": 0}
            ).sort("created_at", -1).skip(query.skip).limit(query.limit).to_list(query.limit)
        except PyMongoError as e:
            raise StorageFailureError(f"Could not list records: {e}")
        return [Record.from_dict(d) for d in docs]

    async def status_counts(self, kind: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        pipeline = []
        if kind:
            pipeline.append({"$match": {"kind": kind}})
        pipeline.append({"$group": {
            "_id": {"kind": "$kind", "status": "$workflow.status"},
            "count": {"$sum": 1}
        }})
        results = await self.collection.aggregate(pipeline).to_list(500)

        by_kind: Dict[str, Dict[str, int]] = {}
        for r in results:
            by_kind.setdefault(r["_id"]["kind"], {})[r["_id"]["status"]] = r["count"]
        return by_kind

    async def add_delegation(
        self, delegator_id: str, delegate_id: str, valid_from: str, valid_until: str
    ) -> Dict[str, Any]:
        delegation = {
            "delegator_id": delegator_id,
            "delegate_id": delegate_id,
            "valid_from": valid_from,
            "valid_until": valid_until,
            "created_at": utc_now().isoformat(),
        }
        await self.delegations.insert_one(dict(delegation))
        return delegation

    async def active_delegators(self, delegate_id: str, on_date: date) -> Set[str]:
        today = on_date.isoformat()
        docs = await self.delegations.find(
            {
                "delegate_id": delegate_id,
                "valid_from": {"$lte": today},
                "valid_until": {"$gte": today},
            },
            {"_id": 0, "delegator_id": 1}
        ).to_list(100)
        return {d["delegator_id"] for d in docs}

    async def upsert_manager(
        self, manager_id: str, department_id: Optional[str] = None, program_ids: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        entry = {
            "manager_id": manager_id,
            "department_id": department_id,
            "program_ids": list(program_ids or []),
        }
        try:
            await self.managers.update_one(
                {"manager_id": manager_id},
                {"$set": {**entry, "updated_at": utc_now().isoformat()}},
                upsert=True,
            )
        except PyMongoError as e:
            raise StorageFailureError(f"Could not save manager: {e}")
        return entry

    async def list_managers(self) -> List[Dict[str, Any]]:
        try:
            return await self.managers.find(
                {}, {"_id": 0, "updated_at": 0}
            ).sort("manager_id", 1).to_list(None)
        except PyMongoError as e:
            raise StorageFailureError(f"Could not list managers: {e}")
