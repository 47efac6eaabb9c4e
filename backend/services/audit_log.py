"""
Payflow Hub - Audit Log

Append-only event stream. Events are never updated or deleted; corrections
and undos are new events. A failed append is fatal for the operation that
produced it: an unaudited status change must not stand.

Implementations:
- InMemoryAuditLog: tests and local runs
- MongoAuditLog: motor-backed production driver (`audit_events` collection)
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Dict, List, Any, Tuple

from bson.errors import InvalidDocument
from pymongo.errors import PyMongoError

from .errors import AuditFailureError, StorageFailureError
from .records import parse_timestamp
from .workflow_engine import AuditEvent, AuditEventType

logger = logging.getLogger(__name__)

QUERY_DEFAULT_LIMIT = 500
QUERY_MAX_LIMIT = 2000


def clamp_limit(limit: Optional[int]) -> int:
    return max(1, min(limit or QUERY_DEFAULT_LIMIT, QUERY_MAX_LIMIT))


def day_bounds(from_date: Optional[date], to_date: Optional[date]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """UTC [start, end) covering from_date through the whole of to_date."""
    start = datetime.combine(from_date, time.min, tzinfo=timezone.utc) if from_date else None
    end = None
    if to_date:
        end = datetime.combine(to_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


class AuditLog(ABC):

    @abstractmethod
    async def append(self, event: AuditEvent) -> AuditEvent:
        pass

    @abstractmethod
    async def get(self, event_id: str) -> Optional[AuditEvent]:
        pass

    @abstractmethod
    async def history(self, record_id: str) -> List[AuditEvent]:
        """All events for a record, ascending by created_at."""
        pass

    @abstractmethod
    async def find_undo_of(self, event_id: str) -> Optional[AuditEvent]:
        """The compensating event for `event_id`, if any."""
        pass

    @abstractmethod
    async def query(
        self,
        record_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        event_type: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        """
        Events across all records, newest first.

        Date bounds are inclusive whole UTC days; `limit` defaults to
        QUERY_DEFAULT_LIMIT and is capped at QUERY_MAX_LIMIT.
        """
        pass

    async def status_at(self, record_id: str, at: datetime) -> Optional[str]:
        """
        Status of a record at a point in time.

        Scans backward to the last status change at or before `at`.
        None means the record did not exist yet.
        """
        at = parse_timestamp(at)
        for event in reversed(await self.history(record_id)):
            if event.is_status_change and event.created_at <= at:
                return event.to_status
        return None

    async def status_path(self, record_id: str) -> List[tuple]:
        """(from_status, to_status) pairs in order."""
        return [
            (e.from_status, e.to_status)
            for e in await self.history(record_id)
            if e.is_status_change
        ]


# =============================================================================
# IN-MEMORY DRIVER
# =============================================================================

class InMemoryAuditLog(AuditLog):

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._by_id: Dict[str, AuditEvent] = {}

    async def append(self, event: AuditEvent) -> AuditEvent:
        if event.id in self._by_id:
            raise AuditFailureError(f"Audit event {event.id} already written", record_id=event.record_id)
        stored = AuditEvent.from_dict(event.to_dict())
        self._events.append(stored)
        self._by_id[stored.id] = stored
        return event

    async def get(self, event_id: str) -> Optional[AuditEvent]:
        event = self._by_id.get(event_id)
        return AuditEvent.from_dict(event.to_dict()) if event else None

    async def history(self, record_id: str) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(e.to_dict()) for e in self._events if e.record_id == record_id]
        # sorted() is stable, so equal timestamps keep append order
        return sorted(events, key=lambda e: e.created_at)

    async def find_undo_of(self, event_id: str) -> Optional[AuditEvent]:
        for event in self._events:
            if event.undo_of == event_id:
                return AuditEvent.from_dict(event.to_dict())
        return None

    async def query(
        self,
        record_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        event_type: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        start, end = day_bounds(from_date, to_date)
        matched = [
            e for e in self._events
            if (record_id is None or e.record_id == record_id)
            and (actor_id is None or e.actor_id == actor_id)
            and (event_type is None or e.event_type == event_type)
            and (start is None or e.created_at >= start)
            and (end is None or e.created_at < end)
        ]
        # ascending stable sort, reversed: later appends first on equal timestamps
        newest_first = list(reversed(sorted(matched, key=lambda e: e.created_at)))
        return [AuditEvent.from_dict(e.to_dict()) for e in newest_first[:clamp_limit(limit)]]

    def all_events(self) -> List[AuditEvent]:
        return [AuditEvent.from_dict(e.to_dict()) for e in self._events]


# =============================================================================
# MONGODB DRIVER
# =============================================================================

class MongoAuditLog(AuditLog):
    """
    Events are stored with an extra `seq` field (per-process monotonic
    counter) so equal timestamps still sort in append order.
    """

    def __init__(self, db):
        self.collection = db.audit_events
        self._seq = 0

    async def append(self, event: AuditEvent) -> AuditEvent:
        self._seq += 1
        doc = {**event.to_dict(), "seq": self._seq}
        try:
            await self.collection.insert_one(doc)
        except (PyMongoError, InvalidDocument) as e:
            logger.error("Audit append failed: record=%s event=%s error=%s", event.record_id, event.id, e)
            raise AuditFailureError(f"Audit append failed: {e}", record_id=event.record_id)
        return event

    async def get(self, event_id: str) -> Optional[AuditEvent]:
        try:
            doc = await self.collection.find_one({"id": event_id}, {"_id": 0, "seq": 0})
        except PyMongoError as e:
            raise StorageFailureError(f"Could not load audit event: {e}")
        return AuditEvent.from_dict(doc) if doc else None

    async def history(self, record_id: str) -> List[AuditEvent]:
        try:
            docs = await self.collection.find(
                {"record_id": record_id}, {"_id": 0, "seq": 0}
            ).sort([("created_at", 1), ("seq", 1)]).to_list(None)
        except PyMongoError as e:
            raise StorageFailureError(f"Could not load history: {e}", record_id=record_id)
        return [AuditEvent.from_dict(d) for d in docs]

    async def find_undo_of(self, event_id: str) -> Optional[AuditEvent]:
        doc = await self.collection.find_one(
            {
                "event_type": AuditEventType.STATUS_CHANGED.value,
                "payload_diff.undo_of": event_id,
            },
            {"_id": 0, "seq": 0}
        )
        return AuditEvent.from_dict(doc) if doc else None

    async def query(
        self,
        record_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        event_type: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        filters: Dict[str, Any] = {}
        if record_id:
            filters["record_id"] = record_id
        if actor_id:
            filters["actor_id"] = actor_id
        if event_type:
            filters["event_type"] = event_type

        # created_at is stored as an ISO string, so bounds compare as strings
        start, end = day_bounds(from_date, to_date)
        if start or end:
            filters["created_at"] = {}
            if start:
                filters["created_at"]["$gte"] = start.isoformat()
            if end:
                filters["created_at"]["$lt"] = end.isoformat()

        limit = clamp_limit(limit)
        try:
            docs = await self.collection.find(
                filters, {"_id": 0, "seq": 0}
            ).sort([("created_at", -1), ("seq", -1)]).limit(limit).to_list(limit)
        except PyMongoError as e:
            raise StorageFailureError(f"Could not query audit log: {e}")
        return [AuditEvent.from_dict(d) for d in docs]
