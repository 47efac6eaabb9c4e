"""
Payflow Hub - Audit Log Query Tests

Admin-wide queries over the in-memory audit stream.
"""

import pytest
from datetime import date

from services.audit_log import QUERY_MAX_LIMIT, InMemoryAuditLog, clamp_limit, day_bounds
from services.workflow_engine import AuditEvent


def event(record_id, actor_id, created_at, event_type="status_changed", to_status="submitted"):
    if event_type != "status_changed":
        to_status = None
    return AuditEvent(record_id, actor_id, event_type, to_status=to_status, created_at=created_at)


@pytest.fixture
async def populated():
    audit = InMemoryAuditLog()
    for e in (
        event("r1", "s1", "2026-03-01T09:00:00+00:00"),
        event("r1", "m1", "2026-03-02T23:59:59+00:00", to_status="approved_by_manager"),
        event("r2", "s1", "2026-03-03T00:00:00+00:00"),
        event("r2", "o1", "2026-03-04T12:00:00+00:00", event_type="note_added"),
    ):
        await audit.append(e)
    return audit


class TestQueryHelpers:

    def test_clamp_limit(self):
        assert clamp_limit(None) == 500
        assert clamp_limit(0) == 500
        assert clamp_limit(10) == 10
        assert clamp_limit(100000) == QUERY_MAX_LIMIT

    def test_day_bounds_cover_whole_days(self):
        start, end = day_bounds(date(2026, 3, 2), date(2026, 3, 2))
        assert start.isoformat() == "2026-03-02T00:00:00+00:00"
        assert end.isoformat() == "2026-03-03T00:00:00+00:00"
        assert day_bounds(None, None) == (None, None)


class TestInMemoryQuery:

    @pytest.mark.asyncio
    async def test_newest_first(self, populated):
        events = await populated.query()
        assert [e.created_at.day for e in events] == [4, 3, 2, 1]

    @pytest.mark.asyncio
    async def test_filters_combine(self, populated):
        assert [e.record_id for e in await populated.query(actor_id="s1")] == ["r2", "r1"]
        assert len(await populated.query(record_id="r1", actor_id="s1")) == 1
        notes = await populated.query(event_type="note_added")
        assert [e.actor_id for e in notes] == ["o1"]

    @pytest.mark.asyncio
    async def test_date_range_inclusive(self, populated):
        events = await populated.query(from_date=date(2026, 3, 2), to_date=date(2026, 3, 3))
        assert [e.actor_id for e in events] == ["s1", "m1"]

    @pytest.mark.asyncio
    async def test_open_ended_ranges(self, populated):
        assert len(await populated.query(from_date=date(2026, 3, 3))) == 2
        assert len(await populated.query(to_date=date(2026, 3, 1))) == 1

    @pytest.mark.asyncio
    async def test_limit(self, populated):
        events = await populated.query(limit=2)
        assert [e.created_at.day for e in events] == [4, 3]

    @pytest.mark.asyncio
    async def test_results_are_copies(self, populated):
        first = (await populated.query(limit=1))[0]
        first.actor_id = "tampered"
        assert (await populated.query(limit=1))[0].actor_id == "o1"
