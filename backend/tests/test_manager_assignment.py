"""
Payflow Hub - Manager Assignment Tests

Directory lookup by program, then department, then first manager, and the
automatic assignee on invoice submission.
"""

import pytest

from services.manager_assignment import pick_manager, resolve_assignee

from workflow_fixtures import OPERATIONS, SUBMITTER


DIRECTORY = [
    {"manager_id": "m1", "department_id": "finance", "program_ids": []},
    {"manager_id": "m2", "department_id": "ops", "program_ids": ["youth"]},
    {"manager_id": "m3", "department_id": "finance", "program_ids": ["arts", "youth"]},
]


class TestPickManager:

    def test_program_wins_over_department(self):
        assert pick_manager(DIRECTORY, "finance", "youth") == "m2"

    def test_department_when_no_program_matches(self):
        assert pick_manager(DIRECTORY, "ops", "sports") == "m2"
        assert pick_manager(DIRECTORY, "finance", None) == "m1"

    def test_falls_back_to_first_manager(self):
        assert pick_manager(DIRECTORY, "legal", "sports") == "m1"
        assert pick_manager(DIRECTORY, None, None) == "m1"

    def test_empty_directory(self):
        assert pick_manager([], "finance", "youth") is None


class TestResolveAssignee:

    @pytest.mark.asyncio
    async def test_reads_directory_from_store(self, store):
        await store.upsert_manager("m2", "ops", ["youth"])
        await store.upsert_manager("m1", "finance")
        assert await resolve_assignee(store, {"program_id": "youth"}) == "m2"
        assert await resolve_assignee(store, {"department_id": "finance"}) == "m1"
        # sorted by manager id
        assert await resolve_assignee(store, {}) == "m1"

    @pytest.mark.asyncio
    async def test_upsert_replaces_entry(self, store):
        await store.upsert_manager("m1", "finance", ["arts"])
        await store.upsert_manager("m1", "ops")
        assert await store.list_managers() == [
            {"manager_id": "m1", "department_id": "ops", "program_ids": []}
        ]


class TestSubmissionAssignment:

    @pytest.mark.asyncio
    async def test_invoice_assigned_from_directory(self, service, store):
        await store.upsert_manager("m1", "finance")
        await store.upsert_manager("m2", "ops", ["youth"])

        record = await service.submit("invoice", SUBMITTER, payload={"amount": 10, "program_id": "youth"})

        assert record.workflow.assignee_id == "m2"
        stored = await store.get(record.id)
        assert stored.workflow.assignee_id == "m2"

    @pytest.mark.asyncio
    async def test_other_invoice_assigned_by_department(self, service, store):
        await store.upsert_manager("m1", "finance")
        await store.upsert_manager("m2", "ops")

        record = await service.submit("other_invoice", SUBMITTER, payload={"department_id": "ops"})

        assert record.workflow.assignee_id == "m2"

    @pytest.mark.asyncio
    async def test_explicit_assignee_wins(self, service, store):
        await store.upsert_manager("m2", "ops", ["youth"])

        record = await service.submit(
            "invoice", SUBMITTER, payload={"program_id": "youth"}, assignee_id="m1"
        )

        assert record.workflow.assignee_id == "m1"

    @pytest.mark.asyncio
    async def test_empty_directory_leaves_unassigned(self, service):
        record = await service.submit("invoice", SUBMITTER, payload={"program_id": "youth"})
        assert record.workflow.assignee_id is None

    @pytest.mark.asyncio
    async def test_kinds_without_manager_review_not_assigned(self, service, store):
        await store.upsert_manager("m1", "finance")

        payslip = await service.submit("payslip", OPERATIONS, payload={"department_id": "finance"})
        assignment = await service.submit("assignment", SUBMITTER, payload={"department_id": "finance"})

        assert payslip.workflow.assignee_id is None
        assert assignment.workflow.assignee_id is None
