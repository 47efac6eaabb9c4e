"""
Payflow Hub - shared pytest fixtures.

Everything runs against the in-memory drivers; the Mongo drivers have their
own tests with mocked collections.
"""

import pytest

from services.audit_log import InMemoryAuditLog
from services.bulk_transitions import BulkTransitionCoordinator
from services.notification_service import MockNotificationProvider, NotificationService
from services.record_store import InMemoryRecordStore
from services.undo_service import UndoService
from services.workflow_service import WorkflowService


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def mock_provider():
    return MockNotificationProvider()


@pytest.fixture
def notifier(mock_provider):
    return NotificationService(provider_instance=mock_provider)


@pytest.fixture
async def service(store, audit, notifier):
    service = WorkflowService(store, audit, notifier=notifier)
    yield service
    await service.drain_notifications()


@pytest.fixture
def bulk(service):
    return BulkTransitionCoordinator(service, max_records=50)


@pytest.fixture
def undo(service, audit):
    return UndoService(service, audit, grace_seconds=5)
