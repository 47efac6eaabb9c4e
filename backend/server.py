"""
Payflow Hub - Main Server

Entry point. Routes are organized in /routes/, business logic in /services/.
"""

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import logging

from services import settings

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import auth, records, workflows, flags, config, audit as audit_routes

# ==================== SERVICES ====================
from services.audit_log import InMemoryAuditLog, MongoAuditLog
from services.bulk_transitions import BulkTransitionCoordinator
from services.notification_service import (
    NotificationService, get_notification_service, set_notification_service,
)
from services.record_store import InMemoryRecordStore, MongoRecordStore
from services.undo_service import UndoService
from services.workflow_service import WorkflowService

db = None
mongo_client = None
workflow_service = None


def wire_services(store, audit, notifier=None) -> WorkflowService:
    """Build the service graph and hand it to the routers."""
    service = WorkflowService(store, audit, notifier=notifier)
    bulk = BulkTransitionCoordinator(service)
    undo = UndoService(service, audit)

    auth.set_dependencies(store)
    records.set_dependencies(service, store)
    workflows.set_dependencies(service, bulk, undo)
    flags.set_dependencies(store)
    config.set_dependencies(store)
    audit_routes.set_dependencies(audit)
    return service


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client, workflow_service

    logger.info("Starting Payflow Hub (storage=%s)...", settings.STORAGE_BACKEND)

    if settings.STORAGE_BACKEND == "memory":
        set_notification_service(NotificationService())
        workflow_service = wire_services(
            InMemoryRecordStore(), InMemoryAuditLog(), get_notification_service()
        )
    else:
        mongo_client = AsyncIOMotorClient(settings.MONGO_URL)
        db = mongo_client[settings.DB_NAME]
        set_notification_service(NotificationService(db=db))
        workflow_service = wire_services(
            MongoRecordStore(db), MongoAuditLog(db), get_notification_service()
        )
        await create_indexes()

    logger.info("Payflow Hub started successfully")

    yield

    logger.info("Shutting down Payflow Hub...")
    if workflow_service:
        await workflow_service.drain_notifications()
    if mongo_client:
        mongo_client.close()


async def create_indexes():
    """Create database indexes."""
    # Records
    await db.records.create_index("id", unique=True)
    await db.records.create_index("kind")
    await db.records.create_index("owner_id")
    await db.records.create_index([("kind", 1), ("workflow.status", 1)])
    await db.records.create_index("workflow.assignee_id")
    await db.records.create_index("tags")
    await db.records.create_index("created_at")

    # Audit stream
    await db.audit_events.create_index("id", unique=True)
    await db.audit_events.create_index([("record_id", 1), ("created_at", 1), ("seq", 1)])
    await db.audit_events.create_index("payload_diff.undo_of")
    await db.audit_events.create_index([("created_at", -1), ("seq", -1)])
    await db.audit_events.create_index([("actor_id", 1), ("created_at", -1)])
    await db.audit_events.create_index([("event_type", 1), ("created_at", -1)])

    # Manager directory
    await db.managers.create_index("manager_id", unique=True)
    await db.managers.create_index("department_id")
    await db.managers.create_index("program_ids")

    # Delegations
    await db.approval_delegations.create_index([("delegate_id", 1), ("valid_from", 1)])

    await db.notification_logs.create_index("sent_at")

    logger.info("Database indexes created")


# ==================== APP SETUP ====================
app = FastAPI(
    title="Payflow Hub",
    description="Approval workflow engine for invoices, payslips and assignments",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")

api_router.include_router(auth.router)
api_router.include_router(records.router)
api_router.include_router(workflows.router)
api_router.include_router(flags.router)
api_router.include_router(config.router)
api_router.include_router(audit_routes.router)

app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Payflow Hub",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "payflow-hub",
        "storage": settings.STORAGE_BACKEND,
    }
