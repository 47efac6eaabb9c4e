"""
Payflow Hub - Engine Settings

All tunables for the workflow engine, read once from the environment.
A local .env file is honoured so developers can override defaults without
exporting variables.

Presentation preferences (column visibility, saved filters) belong to the
client and are never read here.
"""

import os
from typing import Dict, Any

from dotenv import load_dotenv

load_dotenv()


# =============================================================================
# STORAGE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "payflow_hub")

# "mongo" or "memory" (local runs without a database)
STORAGE_BACKEND = os.environ.get("STORAGE_BACKEND", "mongo").lower()


# =============================================================================
# AUTH
# =============================================================================

JWT_SECRET = os.environ.get("JWT_SECRET", "payflow-hub-secret-key")
JWT_TTL_SECONDS = int(os.environ.get("JWT_TTL_SECONDS", "86400"))


# =============================================================================
# WORKFLOW
# =============================================================================

# Undo grace window, matches the auto-settle delay of the review screens
UNDO_GRACE_SECONDS = float(os.environ.get("UNDO_GRACE_SECONDS", "5"))

# Hard cap on ids per bulk request
MAX_BULK_RECORDS = int(os.environ.get("MAX_BULK_RECORDS", "50"))


# =============================================================================
# ANOMALY DETECTION
# =============================================================================

ANOMALY_MIN_SAMPLE = int(os.environ.get("ANOMALY_MIN_SAMPLE", "3"))
ANOMALY_STDDEV_MULTIPLIER = float(os.environ.get("ANOMALY_STDDEV_MULTIPLIER", "2.0"))
VERY_OLD_DATE_DAYS = int(os.environ.get("VERY_OLD_DATE_DAYS", "365"))


# =============================================================================
# NOTIFICATIONS
# =============================================================================

NOTIFICATION_PROVIDER = os.environ.get("NOTIFICATION_PROVIDER", "mock").lower()
SLACK_WEBHOOK_URL = os.environ.get("SLACK_WEBHOOK_URL", "")
TEAMS_WEBHOOK_URL = os.environ.get("TEAMS_WEBHOOK_URL", "")
WEBHOOK_TIMEOUT_SECONDS = float(os.environ.get("WEBHOOK_TIMEOUT_SECONDS", "10"))


LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def get_engine_settings() -> Dict[str, Any]:
    """
    Effective engine settings, safe to expose over the API.

    Secrets are reported only as configured / not configured.
    """
    return {
        "undo_grace_seconds": UNDO_GRACE_SECONDS,
        "max_bulk_records": MAX_BULK_RECORDS,
        "anomaly_min_sample": ANOMALY_MIN_SAMPLE,
        "anomaly_stddev_multiplier": ANOMALY_STDDEV_MULTIPLIER,
        "very_old_date_days": VERY_OLD_DATE_DAYS,
        "notification_provider": NOTIFICATION_PROVIDER,
        "slack_webhook_configured": bool(SLACK_WEBHOOK_URL),
        "teams_webhook_configured": bool(TEAMS_WEBHOOK_URL),
        "db_name": DB_NAME,
        "storage_backend": STORAGE_BACKEND,
        "log_level": LOG_LEVEL,
    }
