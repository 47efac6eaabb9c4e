"""
Payflow Hub - HTTP Error Mapping

Translates workflow errors into HTTPException with a structured detail:
{"error": <kind>, "message": ..., "retryable": bool}
"""

from fastapi import HTTPException

from services.errors import WorkflowError

STATUS_CODES = {
    "IllegalTransition": 400,
    "MissingRequiredField": 400,
    "BulkLimitExceeded": 400,
    "Unauthorized": 403,
    "RecordNotFound": 404,
    "StaleState": 409,
    "NotReversible": 409,
    "StorageFailure": 503,
    "AuditFailure": 503,
}


def http_error(e: WorkflowError) -> HTTPException:
    return HTTPException(status_code=STATUS_CODES.get(e.kind, 500), detail=e.to_dict())
