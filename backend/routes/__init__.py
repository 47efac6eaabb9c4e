"""
Payflow Hub - Routes Package

Modular API routers for the workflow engine.
"""

from .auth import router as auth_router, set_dependencies as set_auth_deps
from .records import router as records_router, set_dependencies as set_records_deps
from .workflows import router as workflows_router, set_dependencies as set_workflows_deps
from .flags import router as flags_router, set_dependencies as set_flags_deps
from .config import router as config_router, set_dependencies as set_config_deps
from .audit import router as audit_router, set_dependencies as set_audit_deps

__all__ = [
    'auth_router', 'set_auth_deps',
    'records_router', 'set_records_deps',
    'workflows_router', 'set_workflows_deps',
    'flags_router', 'set_flags_deps',
    'config_router', 'set_config_deps',
    'audit_router', 'set_audit_deps',
]
