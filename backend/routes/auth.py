"""
Payflow Hub - Auth Router

Bearer-token login and actor resolution. Tokens carry the actor id (`sub`)
and role; approval delegations are looked up on every request so a
delegation takes effect (and expires) without re-login.
"""

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import Optional
from datetime import date
import jwt as pyjwt
import logging

from services import settings
from services.records import utc_now
from services.workflow_engine import Actor, ActorRole

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# Record store - set by main app
store = None

def set_dependencies(record_store):
    global store
    store = record_store


# Demo accounts, one per role (will be replaced by the identity provider)
DEMO_USERS = {
    "submitter": {"password": "submitter", "display_name": "Front Desk", "role": ActorRole.SUBMITTER.value},
    "manager": {"password": "manager", "display_name": "Line Manager", "role": ActorRole.MANAGER.value},
    "finance": {"password": "finance", "display_name": "Finance", "role": ActorRole.FINANCE.value},
    "operations": {"password": "operations", "display_name": "Operations", "role": ActorRole.OPERATIONS.value},
    "admin": {"password": "admin", "display_name": "Hub Admin", "role": ActorRole.ADMIN.value},
    "viewer": {"password": "viewer", "display_name": "Auditor", "role": ActorRole.VIEWER.value},
}

bearer = HTTPBearer(auto_error=False)


class LoginRequest(BaseModel):
    username: str
    password: str


class DelegationRequest(BaseModel):
    delegate_id: str
    valid_from: date
    valid_until: date
    delegator_id: Optional[str] = None


def create_token(user_id: str, role: str) -> str:
    payload = {
        "sub": user_id,
        "role": role,
        "exp": utc_now().timestamp() + settings.JWT_TTL_SECONDS,
    }
    return pyjwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return pyjwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Actor:
    """FastAPI dependency: bearer token -> Actor with today's delegations."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    claims = decode_token(credentials.credentials)
    actor_id, role = claims.get("sub"), claims.get("role")
    if not actor_id or role not in {r.value for r in ActorRole}:
        raise HTTPException(status_code=401, detail="Invalid token claims")

    delegate_for = frozenset()
    if store is not None:
        delegate_for = frozenset(await store.active_delegators(actor_id, utc_now().date()))
    return Actor(actor_id=actor_id, role=role, delegate_for=delegate_for)


@router.post("/login")
async def login(req: LoginRequest):
    """Authenticate user and return JWT token."""
    user = DEMO_USERS.get(req.username)
    if user and req.password == user["password"]:
        token = create_token(req.username, user["role"])
        return {
            "token": token,
            "user": {
                "username": req.username,
                "display_name": user["display_name"],
                "role": user["role"],
            }
        }
    raise HTTPException(status_code=401, detail="Invalid credentials")


@router.get("/me")
async def get_me(actor: Actor = Depends(get_current_actor)):
    """Current actor, including managers they currently stand in for."""
    return {
        "user_id": actor.actor_id,
        "role": actor.role,
        "delegate_for": sorted(actor.delegate_for),
    }


@router.post("/delegations")
async def create_delegation(req: DelegationRequest, actor: Actor = Depends(get_current_actor)):
    """
    Let another user approve on a manager's behalf between two dates (inclusive).

    Managers delegate their own approvals; admins may delegate for anyone.
    """
    delegator_id = req.delegator_id or actor.actor_id
    if actor.role == ActorRole.MANAGER.value:
        if delegator_id != actor.actor_id:
            raise HTTPException(status_code=403, detail="Managers can only delegate their own approvals")
    elif not actor.is_admin:
        raise HTTPException(status_code=403, detail="Only managers and admins can create delegations")

    if req.valid_until < req.valid_from:
        raise HTTPException(status_code=400, detail="valid_until must not be before valid_from")

    delegation = await store.add_delegation(
        delegator_id, req.delegate_id, req.valid_from.isoformat(), req.valid_until.isoformat()
    )
    logger.info("Delegation created: %s -> %s (%s..%s)", delegator_id, req.delegate_id, req.valid_from, req.valid_until)
    return {"ok": True, "delegation": delegation}
