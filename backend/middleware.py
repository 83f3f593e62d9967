from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, is_known_role
from models import UserRole, Actor

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    return decode_access_token(token)

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    if not is_known_role(user.get("role")):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown role"
        )
    return user

async def require_role(request: Request, *roles: UserRole) -> dict:
    """Require one of the given roles."""
    user = await require_auth(request)
    if user.get("role") not in {r.value for r in roles}:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    return await require_role(request, UserRole.ADMIN)

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    return await require_admin(request)

def actor_from_user(user: dict) -> Actor:
    return Actor(
        user_id=user["user_id"],
        role=user["role"],
        name=user.get("name"),
        email=user.get("email"),
    )

def get_order_engine(request: Request):
    """Engine built at start-up and stored on app.state."""
    return request.app.state.engine

# Typed transition errors -> HTTP status
TRANSITION_ERROR_STATUS = {
    "UNKNOWN_ROLE": status.HTTP_403_FORBIDDEN,
    "NO_TRANSITIONS": status.HTTP_403_FORBIDDEN,
    "ACTION_NOT_PERMITTED": status.HTTP_403_FORBIDDEN,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "TERMINAL_STATE": status.HTTP_409_CONFLICT,
    "CONCURRENT_MODIFICATION": status.HTTP_409_CONFLICT,
    "ORDER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
}

def raise_for_outcome(outcome) -> None:
    """Raise HTTPException for a rejected action or transition outcome."""
    if outcome.ok:
        return
    check = outcome.check
    code = check.error.value if check.error else "INVALID_TRANSITION"
    raise HTTPException(
        status_code=TRANSITION_ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST),
        detail={
            "error": code,
            "message": check.message,
            "allowed": check.to_dict()["allowed"],
            "allowed_actions": list(check.allowed_actions),
        },
    )
