from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, check_rbac
from models import UserRole
from database import database

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
    return user

async def require_role(request: Request, required_role: UserRole) -> dict:
    """Require specific role."""
    user = await require_auth(request)
    try:
        user_role = UserRole(user.get("role"))
    except ValueError:
        user_role = None

    if user_role is None or not check_rbac(user_role, required_role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    return await require_role(request, UserRole.ADMIN)

async def client_route_guard(request: Request) -> dict:
    """Guard for client routes - the token's account must still exist."""
    user = await require_auth(request)

    db = database.get_db()
    account = await db.accounts.find_one(
        {"account_id": user.get("account_id")},
        {"_id": 0, "account_id": 1, "role": 1}
    )

    if not account:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    return user

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    return await require_admin(request)
