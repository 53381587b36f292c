from fastapi import APIRouter, HTTPException, Request, status
from database import database
from models import LoginRequest, TokenResponse, AuditAction
from auth import verify_password, create_access_token
from services.identity_guard import normalize_email
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
async def login(request: Request, credentials: LoginRequest):
    """Login for clients and admins. Deactivated accounts are refused."""
    db = database.get_db()
    email = normalize_email(credentials.email)
    ip_address = request.client.host if request.client else None

    account = await db.accounts.find_one({"email": email}, {"_id": 0})

    if not account or not account.get("password_hash") or not verify_password(
        credentials.password, account["password_hash"]
    ):
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            actor_id=(account or {}).get("account_id"),
            metadata={"email": email, "reason": "invalid_credentials"},
            ip_address=ip_address,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    if not account.get("is_active", False):
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            actor_id=account["account_id"],
            metadata={"email": email, "reason": "account_inactive"},
            ip_address=ip_address,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is not active"
        )

    token = create_access_token({
        "account_id": account["account_id"],
        "email": account["email"],
        "role": account["role"],
    })

    await create_audit_log(
        action=AuditAction.USER_LOGIN_SUCCESS,
        actor_role=account["role"],
        actor_id=account["account_id"],
        account_id=account["account_id"],
        ip_address=ip_address,
    )

    return TokenResponse(
        access_token=token,
        user={
            "account_id": account["account_id"],
            "email": account["email"],
            "role": account["role"],
        },
    )
