"""Client portal routes.

Status presentation comes from status_summary(); the portal never derives
labels or available actions from the raw status string itself.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from auth import hash_password, validate_password_strength, verify_password
from database import database
from middleware import client_route_guard
from models import AuditAction, PasswordChangeRequest, ProfileUpdateRequest, SubscriptionStatus
from services.errors import InvalidTransition, NotFound, ValidationError
from services.notification_emitter import count_unread, list_notifications, mark_notification_read
from services.registration import start_checkout
from services.subscription_state_machine import status_summary
from utils.audit import create_audit_log
from utils.rate_limiter import rate_limiter
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/client", tags=["client"])

PASSWORD_CHANGE_RATE_LIMIT = 5
PASSWORD_CHANGE_RATE_WINDOW_MINUTES = 15


def get_payment_gateway():
    from services.stripe_service import stripe_service
    return stripe_service


def get_document_store():
    from services.storage_adapter import document_store
    return document_store


async def _load_subscription(account_id: str) -> dict:
    db = database.get_db()
    subscription = await db.subscriptions.find_one({"account_id": account_id}, {"_id": 0})
    if not subscription:
        raise NotFound(f"No subscription for account {account_id}", user_message="Subscription not found")
    return subscription


@router.get("/dashboard")
async def get_dashboard(current_user: dict = Depends(client_route_guard)):
    db = database.get_db()
    account_id = current_user["account_id"]

    account = await db.accounts.find_one({"account_id": account_id}, {"_id": 0, "password_hash": 0})
    profile = await db.business_profiles.find_one({"account_id": account_id}, {"_id": 0})
    subscription = await _load_subscription(account_id)
    agreement = await db.agreements.find_one(
        {"account_id": account_id}, {"_id": 0, "signature_data": 0}, sort=[("signed_at", -1)]
    )

    return {
        "account": account,
        "business_profile": profile,
        "subscription": {**subscription, "summary": status_summary(SubscriptionStatus(subscription["status"]))},
        "agreement": agreement,
        "unread_notifications": await count_unread(account_id),
    }


@router.post("/checkout")
async def create_checkout(
    current_user: dict = Depends(client_route_guard),
    payment_gateway=Depends(get_payment_gateway),
):
    """Retry or renew payment. Only offered for statuses with a payment-success transition."""
    db = database.get_db()
    account_id = current_user["account_id"]
    subscription = await _load_subscription(account_id)
    current = SubscriptionStatus(subscription["status"])

    if not status_summary(current)["can_checkout"]:
        raise InvalidTransition(current.value, "CHECKOUT")

    profile = await db.business_profiles.find_one({"account_id": account_id}, {"_id": 0, "company_name": 1})
    checkout_url = await start_checkout(
        payment_gateway,
        account_id=account_id,
        subscription_id=subscription["subscription_id"],
        email=current_user["email"],
        company_name=(profile or {}).get("company_name", ""),
    )
    return {"checkout_url": checkout_url}


@router.get("/agreement/document")
async def download_agreement(
    current_user: dict = Depends(client_route_guard),
    document_store=Depends(get_document_store),
):
    """Signed agreement PDF. 404 until the post-registration render has stored it."""
    from services.storage_adapter import DocumentNotFoundError

    db = database.get_db()
    account_id = current_user["account_id"]
    agreement = await db.agreements.find_one(
        {"account_id": account_id, "document_ref": {"$ne": None}},
        {"_id": 0, "agreement_id": 1, "document_ref": 1},
        sort=[("signed_at", -1)],
    )
    if not agreement:
        raise NotFound(f"No agreement document for account {account_id}", user_message="Agreement document not available")

    try:
        content, meta = await document_store.fetch(agreement["document_ref"])
    except DocumentNotFoundError as e:
        logger.error(f"Agreement {agreement['agreement_id']} references a missing document: {e}")
        raise NotFound(str(e), user_message="Agreement document not available")

    return Response(
        content=content,
        media_type=meta.content_type,
        headers={"Content-Disposition": f'attachment; filename="agreement-{agreement["agreement_id"]}.pdf"'},
    )


@router.get("/notifications")
async def get_notifications(unread_only: bool = False, current_user: dict = Depends(client_route_guard)):
    account_id = current_user["account_id"]
    return {
        "notifications": await list_notifications(account_id, unread_only=unread_only),
        "unread_count": await count_unread(account_id),
    }


@router.post("/notifications/{notification_id}/read")
async def read_notification(notification_id: str, current_user: dict = Depends(client_route_guard)):
    if not await mark_notification_read(current_user["account_id"], notification_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"success": True}


@router.patch("/profile")
async def update_profile(body: ProfileUpdateRequest, current_user: dict = Depends(client_route_guard)):
    """Update trading address and phone. Company name, number and registered
    address are identity fields and only change through an admin.
    """
    db = database.get_db()
    account_id = current_user["account_id"]

    updates = {}
    for field_name in ("trading_address", "phone"):
        if field_name in body.model_fields_set:
            value = getattr(body, field_name)
            updates[field_name] = (value or "").strip() or None
    if not updates:
        raise ValidationError("No fields to update")

    before = await db.business_profiles.find_one(
        {"account_id": account_id}, {"_id": 0, "business_profile_id": 1, "trading_address": 1, "phone": 1}
    )
    if not before:
        raise NotFound(f"No business profile for account {account_id}", user_message="Business profile not found")

    await db.business_profiles.update_one({"account_id": account_id}, {"$set": updates})

    await create_audit_log(
        action=AuditAction.PROFILE_UPDATED,
        actor_role=current_user.get("role"),
        actor_id=account_id,
        account_id=account_id,
        resource_type="business_profile",
        resource_id=before["business_profile_id"],
        before_state={k: before.get(k) for k in updates},
        after_state=updates,
    )
    return {"success": True, "message": "Profile updated successfully", "updated": sorted(updates)}


@router.post("/password")
async def change_password(
    request: Request,
    body: PasswordChangeRequest,
    current_user: dict = Depends(client_route_guard),
):
    db = database.get_db()
    account_id = current_user["account_id"]
    await rate_limiter.enforce(
        f"password-change:{account_id}", PASSWORD_CHANGE_RATE_LIMIT, PASSWORD_CHANGE_RATE_WINDOW_MINUTES
    )

    if not body.current_password or not body.new_password:
        raise ValidationError("Current and new password are required")

    account = await db.accounts.find_one({"account_id": account_id}, {"_id": 0, "password_hash": 1})
    if not account or not account.get("password_hash"):
        raise NotFound(f"Account {account_id} not found", user_message="Account not found")

    if not verify_password(body.current_password, account["password_hash"]):
        logger.warning(f"Password change refused for {account_id}: current password mismatch")
        raise ValidationError("Current password is incorrect", field="current_password")

    is_valid, message = validate_password_strength(body.new_password)
    if not is_valid:
        raise ValidationError(message, field="new_password")

    await db.accounts.update_one({"account_id": account_id}, {"$set": {"password_hash": hash_password(body.new_password)}})

    await create_audit_log(
        action=AuditAction.PASSWORD_CHANGED,
        actor_role=current_user.get("role"),
        actor_id=account_id,
        account_id=account_id,
        resource_type="account",
        resource_id=account_id,
        ip_address=request.client.host if request.client else None,
    )
    return {"success": True, "message": "Password changed successfully"}
