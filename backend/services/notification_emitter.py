"""Audit & Notification Emitter.

Append-only writers for the admin action trail and in-app notifications, plus
the message catalogue for lifecycle transitions. Writers take an open session:
they are part of the caller's unit of work and never swallow errors.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from database import database
from models import AdminAction, AdminActionType, Notification, NotificationType, to_document

logger = logging.getLogger(__name__)

# (type, title, message) keyed by (trigger, resulting status or None for unchanged)
_TRANSITION_MESSAGES: Dict[Tuple[str, Optional[str]], Tuple[NotificationType, str, str]] = {
    ("PAYMENT_SUCCEEDED", "PENDING_APPROVAL"): (
        NotificationType.PAYMENT_RECEIVED,
        "Payment Confirmed",
        "Your payment has been received. Your application is now under review by our admin team.",
    ),
    ("PAYMENT_SUCCEEDED", "ACTIVE"): (
        NotificationType.PAYMENT_RECEIVED,
        "Payment Confirmed",
        "Your payment has been received. Your registered office service is active until {end_date}.",
    ),
    ("PAYMENT_FAILED", None): (
        NotificationType.PAYMENT_FAILED,
        "Payment Failed",
        "Your payment attempt failed. We will retry automatically. Attempt {retry_count} of {threshold}.",
    ),
    ("PAYMENT_FAILED", "SUSPENDED"): (
        NotificationType.ACCOUNT_SUSPENDED,
        "Account Suspended",
        "Your subscription has been suspended due to repeated payment failures. "
        "Please update your payment method to reactivate.",
    ),
    ("ADMIN_APPROVE", "ACTIVE"): (
        NotificationType.APPLICATION_APPROVED,
        "Application Approved",
        "Your registered office service application has been approved. Your service is active until {end_date}.",
    ),
    ("ADMIN_REJECT", "REJECTED"): (
        NotificationType.APPLICATION_REJECTED,
        "Application Rejected",
        "Your application has been rejected. Reason: {reason}",
    ),
    ("ADMIN_SUSPEND", "SUSPENDED"): (
        NotificationType.ACCOUNT_SUSPENDED,
        "Account Suspended",
        "Your account has been suspended. Reason: {reason}",
    ),
    ("ADMIN_REACTIVATE", "ACTIVE"): (
        NotificationType.ACCOUNT_REACTIVATED,
        "Account Reactivated",
        "Your account has been reactivated. Your registered office service is now active again.",
    ),
    ("ADMIN_CANCEL", "WITHDRAWN"): (
        NotificationType.WITHDRAWAL_COMPLETE,
        "Service Cancelled",
        "Your registered office service has been cancelled.",
    ),
    ("ADMIN_WITHDRAW", "WITHDRAWN"): (
        NotificationType.WITHDRAWAL_COMPLETE,
        "Service Withdrawn",
        "Your registered office service has been withdrawn. Please contact us if you have any questions.",
    ),
    ("RENEWAL_WINDOW_REACHED", "RENEWAL_PENDING"): (
        NotificationType.RENEWAL_DUE,
        "Renewal Due",
        "Your registered office service expires on {end_date}. Please renew to keep your service running.",
    ),
    ("END_DATE_PASSED", "EXPIRED"): (
        NotificationType.SUBSCRIPTION_EXPIRED,
        "Service Expired",
        "Your registered office service expired on {end_date}. Renew from your dashboard to restore it.",
    ),
}


def format_date(value: Optional[datetime]) -> str:
    if not value:
        return "the end of your current term"
    return value.strftime("%d %B %Y").lstrip("0")


def transition_message(
    trigger: str,
    new_status: Optional[str],
    **context: Any,
) -> Optional[Tuple[NotificationType, str, str]]:
    """Return (type, title, message) for a transition, or None when nothing is sent."""
    entry = _TRANSITION_MESSAGES.get((trigger, new_status))
    if not entry:
        return None
    notification_type, title, template = entry
    context = dict(context)
    context["end_date"] = format_date(context.get("end_date"))
    if not context.get("reason"):
        context["reason"] = "Please contact us for more details."
    return notification_type, title, template.format(**context)


async def emit_notification(
    db,
    session,
    account_id: str,
    notification_type: NotificationType,
    title: str,
    message: str,
) -> str:
    notification = Notification(
        account_id=account_id,
        type=notification_type,
        title=title,
        message=message,
    )
    await db.notifications.insert_one(to_document(notification), session=session)
    return notification.notification_id


async def append_admin_action(
    db,
    session,
    admin_user_id: str,
    target_account_id: str,
    action_type: AdminActionType,
    subscription_id: Optional[str] = None,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
) -> str:
    row = AdminAction(
        admin_user_id=admin_user_id,
        target_account_id=target_account_id,
        subscription_id=subscription_id,
        action_type=action_type,
        reason=reason,
        notes=notes,
    )
    await db.admin_actions.insert_one(to_document(row), session=session)
    logger.info(
        "ADMIN_ACTION_RECORDED action=%s admin=%s target=%s",
        action_type.value, admin_user_id, target_account_id,
    )
    return row.admin_action_id


async def list_notifications(account_id: str, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
    db = database.get_db()
    query: Dict[str, Any] = {"account_id": account_id}
    if unread_only:
        query["read"] = False
    cursor = db.notifications.find(query, {"_id": 0}).sort("created_at", -1).limit(limit)
    return await cursor.to_list(length=limit)


async def count_unread(account_id: str) -> int:
    db = database.get_db()
    return await db.notifications.count_documents({"account_id": account_id, "read": False})


async def mark_notification_read(account_id: str, notification_id: str) -> bool:
    """Mark a notification read. Only the owning account can do this."""
    db = database.get_db()
    result = await db.notifications.update_one(
        {"notification_id": notification_id, "account_id": account_id},
        {"$set": {"read": True}},
    )
    return result.matched_count > 0
