"""Admin Action Processor - operator-triggered subscription transitions.

Order of work for perform_action:
1. Validate the action name
2. One transaction: state transition (table, then reason rule for
   REJECT/SUSPEND, then audit + notification) and the
   admin_actions row. This is the only hard dependency.
3. REJECT only: request refunds for succeeded payments. A refund failure
   is logged and audited as REFUND_FAILED, never rolled back.
4. Client email. Best-effort.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from database import database
from models import AdminActionType, AuditAction, EmailTemplateAlias, PaymentStatus, SubscriptionStatus, UserRole
from services.errors import LifecycleError, NotFound, PersistenceFailure, ValidationError
from services.notification_emitter import append_admin_action
from services.subscription_state_machine import (
    ADMIN_TRIGGERS, TransitionResult, allowed_actions, apply_transition, requires_reason, status_summary,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

_ACTION_EMAILS = {
    AdminActionType.APPROVE: EmailTemplateAlias.APPLICATION_APPROVED,
    AdminActionType.REJECT: EmailTemplateAlias.APPLICATION_REJECTED,
    AdminActionType.SUSPEND: EmailTemplateAlias.ACCOUNT_SUSPENDED,
    AdminActionType.REACTIVATE: EmailTemplateAlias.ACCOUNT_REACTIVATED,
    AdminActionType.CANCEL: EmailTemplateAlias.SERVICE_WITHDRAWN,
    AdminActionType.WITHDRAW: EmailTemplateAlias.SERVICE_WITHDRAWN,
}


@dataclass
class AdminActionResult:
    subscription_id: str
    action: AdminActionType
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    refund_initiated: bool = False
    admin_action_id: Optional[str] = None
    side_effects: List[Dict[str, Any]] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "subscription_id": self.subscription_id,
            "action": self.action.value,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "refund_initiated": self.refund_initiated,
            "side_effects": self.side_effects,
        }


def parse_action(action: str) -> AdminActionType:
    try:
        parsed = AdminActionType((action or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown action: {action}", field="action")
    if parsed not in ADMIN_TRIGGERS:
        raise ValidationError(f"{parsed.value} is not a subscription action", field="action")
    return parsed


class AdminActionProcessor:
    def __init__(self, payment_gateway=None, mailer=None):
        if payment_gateway is None:
            from services.stripe_service import stripe_service as payment_gateway
        if mailer is None:
            from services.email_service import email_service as mailer
        self.payment_gateway = payment_gateway
        self.mailer = mailer

    async def perform_action(
        self,
        subscription_id: str,
        action: str,
        actor_id: str,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        actor_role: str = UserRole.ADMIN.value,
    ) -> AdminActionResult:
        action_type = parse_action(action)
        reason = (reason or "").strip() or None

        # apply_transition checks the table before the reason rule, and both before any write
        async def unit(session):
            applied = await apply_transition(
                subscription_id,
                ADMIN_TRIGGERS[action_type],
                session,
                actor_id=actor_id,
                actor_role=actor_role,
                reason=reason,
                metadata={"admin_action": action_type.value, "notes": notes},
            )
            action_id = await append_admin_action(
                database.get_db(),
                session,
                admin_user_id=actor_id,
                target_account_id=applied.account_id,
                action_type=action_type,
                subscription_id=subscription_id,
                reason=reason,
                notes=notes,
            )
            return applied, action_id

        try:
            transition, admin_action_id = await database.run_transaction(unit)
        except LifecycleError:
            raise
        except PyMongoError as e:
            logger.error(f"Admin action {action_type.value} on {subscription_id} failed: {e}")
            raise PersistenceFailure(f"admin action not applied: {e}") from e

        result = AdminActionResult(
            subscription_id=subscription_id,
            action=action_type,
            previous_status=transition.previous_status,
            new_status=transition.new_status,
            admin_action_id=admin_action_id,
        )

        if action_type == AdminActionType.REJECT:
            result.refund_initiated, refund_effects = await self._refund_succeeded_payments(
                subscription_id, transition.account_id, actor_id
            )
            result.side_effects.extend(refund_effects)

        result.side_effects.append(await self._send_email(action_type, transition, reason))

        logger.info(
            "ADMIN_ACTION_APPLIED action=%s subscription_id=%s actor=%s from=%s to=%s refund_initiated=%s",
            action_type.value, subscription_id, actor_id,
            result.previous_status.value, result.new_status.value, result.refund_initiated,
        )
        return result

    async def _refund_succeeded_payments(self, subscription_id: str, account_id: str, actor_id: str):
        """Request a refund for every succeeded payment. Returns (refund_initiated, side_effects)."""
        db = database.get_db()
        payments = await db.payments.find(
            {"subscription_id": subscription_id, "status": PaymentStatus.SUCCEEDED.value},
            {"_id": 0},
        ).to_list(length=100)

        refund_initiated = False
        effects = []
        for payment in payments:
            if not payment.get("transaction_id"):
                continue
            refund_initiated = True
            idempotency_key = f"refund-{payment['payment_id']}"
            try:
                refund_id = await self.payment_gateway.request_refund(
                    payment["transaction_id"], idempotency_key, amount=payment.get("amount") or None
                )
            except Exception as e:
                logger.error(
                    "REFUND_FAILED subscription_id=%s payment_id=%s transaction_id=%s error=%s",
                    subscription_id, payment["payment_id"], payment["transaction_id"], e,
                )
                await create_audit_log(
                    action=AuditAction.REFUND_FAILED,
                    actor_role=UserRole.ADMIN.value,
                    actor_id=actor_id,
                    account_id=account_id,
                    resource_type="payment",
                    resource_id=payment["payment_id"],
                    metadata={
                        "subscription_id": subscription_id,
                        "transaction_id": payment["transaction_id"],
                        "idempotency_key": idempotency_key,
                        "error": str(e),
                    },
                )
                effects.append({"name": "refund", "ok": False, "payment_id": payment["payment_id"], "error": str(e)})
                continue

            await create_audit_log(
                action=AuditAction.REFUND_REQUESTED,
                actor_role=UserRole.ADMIN.value,
                actor_id=actor_id,
                account_id=account_id,
                resource_type="payment",
                resource_id=payment["payment_id"],
                metadata={"subscription_id": subscription_id, "refund_id": refund_id},
            )
            effects.append({"name": "refund", "ok": True, "payment_id": payment["payment_id"]})

        return refund_initiated, effects

    async def _send_email(
        self, action_type: AdminActionType, transition: TransitionResult, reason: Optional[str]
    ) -> Dict[str, Any]:
        template = _ACTION_EMAILS.get(action_type)
        try:
            db = database.get_db()
            account = await db.accounts.find_one({"account_id": transition.account_id}, {"_id": 0, "email": 1})
            profile = await db.business_profiles.find_one(
                {"account_id": transition.account_id}, {"_id": 0, "company_name": 1}
            )
            if not account:
                return {"name": "client_email", "ok": False, "error": "account not found"}
            log = await self.mailer.send_email(
                account["email"],
                template,
                {
                    "company_name": (profile or {}).get("company_name", "your company"),
                    "reason": reason or "",
                },
                account_id=transition.account_id,
            )
        except Exception as e:
            logger.warning(f"{action_type.value} email failed for account {transition.account_id}: {e}")
            return {"name": "client_email", "ok": False, "error": str(e)}

        if getattr(log, "status", "sent") == "failed":
            return {"name": "client_email", "ok": False, "error": log.error_message}
        return {"name": "client_email", "ok": True}


async def subscription_overview(subscription_id: str) -> Dict[str, Any]:
    """Read-only admin view: status, legal actions, payments and admin history."""
    db = database.get_db()
    subscription = await db.subscriptions.find_one({"subscription_id": subscription_id}, {"_id": 0})
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found", user_message="Subscription not found")

    status = SubscriptionStatus(subscription["status"])
    account_id = subscription["account_id"]

    account = await db.accounts.find_one({"account_id": account_id}, {"_id": 0, "password_hash": 0})
    profile = await db.business_profiles.find_one({"account_id": account_id}, {"_id": 0})
    payments = await db.payments.find(
        {"subscription_id": subscription_id}, {"_id": 0}
    ).sort("created_at", -1).to_list(length=100)
    history = await db.admin_actions.find(
        {"target_account_id": account_id}, {"_id": 0}
    ).sort("created_at", -1).to_list(length=100)

    return {
        "subscription": subscription,
        "status": status_summary(status),
        "allowed_actions": allowed_actions(status),
        "reason_required": [a for a in allowed_actions(status) if requires_reason(AdminActionType(a))],
        "account": account,
        "business_profile": profile,
        "payments": payments,
        "admin_actions": history,
    }


admin_action_processor = AdminActionProcessor()
