"""Payment Reconciliation - applies payment gateway events to subscriptions.

Key Principles:
1. Idempotency: "{type}:{transaction_id}" is inserted into payment_events in
   the same transaction as the payment write; a replay raises DuplicateEvent
2. The state machine owns status: succeeded/failed events only ever reach the
   subscription through apply_transition
3. Refunds are a consequence, never a cause: they mark the payment REFUNDED
   and leave the subscription alone
4. Emails go out after commit and never undo an applied event
5. An event that loses the race for the subscription row is applied again on
   a fresh read; if it keeps losing, nothing is written and the webhook
   answers 500 so Stripe redelivers it

Stripe events handled:
- checkout.session.completed (paid sessions only; Bacs completes unpaid)
- payment_intent.succeeded
- payment_intent.payment_failed
- charge.refunded
"""
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import stripe
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from models import (
    AuditAction, Payment, PaymentEvent, PaymentEventType, PaymentMethod, PaymentStatus,
    SubscriptionStatus, to_document,
)
from services.errors import (
    DuplicateEvent, InvalidTransition, LifecycleError, NotFound, PersistenceFailure, TransitionConflict, ValidationError,
)
from services.subscription_state_machine import PAYMENT_RETRY_THRESHOLD, Trigger, apply_transition
from utils.audit import append_audit_log

logger = logging.getLogger(__name__)

# Lost optimistic races re-read the subscription and apply the event again
EVENT_CONFLICT_ATTEMPTS = 3

_METHOD_MAP = {
    "card": PaymentMethod.CARD,
    "bacs_debit": PaymentMethod.BACS_DIRECT_DEBIT,
}


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


@dataclass
class ReconciliationResult:
    idempotency_key: str
    event_type: PaymentEventType
    subscription_id: str
    account_id: str
    payment_id: str
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    retry_count: int
    state_mismatch: bool = False
    side_effects: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.new_status


# ============================================================================
# Stripe adapter
# ============================================================================

def _obj_get(obj: Any, key: str, default=None):
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _obj_get(value, "id")


def _payment_method_from(obj: Dict[str, Any]) -> Optional[PaymentMethod]:
    types = _obj_get(obj, "payment_method_types") or []
    details = _obj_get(obj, "payment_method_details") or {}
    method = _obj_get(details, "type") or (types[0] if len(types) == 1 else None)
    return _METHOD_MAP.get(method) if method else None


def parse_stripe_event(event: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Translate a Stripe event into a PaymentEvent. Returns None for events the engine ignores."""
    event_type = _obj_get(event, "type")
    obj = _obj_get(_obj_get(event, "data", {}), "object", {}) or {}
    metadata = _obj_get(obj, "metadata", {}) or {}
    subscription_id = _obj_get(metadata, "subscription_id")
    event_id = _obj_get(event, "id")

    if event_type == "checkout.session.completed":
        if _obj_get(obj, "payment_status") != "paid":
            # Bacs Direct Debit: funds arrive later as payment_intent.succeeded
            return None
        transaction_id = _id_of(_obj_get(obj, "payment_intent")) or _obj_get(obj, "id")
        return PaymentEvent(
            type=PaymentEventType.SUCCEEDED,
            transaction_id=transaction_id,
            subscription_id=subscription_id,
            amount=_obj_get(obj, "amount_total") or 0,
            currency=_obj_get(obj, "currency") or "gbp",
            payment_method=_payment_method_from(obj),
            gateway_customer_id=_id_of(_obj_get(obj, "customer")),
            event_id=event_id,
        )

    if event_type == "payment_intent.succeeded":
        return PaymentEvent(
            type=PaymentEventType.SUCCEEDED,
            transaction_id=_obj_get(obj, "id"),
            subscription_id=subscription_id,
            amount=_obj_get(obj, "amount_received") or _obj_get(obj, "amount") or 0,
            currency=_obj_get(obj, "currency") or "gbp",
            payment_method=_payment_method_from(obj),
            gateway_customer_id=_id_of(_obj_get(obj, "customer")),
            event_id=event_id,
        )

    if event_type == "payment_intent.payment_failed":
        # Each failed attempt on the same intent has its own charge
        last_error = _obj_get(obj, "last_payment_error") or {}
        charge_id = _id_of(_obj_get(obj, "latest_charge")) or _id_of(_obj_get(last_error, "charge"))
        payment_method = _payment_method_from(obj)
        error_method = _obj_get(_obj_get(last_error, "payment_method"), "type")
        if payment_method is None and error_method:
            payment_method = _METHOD_MAP.get(error_method)
        return PaymentEvent(
            type=PaymentEventType.FAILED,
            transaction_id=charge_id or _obj_get(obj, "id"),
            subscription_id=subscription_id,
            amount=_obj_get(obj, "amount") or 0,
            currency=_obj_get(obj, "currency") or "gbp",
            payment_method=payment_method,
            gateway_customer_id=_id_of(_obj_get(obj, "customer")),
            event_id=event_id,
        )

    if event_type == "charge.refunded":
        return PaymentEvent(
            type=PaymentEventType.REFUNDED,
            transaction_id=_id_of(_obj_get(obj, "payment_intent")) or _obj_get(obj, "id"),
            subscription_id=subscription_id,
            amount=_obj_get(obj, "amount_refunded") or 0,
            currency=_obj_get(obj, "currency") or "gbp",
            event_id=event_id,
        )

    return None


# ============================================================================
# Reconciliation
# ============================================================================

class PaymentReconciliation:
    def __init__(self, mailer=None):
        if mailer is None:
            from services.email_service import email_service as mailer
        self.mailer = mailer

    async def apply_event(self, event: PaymentEvent, now: Optional[datetime] = None) -> ReconciliationResult:
        """Apply one gateway event atomically.

        Raises:
            DuplicateEvent: the idempotency key was already applied (nothing changes)
            NotFound: the event names no known subscription
            PersistenceFailure: the transaction could not commit, or kept losing
                the race for the subscription row; nothing was written
        """
        now = now or datetime.now(timezone.utc)
        attempt = 1
        while True:
            try:
                result = await database.run_transaction(
                    lambda session: self._apply_in_session(event, session, now)
                )
                break
            except TransitionConflict as e:
                if attempt >= EVENT_CONFLICT_ATTEMPTS:
                    logger.error(
                        "PAYMENT_EVENT_CONFLICT key=%s subscription_id=%s attempts=%s - not applied",
                        event.idempotency_key, event.subscription_id, attempt,
                    )
                    raise PersistenceFailure(
                        f"payment event {event.idempotency_key} lost the subscription race {attempt} times"
                    ) from e
                logger.warning(
                    "PAYMENT_EVENT_CONFLICT key=%s subscription_id=%s attempt=%s - retrying",
                    event.idempotency_key, event.subscription_id, attempt,
                )
                attempt += 1
            except LifecycleError:
                raise
            except PyMongoError as e:
                logger.error(
                    "PAYMENT_EVENT_FAILED key=%s subscription_id=%s error=%s",
                    event.idempotency_key, event.subscription_id, e,
                )
                raise PersistenceFailure(f"payment event {event.idempotency_key} not applied: {e}") from e

        logger.info(
            "PAYMENT_EVENT_APPLIED key=%s subscription_id=%s from=%s to=%s retry_count=%s mismatch=%s",
            result.idempotency_key, result.subscription_id, result.previous_status.value,
            result.new_status.value, result.retry_count, result.state_mismatch,
        )

        result.side_effects.append(await self._notify(result, event))
        return result

    async def _resolve_subscription(self, event: PaymentEvent, session) -> Dict[str, Any]:
        db = database.get_db()
        subscription_id = event.subscription_id
        if not subscription_id:
            payment = await db.payments.find_one(
                {"transaction_id": event.transaction_id}, {"_id": 0, "subscription_id": 1}, session=session
            )
            subscription_id = (payment or {}).get("subscription_id")
        if not subscription_id:
            raise ValidationError(f"Payment event {event.idempotency_key} has no subscription reference")

        subscription = await db.subscriptions.find_one(
            {"subscription_id": subscription_id}, {"_id": 0}, session=session
        )
        if not subscription:
            raise NotFound(f"Subscription {subscription_id} not found for {event.idempotency_key}")
        return subscription

    async def _record_event(self, event: PaymentEvent, subscription_id: str, session, now: datetime):
        db = database.get_db()
        try:
            await db.payment_events.insert_one(
                {
                    "idempotency_key": event.idempotency_key,
                    "type": event.type.value,
                    "transaction_id": event.transaction_id,
                    "subscription_id": subscription_id,
                    "event_id": event.event_id,
                    "amount": event.amount,
                    "received_at": now,
                },
                session=session,
            )
        except DuplicateKeyError as e:
            logger.info(f"Payment event {event.idempotency_key} already applied - skipping")
            raise DuplicateEvent(event.idempotency_key) from e

    async def _apply_in_session(self, event: PaymentEvent, session, now: datetime) -> ReconciliationResult:
        db = database.get_db()
        subscription = await self._resolve_subscription(event, session)
        subscription_id = subscription["subscription_id"]
        account_id = subscription["account_id"]
        current = SubscriptionStatus(subscription["status"])

        await self._record_event(event, subscription_id, session, now)

        if event.type == PaymentEventType.REFUNDED:
            payment_id = await self._mark_refunded(event, subscription, session, now)
            await append_audit_log(
                db,
                session,
                action=AuditAction.PAYMENT_APPLIED,
                actor_role="SYSTEM",
                account_id=account_id,
                resource_type="payment",
                resource_id=payment_id,
                after_state={"status": PaymentStatus.REFUNDED.value},
                metadata={"idempotency_key": event.idempotency_key, "amount": event.amount},
            )
            return ReconciliationResult(
                idempotency_key=event.idempotency_key,
                event_type=event.type,
                subscription_id=subscription_id,
                account_id=account_id,
                payment_id=payment_id,
                previous_status=current,
                new_status=current,
                retry_count=subscription.get("retry_count", 0),
            )

        if event.type == PaymentEventType.SUCCEEDED:
            payment_id = await self._upsert_payment(event, subscription, PaymentStatus.SUCCEEDED, session, now)
            trigger = Trigger.PAYMENT_SUCCEEDED
        else:
            payment_id = await self._upsert_payment(event, subscription, PaymentStatus.FAILED, session, now)
            trigger = Trigger.PAYMENT_FAILED

        extra_updates: Dict[str, Any] = {}
        if event.payment_method:
            extra_updates["payment_method"] = event.payment_method.value
        if event.gateway_customer_id and not subscription.get("gateway_customer_id"):
            extra_updates["gateway_customer_id"] = event.gateway_customer_id

        try:
            transition = await apply_transition(
                subscription_id,
                trigger,
                session,
                actor_role="SYSTEM",
                now=now,
                metadata={"idempotency_key": event.idempotency_key, "payment_id": payment_id},
                extra_updates=extra_updates or None,
            )
        except TransitionConflict:
            raise
        except InvalidTransition:
            if trigger != Trigger.PAYMENT_SUCCEEDED:
                raise
            # Money arrived for a status with no success transition (e.g. already ACTIVE):
            # keep the payment, reset the retry counter, leave the status alone
            retry_count = await self._reset_retry_without_transition(
                subscription, event, payment_id, extra_updates, session, now
            )
            return ReconciliationResult(
                idempotency_key=event.idempotency_key,
                event_type=event.type,
                subscription_id=subscription_id,
                account_id=account_id,
                payment_id=payment_id,
                previous_status=current,
                new_status=current,
                retry_count=retry_count,
                state_mismatch=True,
            )

        return ReconciliationResult(
            idempotency_key=event.idempotency_key,
            event_type=event.type,
            subscription_id=subscription_id,
            account_id=account_id,
            payment_id=payment_id,
            previous_status=transition.previous_status,
            new_status=transition.new_status,
            retry_count=transition.retry_count,
        )

    async def _upsert_payment(
        self,
        event: PaymentEvent,
        subscription: Dict[str, Any],
        status: PaymentStatus,
        session,
        now: datetime,
    ) -> str:
        db = database.get_db()
        updates: Dict[str, Any] = {"status": status.value}
        if status == PaymentStatus.SUCCEEDED:
            updates["paid_at"] = now
        if event.payment_method:
            updates["payment_method"] = event.payment_method.value
        if event.amount:
            updates["amount"] = event.amount

        existing = await db.payments.find_one_and_update(
            {"transaction_id": event.transaction_id, "subscription_id": subscription["subscription_id"]},
            {"$set": updates},
            projection={"_id": 0, "payment_id": 1},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if existing:
            return existing["payment_id"]

        payment = Payment(
            subscription_id=subscription["subscription_id"],
            account_id=subscription["account_id"],
            amount=event.amount,
            currency=event.currency,
            status=status,
            payment_method=event.payment_method,
            transaction_id=event.transaction_id,
            paid_at=now if status == PaymentStatus.SUCCEEDED else None,
        )
        await db.payments.insert_one(to_document(payment), session=session)
        return payment.payment_id

    async def _mark_refunded(self, event: PaymentEvent, subscription: Dict[str, Any], session, now: datetime) -> str:
        db = database.get_db()
        updated = await db.payments.find_one_and_update(
            {"transaction_id": event.transaction_id, "subscription_id": subscription["subscription_id"]},
            {"$set": {"status": PaymentStatus.REFUNDED.value, "refunded_at": now}},
            projection={"_id": 0, "payment_id": 1},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated:
            return updated["payment_id"]

        logger.warning(
            f"Refund {event.idempotency_key} has no recorded payment; recording it for subscription "
            f"{subscription['subscription_id']}"
        )
        payment = Payment(
            subscription_id=subscription["subscription_id"],
            account_id=subscription["account_id"],
            amount=event.amount,
            currency=event.currency,
            status=PaymentStatus.REFUNDED,
            transaction_id=event.transaction_id,
            refunded_at=now,
        )
        await db.payments.insert_one(to_document(payment), session=session)
        return payment.payment_id

    async def _reset_retry_without_transition(
        self,
        subscription: Dict[str, Any],
        event: PaymentEvent,
        payment_id: str,
        extra_updates: Dict[str, Any],
        session,
        now: datetime,
    ) -> int:
        db = database.get_db()
        subscription_id = subscription["subscription_id"]
        updated = await db.subscriptions.find_one_and_update(
            {"subscription_id": subscription_id, "version": subscription.get("version", 0)},
            {"$set": {"retry_count": 0, "updated_at": now, **extra_updates}, "$inc": {"version": 1}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            latest = await db.subscriptions.find_one(
                {"subscription_id": subscription_id}, {"_id": 0, "status": 1}, session=session
            )
            raise TransitionConflict((latest or {}).get("status", subscription["status"]), Trigger.PAYMENT_SUCCEEDED.value)

        await append_audit_log(
            db,
            session,
            action=AuditAction.PAYMENT_STATE_MISMATCH,
            actor_role="SYSTEM",
            account_id=subscription["account_id"],
            resource_type="subscription",
            resource_id=subscription_id,
            before_state={"status": subscription["status"], "retry_count": subscription.get("retry_count", 0)},
            after_state={"status": updated["status"], "retry_count": 0},
            metadata={"idempotency_key": event.idempotency_key, "payment_id": payment_id},
        )
        logger.warning(
            "PAYMENT_STATE_MISMATCH subscription_id=%s status=%s key=%s payment_id=%s",
            subscription_id, subscription["status"], event.idempotency_key, payment_id,
        )
        return 0

    async def _notify(self, result: ReconciliationResult, event: PaymentEvent) -> Dict[str, Any]:
        """Payment received / failed email after commit. Never raises."""
        if event.type == PaymentEventType.REFUNDED:
            return {"name": "payment_email", "ok": True, "skipped": True}

        try:
            db = database.get_db()
            account = await db.accounts.find_one({"account_id": result.account_id}, {"_id": 0, "email": 1})
            profile = await db.business_profiles.find_one(
                {"account_id": result.account_id}, {"_id": 0, "company_name": 1}
            )
            if not account:
                return {"name": "payment_email", "ok": False, "error": "account not found"}
            company_name = (profile or {}).get("company_name", "your company")

            if event.type == PaymentEventType.SUCCEEDED:
                if result.new_status == SubscriptionStatus.PENDING_APPROVAL:
                    status_line = "Your application is now under review."
                elif result.new_status == SubscriptionStatus.ACTIVE:
                    status_line = "Your registered office service is active."
                else:
                    status_line = "Our team will be in touch if anything else is needed."
                log = await self.mailer.send_payment_received_email(
                    account["email"], company_name, event.amount, status_line, result.account_id
                )
            else:
                log = await self.mailer.send_payment_failed_email(
                    account["email"], company_name, result.retry_count, PAYMENT_RETRY_THRESHOLD, result.account_id
                )
        except Exception as e:
            logger.warning(
                f"Payment email failed for account {result.account_id} key {result.idempotency_key}: {e}"
            )
            return {"name": "payment_email", "ok": False, "error": str(e)}

        if getattr(log, "status", "sent") == "failed":
            return {"name": "payment_email", "ok": False, "error": log.error_message}
        return {"name": "payment_email", "ok": True}

    # =========================================================================
    # Webhook entry point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: str) -> Tuple[bool, str, Optional[Dict]]:
        """
        Verify, translate and apply a Stripe webhook.

        Returns:
            (success, message, details). success=False only for requests that
            should be retried or were never genuine (bad signature/payload).
        """
        webhook_secret = _get_webhook_secret()
        try:
            if webhook_secret:
                event = stripe.Webhook.construct_event(payload, signature, webhook_secret)
            else:
                # Development mode - parse without verification
                event = json.loads(payload)
                logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": "invalid signature"}
        except Exception as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": "invalid payload"}

        event_id = _obj_get(event, "id")
        event_type = _obj_get(event, "type")
        logger.info("WEBHOOK_RECEIVED event_id=%s event_type=%s", event_id, event_type)

        payment_event = parse_stripe_event(event)
        if payment_event is None:
            logger.info("WEBHOOK_IGNORED event_id=%s event_type=%s", event_id, event_type)
            return True, "Ignored", {"event_id": event_id}

        try:
            result = await self.apply_event(payment_event)
        except DuplicateEvent:
            return True, "Already processed", {"event_id": event_id, "idempotency_key": payment_event.idempotency_key}
        except PersistenceFailure as e:
            # Nothing was written; let the gateway retry
            return False, "Not applied", {"event_id": event_id, "error": e.user_message}
        except LifecycleError as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error_code=%s error=%s",
                event_id, event_type, e.error_code, e,
            )
            return True, "Event logged with error", {"event_id": event_id, "error_code": e.error_code}

        return True, "Processed", {
            "event_id": event_id,
            "subscription_id": result.subscription_id,
            "status": result.new_status.value,
        }


payment_reconciliation = PaymentReconciliation()
