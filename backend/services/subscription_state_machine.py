"""Subscription State Machine - the only writer of subscriptions.status.

Three independent callers drive it: the registration engine (initial DRAFT
row), payment reconciliation and the admin action processor, plus the renewal
sweep. Every change goes through apply_transition, which:

1. Resolves a rule from TRANSITION_TABLE for (current status, trigger, guard)
2. Writes the new state with an optimistic status+version check
3. Appends exactly one audit entry and zero-or-one notification

All writes share the caller's session, so a failure anywhere rolls back the
whole unit.
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from pymongo import ReturnDocument

from database import database
from models import AdminActionType, AuditAction, SubscriptionStatus
from services.errors import InvalidTransition, NotFound, TransitionConflict, ValidationError
from services.notification_emitter import emit_notification, transition_message
from utils.audit import append_audit_log

logger = logging.getLogger(__name__)

SUBSCRIPTION_TERM = timedelta(days=365)
RENEWAL_WINDOW_DAYS = int(os.getenv("RENEWAL_WINDOW_DAYS", "30"))
PAYMENT_RETRY_THRESHOLD = int(os.getenv("PAYMENT_RETRY_THRESHOLD", "3"))


class Trigger(str, Enum):
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    ADMIN_APPROVE = "ADMIN_APPROVE"
    ADMIN_REJECT = "ADMIN_REJECT"
    ADMIN_SUSPEND = "ADMIN_SUSPEND"
    ADMIN_REACTIVATE = "ADMIN_REACTIVATE"
    ADMIN_CANCEL = "ADMIN_CANCEL"
    ADMIN_WITHDRAW = "ADMIN_WITHDRAW"
    RENEWAL_WINDOW_REACHED = "RENEWAL_WINDOW_REACHED"
    END_DATE_PASSED = "END_DATE_PASSED"


ADMIN_TRIGGERS: Dict[AdminActionType, Trigger] = {
    AdminActionType.APPROVE: Trigger.ADMIN_APPROVE,
    AdminActionType.REJECT: Trigger.ADMIN_REJECT,
    AdminActionType.SUSPEND: Trigger.ADMIN_SUSPEND,
    AdminActionType.REACTIVATE: Trigger.ADMIN_REACTIVATE,
    AdminActionType.CANCEL: Trigger.ADMIN_CANCEL,
    AdminActionType.WITHDRAW: Trigger.ADMIN_WITHDRAW,
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# Guards - (subscription, now) -> bool
# ============================================================================

def within_renewal_window(subscription: Dict[str, Any], now: datetime) -> bool:
    end_date = _as_utc(subscription.get("end_date"))
    return end_date is not None and end_date - now <= timedelta(days=RENEWAL_WINDOW_DAYS)


def end_date_passed(subscription: Dict[str, Any], now: datetime) -> bool:
    end_date = _as_utc(subscription.get("end_date"))
    return end_date is not None and end_date < now


def retry_threshold_reached(subscription: Dict[str, Any], now: datetime) -> bool:
    return subscription.get("retry_count", 0) + 1 >= PAYMENT_RETRY_THRESHOLD


@dataclass(frozen=True)
class TransitionRule:
    trigger: Trigger
    sources: FrozenSet[SubscriptionStatus]
    target: Optional[SubscriptionStatus]  # None keeps the current status
    requires_reason: bool = False
    guard: Optional[Callable[[Dict[str, Any], datetime], bool]] = None


S = SubscriptionStatus
_ALL = frozenset(SubscriptionStatus)
_CANCELLABLE = _ALL - {S.WITHDRAWN, S.REJECTED}

# Ordered: the first rule whose trigger, source and guard match wins
TRANSITION_TABLE: Tuple[TransitionRule, ...] = (
    TransitionRule(Trigger.PAYMENT_SUCCEEDED, frozenset({S.DRAFT}), S.PENDING_APPROVAL),
    TransitionRule(Trigger.ADMIN_APPROVE, frozenset({S.PENDING_APPROVAL}), S.ACTIVE),
    TransitionRule(Trigger.ADMIN_REJECT, frozenset({S.PENDING_APPROVAL}), S.REJECTED, requires_reason=True),
    TransitionRule(Trigger.ADMIN_SUSPEND, frozenset({S.ACTIVE}), S.SUSPENDED, requires_reason=True),
    TransitionRule(Trigger.RENEWAL_WINDOW_REACHED, frozenset({S.ACTIVE}), S.RENEWAL_PENDING,
                   guard=within_renewal_window),
    TransitionRule(Trigger.ADMIN_REACTIVATE, frozenset({S.SUSPENDED}), S.ACTIVE),
    TransitionRule(Trigger.PAYMENT_SUCCEEDED, frozenset({S.RENEWAL_PENDING, S.EXPIRED, S.SUSPENDED}), S.ACTIVE),
    TransitionRule(Trigger.ADMIN_CANCEL, _CANCELLABLE, S.WITHDRAWN),
    TransitionRule(Trigger.ADMIN_WITHDRAW, _CANCELLABLE, S.WITHDRAWN),
    TransitionRule(Trigger.END_DATE_PASSED, frozenset({S.ACTIVE, S.RENEWAL_PENDING}), S.EXPIRED,
                   guard=end_date_passed),
    TransitionRule(Trigger.PAYMENT_FAILED, frozenset({S.ACTIVE, S.PENDING_APPROVAL}), S.SUSPENDED,
                   guard=retry_threshold_reached),
    TransitionRule(Trigger.PAYMENT_FAILED, _ALL, None),
)


def resolve_rule(
    status: SubscriptionStatus,
    trigger: Trigger,
    subscription: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Optional[TransitionRule]:
    """Find the rule for (status, trigger). Guards are only checked when a subscription is given."""
    now = now or datetime.now(timezone.utc)
    for rule in TRANSITION_TABLE:
        if rule.trigger != trigger or status not in rule.sources:
            continue
        if rule.guard and subscription is not None and not rule.guard(subscription, now):
            continue
        return rule
    return None


def requires_reason(action: AdminActionType) -> bool:
    trigger = ADMIN_TRIGGERS.get(action)
    return any(rule.requires_reason for rule in TRANSITION_TABLE if rule.trigger == trigger)


def allowed_actions(status: SubscriptionStatus) -> List[str]:
    """Admin actions legal for a status, for UIs that must not offer anything else."""
    return [
        action.value for action, trigger in ADMIN_TRIGGERS.items()
        if resolve_rule(status, trigger) is not None
    ]


_STATUS_SUMMARY = {
    S.DRAFT: ("Awaiting payment", "neutral"),
    S.PENDING_APPROVAL: ("Under review", "warning"),
    S.ACTIVE: ("Active", "success"),
    S.RENEWAL_PENDING: ("Renewal due", "warning"),
    S.SUSPENDED: ("Suspended", "danger"),
    S.EXPIRED: ("Expired", "danger"),
    S.REJECTED: ("Rejected", "danger"),
    S.WITHDRAWN: ("Withdrawn", "neutral"),
}


def status_summary(status: SubscriptionStatus) -> Dict[str, Any]:
    label, tone = _STATUS_SUMMARY[status]
    return {
        "status": status.value,
        "label": label,
        "tone": tone,
        "can_checkout": resolve_rule(status, Trigger.PAYMENT_SUCCEEDED) is not None,
    }


# ============================================================================
# Transition application
# ============================================================================

@dataclass
class TransitionResult:
    subscription_id: str
    account_id: str
    trigger: Trigger
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    retry_count: int
    subscription: Dict[str, Any]
    notification_id: Optional[str] = None

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.new_status


def _transition_updates(
    rule: TransitionRule,
    subscription: Dict[str, Any],
    now: datetime,
) -> Dict[str, Any]:
    updates: Dict[str, Any] = {"updated_at": now}
    trigger = rule.trigger

    if trigger == Trigger.ADMIN_APPROVE:
        end_date = now + SUBSCRIPTION_TERM
        updates.update({"start_date": now, "end_date": end_date, "next_payment_date": end_date})
    elif trigger == Trigger.PAYMENT_SUCCEEDED:
        updates["retry_count"] = 0
        if rule.target == S.ACTIVE:
            current_end = _as_utc(subscription.get("end_date"))
            base = max(current_end, now) if current_end else now
            end_date = base + SUBSCRIPTION_TERM
            updates.update({"end_date": end_date, "next_payment_date": end_date})
            if not subscription.get("start_date"):
                updates["start_date"] = now
    elif trigger == Trigger.PAYMENT_FAILED:
        updates["retry_count"] = min(subscription.get("retry_count", 0) + 1, PAYMENT_RETRY_THRESHOLD)
    elif trigger == Trigger.ADMIN_REACTIVATE:
        updates["retry_count"] = 0

    return updates


def _account_active_flag(new_status: SubscriptionStatus, changed: bool) -> Optional[bool]:
    if not changed:
        return None
    if new_status == S.ACTIVE:
        return True
    if new_status in (S.REJECTED, S.SUSPENDED, S.WITHDRAWN):
        return False
    return None


def _snapshot(subscription: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: subscription.get(key)
        for key in ("status", "retry_count", "start_date", "end_date", "next_payment_date")
    }


async def apply_transition(
    subscription_id: str,
    trigger: Trigger,
    session,
    actor_id: Optional[str] = None,
    actor_role: str = "SYSTEM",
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
    extra_updates: Optional[Dict[str, Any]] = None,
) -> TransitionResult:
    """Apply a trigger to a subscription inside the caller's transaction.

    Raises:
        NotFound: no such subscription
        InvalidTransition: (status, trigger) not in the table or a guard failed
        TransitionConflict: another writer changed the row since it was read
        ValidationError: the rule needs a reason and none was given
    """
    db = database.get_db()
    now = now or datetime.now(timezone.utc)

    subscription = await db.subscriptions.find_one(
        {"subscription_id": subscription_id}, {"_id": 0}, session=session
    )
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found", user_message="Subscription not found")

    current = SubscriptionStatus(subscription["status"])
    rule = resolve_rule(current, trigger, subscription, now)
    if rule is None:
        raise InvalidTransition(current.value, trigger.value)

    if rule.requires_reason and not (reason or "").strip():
        raise ValidationError(f"A reason is required to {trigger.value.replace('ADMIN_', '').lower()}", field="reason")

    new_status = rule.target or current
    updates = _transition_updates(rule, subscription, now)
    if extra_updates:
        updates.update(extra_updates)
    updates["status"] = new_status.value

    updated = await db.subscriptions.find_one_and_update(
        {
            "subscription_id": subscription_id,
            "status": current.value,
            "version": subscription.get("version", 0),
        },
        {"$set": updates, "$inc": {"version": 1}},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    if updated is None:
        latest = await db.subscriptions.find_one(
            {"subscription_id": subscription_id}, {"_id": 0, "status": 1}, session=session
        )
        latest_status = (latest or {}).get("status", current.value)
        logger.warning(
            "SUBSCRIPTION_TRANSITION_CONFLICT subscription_id=%s trigger=%s read_status=%s latest_status=%s",
            subscription_id, trigger.value, current.value, latest_status,
        )
        raise TransitionConflict(latest_status, trigger.value)

    account_id = subscription["account_id"]
    changed = new_status != current

    active_flag = _account_active_flag(new_status, changed)
    if active_flag is not None:
        await db.accounts.update_one(
            {"account_id": account_id},
            {"$set": {"is_active": active_flag}},
            session=session,
        )

    await append_audit_log(
        db,
        session,
        action=AuditAction.SUBSCRIPTION_STATUS_CHANGED if changed else AuditAction.PAYMENT_RETRY_RECORDED,
        actor_role=actor_role,
        actor_id=actor_id,
        account_id=account_id,
        resource_type="subscription",
        resource_id=subscription_id,
        before_state=_snapshot(subscription),
        after_state=_snapshot(updated),
        metadata={"trigger": trigger.value, **(metadata or {})},
        reason_code=reason,
    )

    notification_id = None
    message = transition_message(
        trigger.value,
        new_status.value if changed else None,
        reason=reason,
        end_date=_as_utc(updated.get("end_date")),
        retry_count=updated.get("retry_count", 0),
        threshold=PAYMENT_RETRY_THRESHOLD,
    )
    if message:
        notification_type, title, text = message
        notification_id = await emit_notification(db, session, account_id, notification_type, title, text)

    logger.info(
        "SUBSCRIPTION_TRANSITION subscription_id=%s trigger=%s from=%s to=%s retry_count=%s",
        subscription_id, trigger.value, current.value, new_status.value, updated.get("retry_count", 0),
    )

    return TransitionResult(
        subscription_id=subscription_id,
        account_id=account_id,
        trigger=trigger,
        previous_status=current,
        new_status=new_status,
        retry_count=updated.get("retry_count", 0),
        subscription=updated,
        notification_id=notification_id,
    )


async def transition(subscription_id: str, trigger: Trigger, **kwargs) -> TransitionResult:
    """apply_transition in its own transaction."""
    return await database.run_transaction(
        lambda session: apply_transition(subscription_id, trigger, session, **kwargs)
    )
