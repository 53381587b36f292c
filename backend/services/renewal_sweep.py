"""Renewal sweep - daily time-driven transitions and reminders.

1. END_DATE_PASSED for ACTIVE / RENEWAL_PENDING subscriptions past end_date
2. RENEWAL_WINDOW_REACHED for ACTIVE subscriptions inside the renewal window
3. Reminder email + notification at 60, 30 and 7 days before end_date

Safe to run more than once a day: transitions are guarded by the state machine
and each reminder is claimed on the subscription before it is sent.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from database import database
from models import NotificationType, SubscriptionStatus
from services.errors import LifecycleError
from services.notification_emitter import emit_notification, format_date
from services.subscription_state_machine import RENEWAL_WINDOW_DAYS, Trigger, transition

logger = logging.getLogger(__name__)

REMINDER_DAYS = (60, 30, 7)


async def _apply_time_trigger(subscription_id: str, trigger: Trigger, now: datetime) -> bool:
    try:
        await transition(subscription_id, trigger, actor_role="SYSTEM", now=now)
        return True
    except LifecycleError as e:
        # Another writer got there first, or the guard no longer holds
        logger.warning(f"{trigger.value} skipped for {subscription_id}: {e}")
        return False


async def expire_lapsed(now: datetime) -> int:
    db = database.get_db()
    lapsed = await db.subscriptions.find(
        {
            "status": {"$in": [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.RENEWAL_PENDING.value]},
            "end_date": {"$lt": now},
        },
        {"_id": 0, "subscription_id": 1},
    ).to_list(length=1000)

    count = 0
    for subscription in lapsed:
        if await _apply_time_trigger(subscription["subscription_id"], Trigger.END_DATE_PASSED, now):
            count += 1
    return count


async def open_renewal_window(now: datetime) -> int:
    db = database.get_db()
    due = await db.subscriptions.find(
        {
            "status": SubscriptionStatus.ACTIVE.value,
            "end_date": {"$gte": now, "$lte": now + timedelta(days=RENEWAL_WINDOW_DAYS)},
        },
        {"_id": 0, "subscription_id": 1},
    ).to_list(length=1000)

    count = 0
    for subscription in due:
        if await _apply_time_trigger(subscription["subscription_id"], Trigger.RENEWAL_WINDOW_REACHED, now):
            count += 1
    return count


async def send_renewal_reminders(now: datetime, mailer=None) -> int:
    if mailer is None:
        from services.email_service import email_service as mailer

    db = database.get_db()
    sent = 0
    for days in REMINDER_DAYS:
        window_start = now + timedelta(days=days)
        window_end = window_start + timedelta(days=1)
        candidates = await db.subscriptions.find(
            {
                "status": {"$in": [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.RENEWAL_PENDING.value]},
                "end_date": {"$gte": window_start, "$lt": window_end},
            },
            {"_id": 0},
        ).to_list(length=1000)

        for subscription in candidates:
            end_date = subscription["end_date"]
            reminder_key = f"{days}:{end_date.date().isoformat()}"

            # Claim first so a second run the same day does not resend
            claimed = await db.subscriptions.update_one(
                {"subscription_id": subscription["subscription_id"], "last_reminder_key": {"$ne": reminder_key}},
                {"$set": {"last_reminder_key": reminder_key}},
            )
            if claimed.matched_count == 0:
                continue

            account_id = subscription["account_id"]
            try:
                account = await db.accounts.find_one({"account_id": account_id}, {"_id": 0, "email": 1})
                profile = await db.business_profiles.find_one(
                    {"account_id": account_id}, {"_id": 0, "company_name": 1}
                )
                company_name = (profile or {}).get("company_name", "your company")
                expiry = format_date(end_date)

                await emit_notification(
                    db,
                    None,
                    account_id,
                    NotificationType.RENEWAL_REMINDER,
                    "Renewal Reminder",
                    f"Your registered office service for {company_name} expires in {days} days on {expiry}.",
                )
                if account:
                    await mailer.send_renewal_reminder_email(account["email"], company_name, days, expiry, account_id)
                sent += 1
            except Exception as e:
                logger.error(
                    f"Renewal reminder ({days}d) failed for subscription {subscription['subscription_id']}: {e}"
                )
    return sent


async def run_renewal_sweep(now: Optional[datetime] = None, mailer=None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)

    expired = await expire_lapsed(now)
    renewal_pending = await open_renewal_window(now)
    reminders = await send_renewal_reminders(now, mailer=mailer)

    logger.info(
        "RENEWAL_SWEEP_COMPLETE expired=%s renewal_pending=%s reminders=%s",
        expired, renewal_pending, reminders,
    )
    return {
        "message": f"Expired {expired}, renewal pending {renewal_pending}, reminders sent {reminders}",
        "expired": expired,
        "renewal_pending": renewal_pending,
        "reminders_sent": reminders,
    }
