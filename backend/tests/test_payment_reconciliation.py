"""
Payment reconciliation: idempotent event application, retry counting up to
suspension, success on a status with no success transition, refunds, and the
Stripe event adapter / webhook entry point.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import OperationFailure

from fakes import FakeMailer, seed_client, seed_payment, subscription_row
from models import PaymentEvent, PaymentEventType, PaymentMethod
from services.errors import DuplicateEvent, NotFound, PersistenceFailure
from services.payment_reconciliation import EVENT_CONFLICT_ATTEMPTS, PaymentReconciliation, parse_stripe_event

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _succeeded(subscription_id, transaction_id="pi_test_1", amount=9900):
    return PaymentEvent(
        type=PaymentEventType.SUCCEEDED,
        transaction_id=transaction_id,
        subscription_id=subscription_id,
        amount=amount,
        payment_method=PaymentMethod.CARD,
        gateway_customer_id="cus_test_9",
    )


def _failed(subscription_id, transaction_id):
    return PaymentEvent(
        type=PaymentEventType.FAILED,
        transaction_id=transaction_id,
        subscription_id=subscription_id,
        amount=9900,
        payment_method=PaymentMethod.BACS_DIRECT_DEBIT,
    )


@pytest.mark.asyncio
async def test_first_payment_moves_draft_to_pending_approval(fake_db):
    sub = seed_client(fake_db, status="DRAFT")
    mailer = FakeMailer()

    result = await PaymentReconciliation(mailer=mailer).apply_event(_succeeded(sub["subscription_id"]), now=NOW)

    assert result.previous_status.value == "DRAFT"
    assert result.new_status.value == "PENDING_APPROVAL"
    assert result.idempotency_key == "succeeded:pi_test_1"

    row = subscription_row(fake_db, sub["subscription_id"])
    assert row["status"] == "PENDING_APPROVAL"
    assert row["payment_method"] == "CARD"
    assert row["gateway_customer_id"] == "cus_test_9"

    payment = fake_db.payments.docs[0]
    assert payment["status"] == "SUCCEEDED"
    assert payment["transaction_id"] == "pi_test_1"
    assert payment["paid_at"] == NOW
    assert [e["idempotency_key"] for e in fake_db.payment_events.docs] == ["succeeded:pi_test_1"]
    assert fake_db.notifications.docs[0]["type"] == "PAYMENT_RECEIVED"
    assert mailer.names() == ["payment_received"]
    assert result.side_effects == [{"name": "payment_email", "ok": True}]


@pytest.mark.asyncio
async def test_replayed_event_changes_nothing(fake_db):
    sub = seed_client(fake_db, status="DRAFT")
    mailer = FakeMailer()
    reconciliation = PaymentReconciliation(mailer=mailer)
    await reconciliation.apply_event(_succeeded(sub["subscription_id"]), now=NOW)
    version = subscription_row(fake_db, sub["subscription_id"])["version"]
    audit_count = len(fake_db.audit_logs.docs)

    with pytest.raises(DuplicateEvent):
        await reconciliation.apply_event(_succeeded(sub["subscription_id"]), now=NOW)

    assert subscription_row(fake_db, sub["subscription_id"])["version"] == version
    assert len(fake_db.payments.docs) == 1
    assert len(fake_db.audit_logs.docs) == audit_count
    assert mailer.names() == ["payment_received"]


@pytest.mark.asyncio
async def test_three_failures_suspend_active_subscription(fake_db):
    sub = seed_client(fake_db, status="ACTIVE", start_date=NOW - timedelta(days=300),
                      end_date=NOW + timedelta(days=65))
    mailer = FakeMailer()
    reconciliation = PaymentReconciliation(mailer=mailer)

    results = [
        await reconciliation.apply_event(_failed(sub["subscription_id"], f"ch_test_{n}"), now=NOW)
        for n in range(1, 4)
    ]

    assert [r.new_status.value for r in results] == ["ACTIVE", "ACTIVE", "SUSPENDED"]
    assert [r.retry_count for r in results] == [1, 2, 3]
    assert [p["status"] for p in fake_db.payments.docs] == ["FAILED"] * 3
    assert fake_db.accounts.docs[0]["is_active"] is False
    assert mailer.names() == ["payment_failed"] * 3
    assert mailer.sent[-1][1][2] == 3


@pytest.mark.asyncio
async def test_replayed_failure_is_not_counted_twice(fake_db):
    sub = seed_client(fake_db, status="ACTIVE", end_date=NOW + timedelta(days=65))
    reconciliation = PaymentReconciliation(mailer=FakeMailer())
    await reconciliation.apply_event(_failed(sub["subscription_id"], "ch_test_1"), now=NOW)

    with pytest.raises(DuplicateEvent):
        await reconciliation.apply_event(_failed(sub["subscription_id"], "ch_test_1"), now=NOW)

    assert subscription_row(fake_db, sub["subscription_id"])["retry_count"] == 1


@pytest.mark.asyncio
async def test_success_on_active_records_payment_and_resets_retries(fake_db):
    end_date = NOW + timedelta(days=200)
    sub = seed_client(fake_db, status="ACTIVE", end_date=end_date, retry_count=2)

    result = await PaymentReconciliation(mailer=FakeMailer()).apply_event(
        _succeeded(sub["subscription_id"], "pi_test_late"), now=NOW
    )

    row = subscription_row(fake_db, sub["subscription_id"])
    assert result.state_mismatch is True
    assert result.new_status.value == "ACTIVE"
    assert row["status"] == "ACTIVE"
    assert row["retry_count"] == 0
    assert row["end_date"] == end_date
    assert fake_db.payments.docs[0]["status"] == "SUCCEEDED"
    assert fake_db.audit_logs.docs[-1]["action"] == "PAYMENT_STATE_MISMATCH"


@pytest.mark.asyncio
async def test_refund_marks_payment_and_leaves_status(fake_db):
    sub = seed_client(fake_db, status="REJECTED")
    payment = seed_payment(fake_db, sub, transaction_id="pi_test_paid")
    mailer = FakeMailer()
    refund = PaymentEvent(type=PaymentEventType.REFUNDED, transaction_id="pi_test_paid", amount=9900)

    result = await PaymentReconciliation(mailer=mailer).apply_event(refund, now=NOW)

    assert result.payment_id == payment["payment_id"]
    assert result.subscription_id == sub["subscription_id"]
    assert fake_db.payments.docs[0]["status"] == "REFUNDED"
    assert fake_db.payments.docs[0]["refunded_at"] == NOW
    assert subscription_row(fake_db, sub["subscription_id"])["status"] == "REJECTED"
    assert fake_db.audit_logs.docs[-1]["action"] == "PAYMENT_APPLIED"
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_unknown_subscription_writes_nothing(fake_db):
    with pytest.raises(NotFound):
        await PaymentReconciliation(mailer=FakeMailer()).apply_event(_succeeded("missing"), now=NOW)

    assert fake_db.payment_events.docs == []


@pytest.mark.asyncio
async def test_write_failure_releases_idempotency_key(fake_db):
    sub = seed_client(fake_db, status="DRAFT")
    reconciliation = PaymentReconciliation(mailer=FakeMailer())
    fake_db.payments.fail_insert = OperationFailure("WriteConflict", 112)

    with pytest.raises(PersistenceFailure):
        await reconciliation.apply_event(_succeeded(sub["subscription_id"]), now=NOW)
    assert fake_db.payment_events.docs == []
    assert subscription_row(fake_db, sub["subscription_id"])["status"] == "DRAFT"

    result = await reconciliation.apply_event(_succeeded(sub["subscription_id"]), now=NOW)
    assert result.new_status.value == "PENDING_APPROVAL"


@pytest.mark.asyncio
async def test_email_failure_does_not_undo_payment(fake_db):
    sub = seed_client(fake_db, status="DRAFT")

    result = await PaymentReconciliation(mailer=FakeMailer(raise_errors=True)).apply_event(
        _succeeded(sub["subscription_id"]), now=NOW
    )

    assert result.new_status.value == "PENDING_APPROVAL"
    assert result.side_effects[0]["ok"] is False


# ============================================================================
# Stripe adapter
# ============================================================================

def _event(event_type, obj, event_id="evt_test_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def test_parse_paid_checkout_session():
    event = parse_stripe_event(_event("checkout.session.completed", {
        "id": "cs_test_1",
        "payment_status": "paid",
        "payment_intent": "pi_test_1",
        "amount_total": 9900,
        "currency": "gbp",
        "customer": "cus_test_1",
        "payment_method_types": ["card"],
        "metadata": {"subscription_id": "sub-1", "account_id": "acc-1"},
    }))

    assert event.type == PaymentEventType.SUCCEEDED
    assert event.idempotency_key == "succeeded:pi_test_1"
    assert event.subscription_id == "sub-1"
    assert event.payment_method == PaymentMethod.CARD
    assert event.gateway_customer_id == "cus_test_1"


def test_unpaid_checkout_session_is_ignored():
    assert parse_stripe_event(_event("checkout.session.completed", {
        "id": "cs_test_2", "payment_status": "unpaid", "metadata": {"subscription_id": "sub-1"},
    })) is None


def test_checkout_and_intent_for_same_payment_share_a_key():
    checkout = parse_stripe_event(_event("checkout.session.completed", {
        "id": "cs_test_1", "payment_status": "paid", "payment_intent": "pi_test_1",
        "metadata": {"subscription_id": "sub-1"},
    }))
    intent = parse_stripe_event(_event("payment_intent.succeeded", {
        "id": "pi_test_1", "amount_received": 9900, "metadata": {"subscription_id": "sub-1"},
    }, event_id="evt_test_2"))

    assert checkout.idempotency_key == intent.idempotency_key


def test_failed_attempts_are_keyed_by_charge():
    first = parse_stripe_event(_event("payment_intent.payment_failed", {
        "id": "pi_test_1", "amount": 9900, "latest_charge": "ch_test_1",
        "last_payment_error": {"payment_method": {"type": "bacs_debit"}},
        "metadata": {"subscription_id": "sub-1"},
    }))
    no_charge = parse_stripe_event(_event("payment_intent.payment_failed", {
        "id": "pi_test_2", "metadata": {"subscription_id": "sub-1"},
    }))

    assert first.idempotency_key == "failed:ch_test_1"
    assert first.payment_method == PaymentMethod.BACS_DIRECT_DEBIT
    assert no_charge.idempotency_key == "failed:pi_test_2"


def test_refund_is_keyed_by_payment_intent():
    event = parse_stripe_event(_event("charge.refunded", {
        "id": "ch_test_1", "payment_intent": "pi_test_1", "amount_refunded": 9900, "metadata": {},
    }))

    assert event.type == PaymentEventType.REFUNDED
    assert event.transaction_id == "pi_test_1"
    assert event.subscription_id is None


def test_other_events_are_ignored():
    assert parse_stripe_event(_event("customer.created", {"id": "cus_test_1"})) is None


# ============================================================================
# Webhook entry point
# ============================================================================

@pytest.mark.asyncio
async def test_webhook_processes_then_acknowledges_replay(fake_db):
    sub = seed_client(fake_db, status="DRAFT")
    payload = json.dumps(_event("payment_intent.succeeded", {
        "id": "pi_test_1", "amount_received": 9900, "metadata": {"subscription_id": sub["subscription_id"]},
    })).encode()
    reconciliation = PaymentReconciliation(mailer=FakeMailer())

    first = await reconciliation.process_webhook(payload, "")
    second = await reconciliation.process_webhook(payload, "")

    assert first[:2] == (True, "Processed")
    assert first[2]["status"] == "PENDING_APPROVAL"
    assert second[:2] == (True, "Already processed")


@pytest.mark.asyncio
async def test_webhook_ignored_and_invalid_payloads(fake_db):
    reconciliation = PaymentReconciliation(mailer=FakeMailer())

    ignored = await reconciliation.process_webhook(json.dumps(_event("customer.created", {})).encode(), "")
    invalid = await reconciliation.process_webhook(b"{not json", "")

    assert ignored[:2] == (True, "Ignored")
    assert invalid[:2] == (False, "Invalid payload")


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(fake_db, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
    payload = json.dumps(_event("payment_intent.succeeded", {"id": "pi_test_1"})).encode()

    success, message, _ = await PaymentReconciliation(mailer=FakeMailer()).process_webhook(payload, "t=1,v1=bad")

    assert success is False
    assert message == "Invalid signature"


@pytest.mark.asyncio
async def test_webhook_for_unknown_subscription_is_logged_not_retried(fake_db):
    payload = json.dumps(_event("payment_intent.succeeded", {
        "id": "pi_test_1", "metadata": {"subscription_id": "missing"},
    })).encode()

    success, message, details = await PaymentReconciliation(mailer=FakeMailer()).process_webhook(payload, "")

    assert success is True
    assert message == "Event logged with error"
    assert details["error_code"] == "NOT_FOUND"


# ============================================================================
# Lost optimistic races
# ============================================================================

def _lose_subscription_race(fake_db, monkeypatch, times):
    """Make the subscription's version-checked write miss ``times`` times, then behave normally."""
    original = fake_db.subscriptions.find_one_and_update
    calls = []

    async def racing_write(*args, **kwargs):
        calls.append(1)
        if len(calls) <= times:
            return None
        return await original(*args, **kwargs)

    monkeypatch.setattr(fake_db.subscriptions, "find_one_and_update", racing_write)
    return calls


@pytest.mark.asyncio
async def test_event_that_loses_the_race_is_applied_on_rerun(fake_db, monkeypatch):
    sub = seed_client(fake_db, status="DRAFT")
    calls = _lose_subscription_race(fake_db, monkeypatch, times=1)

    result = await PaymentReconciliation(mailer=FakeMailer()).apply_event(_succeeded(sub["subscription_id"]), now=NOW)

    assert result.new_status.value == "PENDING_APPROVAL"
    assert len(calls) == 2
    assert fake_db.transactions_aborted == 1
    assert subscription_row(fake_db, sub["subscription_id"])["status"] == "PENDING_APPROVAL"
    assert [p["status"] for p in fake_db.payments.docs] == ["SUCCEEDED"]
    assert [e["idempotency_key"] for e in fake_db.payment_events.docs] == ["succeeded:pi_test_1"]


@pytest.mark.asyncio
async def test_event_that_keeps_losing_is_not_acknowledged(fake_db, monkeypatch):
    sub = seed_client(fake_db, status="DRAFT")
    _lose_subscription_race(fake_db, monkeypatch, times=EVENT_CONFLICT_ATTEMPTS)
    payload = json.dumps(_event("payment_intent.succeeded", {
        "id": "pi_test_1", "amount_received": 9900, "metadata": {"subscription_id": sub["subscription_id"]},
    })).encode()
    mailer = FakeMailer()
    reconciliation = PaymentReconciliation(mailer=mailer)

    success, message, _ = await reconciliation.process_webhook(payload, "")

    assert (success, message) == (False, "Not applied")
    assert fake_db.payments.docs == []
    assert fake_db.payment_events.docs == []
    assert subscription_row(fake_db, sub["subscription_id"])["status"] == "DRAFT"
    assert mailer.sent == []

    # The gateway's redelivery goes through once the row is quiet
    redelivered = await reconciliation.process_webhook(payload, "")

    assert redelivered[:2] == (True, "Processed")
    assert subscription_row(fake_db, sub["subscription_id"])["status"] == "PENDING_APPROVAL"


@pytest.mark.asyncio
async def test_transient_transaction_error_reruns_the_event(fake_db, monkeypatch):
    sub = seed_client(fake_db, status="DRAFT")
    fake_db.payment_events.fail_insert = OperationFailure(
        "WriteConflict", 112, {"errorLabels": ["TransientTransactionError"]}
    )

    result = await PaymentReconciliation(mailer=FakeMailer()).apply_event(_succeeded(sub["subscription_id"]), now=NOW)

    assert result.new_status.value == "PENDING_APPROVAL"
    assert fake_db.transactions_aborted == 1
    assert len(fake_db.payment_events.docs) == 1
