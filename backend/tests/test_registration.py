"""
Registration engine: all-or-nothing core writes, duplicate identity handling,
validation before any write, and post-commit side effects that degrade instead
of failing the registration.
"""
import base64
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from pymongo.errors import OperationFailure

from fakes import (
    FakeDocumentStore, FakeGateway, FakeMailer, FakeRenderer, registration_payload, seed_agreement_template,
    seed_client,
)
from models import RegistrationRequest, UploadedDocument
from database import TRANSACTION_MAX_ATTEMPTS, database
from services import registration as registration_module
from services.errors import DuplicateIdentity, PersistenceFailure, ValidationError
from services.registration import (
    SIDE_EFFECT_ADMIN_ALERT_EMAIL, SIDE_EFFECT_AGREEMENT_DOCUMENT, SIDE_EFFECT_PAYMENT_CHECKOUT,
    SIDE_EFFECT_WELCOME_EMAIL, RegistrationService, decode_document, prepare_registration,
)


def _service(gateway=None, store=None, mailer=None):
    return RegistrationService(
        payment_gateway=gateway or FakeGateway(),
        document_store=store or FakeDocumentStore(),
        mailer=mailer or FakeMailer(),
        renderer=FakeRenderer(),
    )


def _request(**sections):
    return RegistrationRequest(**registration_payload(**sections))


@pytest.mark.asyncio
async def test_full_bundle_commits_with_agreement(fake_db):
    template = seed_agreement_template(fake_db, version=2)
    gateway, store, mailer = FakeGateway(), FakeDocumentStore(), FakeMailer()

    result = await _service(gateway, store, mailer).register(_request(), ip_address="203.0.113.7")

    assert result.core_committed
    assert not result.degraded
    assert result.checkout_url.startswith("https://checkout.stripe.com/")

    account = fake_db.accounts.docs[0]
    assert account["email"] == "owner@acme-trading.co.uk"
    assert account["role"] == "CLIENT"
    assert account["password_hash"] != "Secure123!"

    profile = fake_db.business_profiles.docs[0]
    assert profile["account_id"] == result.account_id
    assert profile["company_number"] == "12345678"
    assert profile["company_type"] == "LTD"

    director = fake_db.directors.docs[0]
    assert director["business_profile_id"] == profile["business_profile_id"]
    assert "identity_document" not in director

    kyc = {row["kind"]: row for row in fake_db.kyc_documents.docs}
    assert set(kyc) == {"IDENTITY_DOCUMENT", "ADDRESS_PROOF"}
    assert kyc["IDENTITY_DOCUMENT"]["data"] == b"%PDF-1.4 passport scan"
    assert kyc["IDENTITY_DOCUMENT"]["document_id"] == director["identity_document_id"]
    assert kyc["ADDRESS_PROOF"]["document_id"] == director["address_proof_id"]
    assert {row["director_id"] for row in kyc.values()} == {director["director_id"]}
    assert kyc["IDENTITY_DOCUMENT"]["size_bytes"] == len(b"%PDF-1.4 passport scan")

    agreement = fake_db.agreements.docs[0]
    assert agreement["agreement_id"] == result.agreement_id
    assert agreement["template_id"] == template["template_id"]
    assert agreement["template_version"] == 2
    assert agreement["ip_address"] == "203.0.113.7"
    assert agreement["document_ref"] in store.stored

    subscription = fake_db.subscriptions.docs[0]
    assert subscription["subscription_id"] == result.subscription_id
    assert subscription["status"] == "DRAFT"
    assert subscription["gateway_customer_id"] == "cus_test_1"

    assert [n["type"] for n in fake_db.notifications.docs] == ["REGISTRATION_COMPLETE"]
    assert [a["action"] for a in fake_db.audit_logs.docs] == ["REGISTRATION_SUBMITTED"]
    assert mailer.names() == ["welcome", "admin_alert"]


@pytest.mark.asyncio
async def test_no_active_template_skips_agreement(fake_db):
    result = await _service().register(_request())

    assert result.agreement_id is None
    assert fake_db.agreements.docs == []
    assert result.side_effect(SIDE_EFFECT_AGREEMENT_DOCUMENT).skipped
    assert not result.degraded
    assert fake_db.audit_logs.docs[0]["metadata"]["agreement_skipped"] is True


@pytest.mark.asyncio
async def test_failure_mid_bundle_rolls_everything_back(fake_db):
    seed_agreement_template(fake_db)
    fake_db.directors.fail_insert = OperationFailure("WriteConflict", 112)
    gateway, mailer = FakeGateway(), FakeMailer()

    with pytest.raises(PersistenceFailure):
        await _service(gateway=gateway, mailer=mailer).register(_request())

    for name in ("accounts", "business_profiles", "kyc_documents", "directors", "agreements", "subscriptions",
                 "notifications", "audit_logs"):
        assert fake_db[name].docs == [], name
    assert gateway.customers == []
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_duplicate_email_rejected_case_insensitively(fake_db):
    seed_client(fake_db, status="ACTIVE", email="owner@acme-trading.co.uk", company_number="99999999")

    with pytest.raises(DuplicateIdentity) as exc:
        await _service().register(_request())

    assert exc.value.email_taken
    assert not exc.value.company_taken
    assert len(fake_db.accounts.docs) == 1
    assert len(fake_db.subscriptions.docs) == 1


@pytest.mark.asyncio
async def test_duplicate_company_number_rejected(fake_db):
    seed_client(fake_db, status="ACTIVE", email="someone@else.co.uk", company_number="12345678")

    with pytest.raises(DuplicateIdentity) as exc:
        await _service().register(_request(business={"company_number": " 12345678 "}))

    assert exc.value.company_taken
    assert exc.value.user_message == "This company number is already registered with our service"


@pytest.mark.asyncio
async def test_concurrent_duplicate_caught_by_unique_index(fake_db, monkeypatch):
    seed_client(fake_db, status="DRAFT", email="owner@acme-trading.co.uk", company_number="99999999")
    # Both registrations passed the availability check before either committed
    monkeypatch.setattr(registration_module, "ensure_available", AsyncMock(return_value=None))

    with pytest.raises(DuplicateIdentity) as exc:
        await _service().register(_request())

    assert exc.value.email_taken
    assert len(fake_db.accounts.docs) == 1
    assert len(fake_db.business_profiles.docs) == 1


def _write_conflict():
    return OperationFailure("WriteConflict", 112, {"errorLabels": ["TransientTransactionError"]})


@pytest.mark.asyncio
async def test_transient_write_conflict_reruns_the_bundle(fake_db):
    seed_agreement_template(fake_db)
    fake_db.subscriptions.fail_insert = _write_conflict()

    result = await _service().register(_request())

    assert result.core_committed
    assert fake_db.transactions_started == 2
    assert fake_db.transactions_aborted == 1
    for name in ("accounts", "business_profiles", "directors", "agreements", "subscriptions", "audit_logs"):
        assert len(fake_db[name].docs) == 1, name
    assert len(fake_db.kyc_documents.docs) == 2


@pytest.mark.asyncio
async def test_rerun_after_write_conflict_sees_the_competing_registration(fake_db, monkeypatch):
    fake_db.accounts.fail_insert = _write_conflict()
    attempts = []

    @asynccontextmanager
    async def transaction():
        attempts.append(1)
        if len(attempts) == 2:
            # The other registration commits between our abort and the re-run
            seed_client(fake_db, status="DRAFT", email="owner@acme-trading.co.uk", company_number="99999999")
        async with fake_db.transaction() as session:
            yield session

    monkeypatch.setattr(database, "transaction", transaction)

    with pytest.raises(DuplicateIdentity) as exc:
        await _service().register(_request())

    assert exc.value.email_taken
    assert len(attempts) == 2
    assert len(fake_db.accounts.docs) == 1
    assert fake_db.kyc_documents.docs == []


@pytest.mark.asyncio
async def test_persistent_write_conflict_gives_up(fake_db, monkeypatch):
    async def always_conflict(doc, session=None):
        raise _write_conflict()

    monkeypatch.setattr(fake_db.accounts, "insert_one", always_conflict)

    with pytest.raises(PersistenceFailure):
        await _service().register(_request())

    assert fake_db.transactions_started == TRANSACTION_MAX_ATTEMPTS
    assert fake_db.accounts.docs == []


@pytest.mark.asyncio
async def test_side_effect_failures_degrade_but_keep_core(fake_db):
    seed_agreement_template(fake_db)

    result = await _service(
        gateway=FakeGateway(fail_checkout=True),
        store=FakeDocumentStore(fail=True),
        mailer=FakeMailer(fail=True),
    ).register(_request())

    assert result.core_committed
    assert result.degraded
    assert result.checkout_url is None
    for name in (SIDE_EFFECT_AGREEMENT_DOCUMENT, SIDE_EFFECT_PAYMENT_CHECKOUT,
                 SIDE_EFFECT_WELCOME_EMAIL, SIDE_EFFECT_ADMIN_ALERT_EMAIL):
        assert result.side_effect(name).ok is False, name

    assert len(fake_db.accounts.docs) == 1
    assert fake_db.agreements.docs[0]["document_ref"] is None
    assert fake_db.subscriptions.docs[0]["status"] == "DRAFT"


@pytest.mark.asyncio
async def test_mailer_exception_is_contained(fake_db):
    result = await _service(mailer=FakeMailer(raise_errors=True)).register(_request())

    assert result.core_committed
    assert "mail transport down" in result.side_effect(SIDE_EFFECT_WELCOME_EMAIL).error


@pytest.mark.asyncio
async def test_no_admin_recipients_is_skipped(fake_db):
    result = await _service(mailer=FakeMailer(admin_recipients=0)).register(_request())

    outcome = result.side_effect(SIDE_EFFECT_ADMIN_ALERT_EMAIL)
    assert outcome.ok and outcome.skipped


@pytest.mark.parametrize("sections,field", [
    ({"business": {"company_name": ""}}, "business"),
    ({"business": {"company_number": "  "}}, "business"),
    ({"director": {"full_name": ""}}, "director.full_name"),
    ({"director": {"email": "not-an-email"}}, "director.email"),
    ({"account": {"password": ""}}, "account"),
    ({"account": {"email": "owner-at-example"}}, "account.email"),
    ({"account": {"password": "weakpass"}}, "account.password"),
    ({"agreement": {"signature_data": ""}}, "agreement"),
    ({"agreement": {"signature_type": None}}, "agreement"),
    ({"director": {"identity_document": None}}, "director.identity_document"),
    ({"director": {"address_proof": {"filename": "bill.pdf", "content_type": "application/pdf",
                                     "data": "not base64!!"}}}, "director.address_proof"),
])
def test_invalid_input_rejected_before_any_write(sections, field):
    with pytest.raises(ValidationError) as exc:
        prepare_registration(_request(**sections))
    assert exc.value.field == field


@pytest.mark.asyncio
async def test_validation_error_leaves_database_untouched(fake_db):
    with pytest.raises(ValidationError):
        await _service().register(_request(agreement={"signature_data": ""}))

    assert fake_db.transactions_started == 0
    assert fake_db.accounts.docs == []


def test_decode_document_accepts_data_urls():
    encoded = base64.b64encode(b"scan").decode()
    document = UploadedDocument(filename="id.png", content_type="image/png", data=f"data:image/png;base64,{encoded}")

    assert decode_document(document, "Identity document", "director.identity_document") == b"scan"


def test_decode_document_enforces_size_limit(monkeypatch):
    monkeypatch.setattr(registration_module, "KYC_MAX_DOCUMENT_BYTES", 4)
    document = UploadedDocument(filename="id.pdf", content_type="application/pdf",
                                data=base64.b64encode(b"too large").decode())

    with pytest.raises(ValidationError) as exc:
        decode_document(document, "Identity document", "director.identity_document")
    assert "smaller than" in str(exc.value)


def test_document_limit_fits_a_single_mongo_document():
    assert registration_module.KYC_MAX_DOCUMENT_BYTES <= registration_module.KYC_DOCUMENT_BYTES_CEILING
    # Leaves room for the row's other fields under the 16 MiB cap
    assert registration_module.KYC_DOCUMENT_BYTES_CEILING < 16 * 1024 * 1024


@pytest.mark.asyncio
async def test_each_kyc_upload_is_its_own_row(fake_db):
    result = await _service().register(_request())

    director = fake_db.directors.docs[0]
    rows = fake_db.kyc_documents.docs
    assert len(rows) == 2
    assert all(row["business_profile_id"] == director["business_profile_id"] for row in rows)
    assert {row["filename"] for row in rows} == {"passport.pdf", "utility-bill.pdf"}
    assert all(len(row["sha256_hash"]) == 64 for row in rows)
    assert result.core_committed
