"""Registration Transaction Engine.

Creates the whole client bundle as one MongoDB transaction:

    account -> business profile -> KYC documents -> director -> agreement
    (only when an active template exists) -> DRAFT subscription ->
    welcome notification -> REGISTRATION_SUBMITTED audit entry

Nothing is visible unless all of it commits. Follow-up work (agreement PDF,
gateway customer + checkout, welcome/admin emails) runs after commit, each step
on its own, and is reported in RegistrationResult.side_effects instead of
failing the registration.
"""
import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import hash_password, validate_password_strength
from database import database
from models import (
    Account, Agreement, AgreementStatus, AuditAction, BusinessProfile, Director, KycDocument, KycDocumentKind,
    NotificationType, RegistrationRequest, SignatureType, Subscription,
    SubscriptionStatus, UploadedDocument, UserRole, new_id, to_document,
)
from services.companies_house import map_company_type
from services.errors import (
    DuplicateIdentity, ExternalServiceFailure, LifecycleError, PersistenceFailure, ValidationError,
)
from services.identity_guard import ensure_available, normalize_company_number, normalize_email
from services.notification_emitter import emit_notification
from utils.audit import append_audit_log

logger = logging.getLogger(__name__)

# Each upload is stored as one kyc_documents row; MongoDB caps a document at 16 MiB
KYC_DOCUMENT_BYTES_CEILING = 15 * 1024 * 1024
KYC_MAX_DOCUMENT_BYTES = min(
    int(os.getenv("KYC_MAX_DOCUMENT_BYTES", str(10 * 1024 * 1024))),
    KYC_DOCUMENT_BYTES_CEILING,
)

SIDE_EFFECT_AGREEMENT_DOCUMENT = "agreement_document"
SIDE_EFFECT_PAYMENT_CHECKOUT = "payment_checkout"
SIDE_EFFECT_WELCOME_EMAIL = "welcome_email"
SIDE_EFFECT_ADMIN_ALERT_EMAIL = "admin_alert_email"

_email_adapter = TypeAdapter(EmailStr)


@dataclass
class SideEffectOutcome:
    name: str
    ok: bool
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class RegistrationResult:
    core_committed: bool
    account_id: str
    subscription_id: str
    checkout_url: Optional[str] = None
    agreement_id: Optional[str] = None
    side_effects: List[SideEffectOutcome] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return any(not s.ok and not s.skipped for s in self.side_effects)

    def side_effect(self, name: str) -> Optional[SideEffectOutcome]:
        return next((s for s in self.side_effects if s.name == name), None)


@dataclass
class _PreparedRegistration:
    """Validated, normalised input. Nothing here has touched the database."""
    request: RegistrationRequest
    email: str
    company_number: str
    password_hash: str
    identity_document: bytes
    address_proof: bytes


def _require(value: Optional[str], message: str, field_name: str) -> str:
    if not (value or "").strip():
        raise ValidationError(message, field=field_name)
    return value.strip()


def decode_document(document: Optional[UploadedDocument], label: str, field_name: str) -> bytes:
    if document is None or not (document.data or "").strip():
        raise ValidationError(f"{label} is required", field=field_name)

    data = document.data
    # Accept data URLs from browser file readers
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        content = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"{label} could not be read", field=field_name)

    if not content:
        raise ValidationError(f"{label} is empty", field=field_name)
    if len(content) > KYC_MAX_DOCUMENT_BYTES:
        limit_mb = KYC_MAX_DOCUMENT_BYTES / (1024 * 1024)
        raise ValidationError(f"{label} must be smaller than {limit_mb:g} MB", field=field_name)
    return content


def prepare_registration(request: RegistrationRequest) -> _PreparedRegistration:
    """Check every precondition that does not need the database. Raises ValidationError."""
    business = request.business
    director = request.director
    credentials = request.account
    agreement = request.agreement

    if not (business.company_name or "").strip() or not (business.company_number or "").strip():
        raise ValidationError("Company name and number are required", field="business")
    _require(director.full_name, "Director details are required", "director.full_name")
    if (director.email or "").strip():
        try:
            _email_adapter.validate_python(director.email.strip())
        except PydanticValidationError:
            raise ValidationError("Please enter a valid director email address", field="director.email")

    email = normalize_email(credentials.email)
    if not email or not credentials.password:
        raise ValidationError("Account email and password are required", field="account")
    try:
        _email_adapter.validate_python(email)
    except PydanticValidationError:
        raise ValidationError("Please enter a valid email address", field="account.email")

    is_valid, message = validate_password_strength(credentials.password)
    if not is_valid:
        raise ValidationError(message, field="account.password")

    if agreement.signature_type is None or not (agreement.signature_data or "").strip():
        raise ValidationError("Agreement must be signed before registration", field="agreement")

    identity_document = decode_document(director.identity_document, "Identity document", "director.identity_document")
    address_proof = decode_document(director.address_proof, "Proof of address", "director.address_proof")

    return _PreparedRegistration(
        request=request,
        email=email,
        company_number=normalize_company_number(business.company_number),
        password_hash=hash_password(credentials.password),
        identity_document=identity_document,
        address_proof=address_proof,
    )


async def _insert_kyc_document(
    db,
    session,
    director_id: str,
    business_profile_id: str,
    kind: KycDocumentKind,
    upload: UploadedDocument,
    content: bytes,
) -> str:
    document = KycDocument(
        director_id=director_id,
        business_profile_id=business_profile_id,
        kind=kind,
        filename=upload.filename,
        content_type=upload.content_type,
        size_bytes=len(content),
        sha256_hash=hashlib.sha256(content).hexdigest(),
        data=content,
    )
    await db.kyc_documents.insert_one(to_document(document), session=session)
    return document.document_id


def _duplicate_from_index_error(error: DuplicateKeyError) -> DuplicateIdentity:
    key_pattern = (error.details or {}).get("keyPattern") or {}
    message = str(error)
    email_taken = "email" in key_pattern or "email_1" in message
    company_taken = "company_number" in key_pattern or "company_number_1" in message
    return DuplicateIdentity(email_taken=email_taken, company_taken=company_taken)


class RegistrationService:
    """Registration with injected collaborators.

    payment_gateway: services.stripe_service.PaymentGateway
    document_store: services.storage_adapter.DocumentStore
    mailer: services.email_service.EmailService (or anything with the same send_* methods)
    renderer: services.agreement_renderer.AgreementRenderer
    """

    def __init__(self, payment_gateway=None, document_store=None, mailer=None, renderer=None):
        if payment_gateway is None:
            from services.stripe_service import stripe_service as payment_gateway
        if document_store is None:
            from services.storage_adapter import document_store
        if mailer is None:
            from services.email_service import email_service as mailer
        if renderer is None:
            from services.agreement_renderer import agreement_renderer as renderer
        self.payment_gateway = payment_gateway
        self.document_store = document_store
        self.mailer = mailer
        self.renderer = renderer

    async def register(
        self,
        request: RegistrationRequest,
        ip_address: str = "unknown",
        origin_url: Optional[str] = None,
    ) -> RegistrationResult:
        prepared = prepare_registration(request)

        try:
            # A write conflict with a concurrent registration re-runs the unit, whose
            # availability check then sees the other commit and raises DuplicateIdentity
            core = await database.run_transaction(
                lambda session: self._write_core(prepared, ip_address, session)
            )
        except LifecycleError:
            raise
        except DuplicateKeyError as e:
            # The other registration committed before ours started writing
            logger.warning(f"Registration collided on a unique index for {prepared.email}: {e}")
            raise _duplicate_from_index_error(e) from e
        except PyMongoError as e:
            logger.error(f"Registration transaction failed for {prepared.email}: {e}")
            raise PersistenceFailure(f"registration transaction aborted: {e}") from e

        logger.info(
            "REGISTRATION_COMMITTED account_id=%s subscription_id=%s company_number=%s agreement_id=%s",
            core["account_id"], core["subscription_id"], prepared.company_number, core["agreement_id"],
        )

        result = RegistrationResult(
            core_committed=True,
            account_id=core["account_id"],
            subscription_id=core["subscription_id"],
            agreement_id=core["agreement_id"],
        )

        result.side_effects.append(await self._store_agreement_document(prepared, core, ip_address))
        result.side_effects.append(await self._start_checkout(prepared, core, result, origin_url))
        result.side_effects.append(await self._send_welcome_email(prepared, core))
        result.side_effects.append(await self._send_admin_alert(prepared, core))

        if result.degraded:
            logger.warning(
                "REGISTRATION_DEGRADED account_id=%s failed=%s",
                result.account_id,
                ",".join(s.name for s in result.side_effects if not s.ok and not s.skipped),
            )
        return result

    async def _write_core(self, prepared: _PreparedRegistration, ip_address: str, session) -> Dict[str, Any]:
        db = database.get_db()
        request = prepared.request
        business = request.business
        director = request.director

        await ensure_available(prepared.email, prepared.company_number, session=session)

        account = Account(
            email=prepared.email,
            password_hash=prepared.password_hash,
            role=UserRole.CLIENT,
            is_active=True,
        )
        await db.accounts.insert_one(to_document(account), session=session)

        profile = BusinessProfile(
            account_id=account.account_id,
            company_name=business.company_name.strip(),
            company_number=prepared.company_number,
            company_type=map_company_type(business.company_type or "ltd"),
            incorporation_date=business.incorporation_date,
            sic_codes=business.sic_codes,
            registered_address=business.registered_address,
            trading_address=business.trading_address,
            phone=business.phone,
        )
        await db.business_profiles.insert_one(to_document(profile), session=session)

        director_id = new_id()
        identity_document_id = await _insert_kyc_document(
            db, session, director_id, profile.business_profile_id,
            KycDocumentKind.IDENTITY_DOCUMENT, director.identity_document, prepared.identity_document,
        )
        address_proof_id = await _insert_kyc_document(
            db, session, director_id, profile.business_profile_id,
            KycDocumentKind.ADDRESS_PROOF, director.address_proof, prepared.address_proof,
        )
        director_row = Director(
            director_id=director_id,
            business_profile_id=profile.business_profile_id,
            full_name=director.full_name.strip(),
            position=director.position or "Director",
            date_of_birth=director.date_of_birth,
            residential_address=director.residential_address,
            email=(director.email or "").strip() or None,
            phone=director.phone,
            identity_document_id=identity_document_id,
            identity_document_filename=director.identity_document.filename,
            identity_document_content_type=director.identity_document.content_type,
            address_proof_id=address_proof_id,
            address_proof_filename=director.address_proof.filename,
            address_proof_content_type=director.address_proof.content_type,
        )
        await db.directors.insert_one(to_document(director_row), session=session)

        template = await db.agreement_templates.find_one(
            {"is_active": True}, {"_id": 0}, sort=[("version", -1)], session=session
        )
        agreement_id = None
        signed_at = None
        if template:
            agreement = Agreement(
                account_id=account.account_id,
                template_id=template["template_id"],
                template_version=template.get("version", 1),
                signature_type=request.agreement.signature_type,
                signature_data=request.agreement.signature_data,
                signer_name=(request.agreement.signer_name or director.full_name).strip(),
                ip_address=ip_address or "unknown",
                status=AgreementStatus.SIGNED,
            )
            await db.agreements.insert_one(to_document(agreement), session=session)
            agreement_id = agreement.agreement_id
            signed_at = agreement.signed_at
        else:
            # Registration proceeds without an agreement row when no template is active
            logger.warning(f"No active agreement template; skipping agreement for account {account.account_id}")

        subscription = Subscription(account_id=account.account_id, status=SubscriptionStatus.DRAFT)
        await db.subscriptions.insert_one(to_document(subscription), session=session)

        await emit_notification(
            db,
            session,
            account.account_id,
            NotificationType.REGISTRATION_COMPLETE,
            "Registration Submitted",
            f"Thank you for registering {profile.company_name}. Your signed agreement has been recorded. "
            "Your application will be reviewed once payment is complete.",
        )

        await append_audit_log(
            db,
            session,
            action=AuditAction.REGISTRATION_SUBMITTED,
            actor_role=UserRole.CLIENT.value,
            actor_id=account.account_id,
            account_id=account.account_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            after_state={"status": subscription.status.value},
            metadata={
                "company_number": prepared.company_number,
                "agreement_id": agreement_id,
                "agreement_skipped": template is None,
            },
            ip_address=ip_address,
        )

        return {
            "account_id": account.account_id,
            "business_profile_id": profile.business_profile_id,
            "subscription_id": subscription.subscription_id,
            "agreement_id": agreement_id,
            "signed_at": signed_at,
            "template": template,
        }

    # ------------------------------------------------------------------
    # Post-commit side effects. Each returns an outcome and never raises.
    # ------------------------------------------------------------------

    async def _store_agreement_document(
        self, prepared: _PreparedRegistration, core: Dict[str, Any], ip_address: str
    ) -> SideEffectOutcome:
        from services.storage_adapter import agreement_document_key

        if not core["agreement_id"]:
            return SideEffectOutcome(SIDE_EFFECT_AGREEMENT_DOCUMENT, ok=True, skipped=True)

        request = prepared.request
        signed_at = core["signed_at"] or datetime.now(timezone.utc)
        try:
            pdf_bytes = self.renderer.render(
                template=core["template"],
                company={
                    "company_name": request.business.company_name,
                    "company_number": prepared.company_number,
                    "registered_address": request.business.registered_address,
                },
                signer_name=(request.agreement.signer_name or request.director.full_name).strip(),
                signature_type=request.agreement.signature_type or SignatureType.TYPED,
                signature_data=request.agreement.signature_data,
                signed_at=signed_at,
                ip_address=ip_address,
            )
            key = agreement_document_key(core["account_id"], signed_at)
            stored = await self.document_store.store(
                key,
                pdf_bytes,
                "application/pdf",
                metadata={"account_id": core["account_id"], "agreement_id": core["agreement_id"]},
            )
            db = database.get_db()
            await db.agreements.update_one(
                {"agreement_id": core["agreement_id"]},
                {"$set": {"document_ref": stored.key}},
            )
        except Exception as e:
            logger.warning(
                f"Agreement document failed for account {core['account_id']} "
                f"agreement {core['agreement_id']} (agreement row kept): {e}"
            )
            return SideEffectOutcome(SIDE_EFFECT_AGREEMENT_DOCUMENT, ok=False, error=str(e))

        return SideEffectOutcome(SIDE_EFFECT_AGREEMENT_DOCUMENT, ok=True)

    async def _start_checkout(
        self,
        prepared: _PreparedRegistration,
        core: Dict[str, Any],
        result: RegistrationResult,
        origin_url: Optional[str],
    ) -> SideEffectOutcome:
        try:
            checkout_url = await start_checkout(
                self.payment_gateway,
                account_id=core["account_id"],
                subscription_id=core["subscription_id"],
                email=prepared.email,
                company_name=prepared.request.business.company_name,
                origin_url=origin_url,
            )
        except Exception as e:
            logger.warning(
                f"Checkout setup failed for account {core['account_id']} "
                f"subscription {core['subscription_id']}; client can retry from dashboard: {e}"
            )
            return SideEffectOutcome(SIDE_EFFECT_PAYMENT_CHECKOUT, ok=False, error=str(e))

        result.checkout_url = checkout_url
        return SideEffectOutcome(SIDE_EFFECT_PAYMENT_CHECKOUT, ok=True)

    async def _send_welcome_email(self, prepared: _PreparedRegistration, core: Dict[str, Any]) -> SideEffectOutcome:
        try:
            log = await self.mailer.send_welcome_email(
                prepared.email, prepared.request.business.company_name, core["account_id"]
            )
        except Exception as e:
            logger.warning(f"Welcome email failed for account {core['account_id']}: {e}")
            return SideEffectOutcome(SIDE_EFFECT_WELCOME_EMAIL, ok=False, error=str(e))
        if getattr(log, "status", "sent") == "failed":
            return SideEffectOutcome(SIDE_EFFECT_WELCOME_EMAIL, ok=False, error=log.error_message)
        return SideEffectOutcome(SIDE_EFFECT_WELCOME_EMAIL, ok=True)

    async def _send_admin_alert(self, prepared: _PreparedRegistration, core: Dict[str, Any]) -> SideEffectOutcome:
        try:
            logs = await self.mailer.send_admin_new_registration_email(
                prepared.request.business.company_name,
                prepared.company_number,
                prepared.email,
                core["account_id"],
            )
        except Exception as e:
            logger.warning(f"Admin registration alert failed for account {core['account_id']}: {e}")
            return SideEffectOutcome(SIDE_EFFECT_ADMIN_ALERT_EMAIL, ok=False, error=str(e))
        failed = [log for log in (logs or []) if getattr(log, "status", "sent") == "failed"]
        if failed:
            return SideEffectOutcome(SIDE_EFFECT_ADMIN_ALERT_EMAIL, ok=False, error=failed[0].error_message)
        return SideEffectOutcome(SIDE_EFFECT_ADMIN_ALERT_EMAIL, ok=True, skipped=not logs)


async def start_checkout(
    payment_gateway,
    account_id: str,
    subscription_id: str,
    email: str,
    company_name: str,
    origin_url: Optional[str] = None,
) -> str:
    """Create (or reuse) the gateway customer and open a checkout session.

    Used straight after registration and again from the client dashboard. The
    customer reference is saved on the subscription before the session is
    created so a retry does not create a second customer.
    """
    db = database.get_db()
    subscription = await db.subscriptions.find_one(
        {"subscription_id": subscription_id}, {"_id": 0, "gateway_customer_id": 1}
    )
    customer_id = (subscription or {}).get("gateway_customer_id")

    if not customer_id:
        customer_id = await payment_gateway.create_customer(
            email,
            {"account_id": account_id, "subscription_id": subscription_id, "company_name": company_name},
        )
        await db.subscriptions.update_one(
            {"subscription_id": subscription_id},
            {"$set": {"gateway_customer_id": customer_id}},
        )

    session = await payment_gateway.create_checkout_session(
        customer_id, account_id, subscription_id, origin_url=origin_url
    )
    checkout_url = session.get("checkout_url")
    if not checkout_url:
        raise ExternalServiceFailure("payment_gateway", "checkout session returned no URL")
    return checkout_url
