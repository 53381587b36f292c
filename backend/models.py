from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone, date
from enum import Enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def to_document(model: BaseModel) -> Dict[str, Any]:
    """model_dump() ready for Mongo: enums as values, calendar dates as ISO strings."""
    doc = model.model_dump()
    for key, value in doc.items():
        if isinstance(value, Enum):
            doc[key] = value.value
        elif isinstance(value, date) and not isinstance(value, datetime):
            doc[key] = value.isoformat()
    return doc

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    CLIENT = "CLIENT"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"

class SubscriptionStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"
    RENEWAL_PENDING = "RENEWAL_PENDING"

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

class PaymentMethod(str, Enum):
    CARD = "CARD"
    BACS_DIRECT_DEBIT = "BACS_DIRECT_DEBIT"

class PaymentEventType(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"

class AgreementStatus(str, Enum):
    SIGNED = "SIGNED"
    PENDING = "PENDING"
    VOIDED = "VOIDED"

class SignatureType(str, Enum):
    TYPED = "TYPED"
    DRAWN = "DRAWN"

class KycDocumentKind(str, Enum):
    IDENTITY_DOCUMENT = "IDENTITY_DOCUMENT"
    ADDRESS_PROOF = "ADDRESS_PROOF"

class CompanyType(str, Enum):
    LTD = "LTD"
    LLP = "LLP"
    PLC = "PLC"
    SOLE_TRADER = "SOLE_TRADER"
    PARTNERSHIP = "PARTNERSHIP"

class AdminActionType(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    SUSPEND = "SUSPEND"
    REACTIVATE = "REACTIVATE"
    WITHDRAW = "WITHDRAW"
    CANCEL = "CANCEL"
    REFUND = "REFUND"
    NOTE = "NOTE"

class NotificationType(str, Enum):
    REGISTRATION_COMPLETE = "REGISTRATION_COMPLETE"
    APPLICATION_APPROVED = "APPLICATION_APPROVED"
    APPLICATION_REJECTED = "APPLICATION_REJECTED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    RENEWAL_REMINDER = "RENEWAL_REMINDER"
    RENEWAL_DUE = "RENEWAL_DUE"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    ACCOUNT_REACTIVATED = "ACCOUNT_REACTIVATED"
    WITHDRAWAL_COMPLETE = "WITHDRAWAL_COMPLETE"
    GENERAL = "GENERAL"

class AuditAction(str, Enum):
    # Registration
    REGISTRATION_SUBMITTED = "REGISTRATION_SUBMITTED"
    AGREEMENT_DOCUMENT_STORED = "AGREEMENT_DOCUMENT_STORED"

    # Subscription lifecycle
    SUBSCRIPTION_STATUS_CHANGED = "SUBSCRIPTION_STATUS_CHANGED"
    PAYMENT_RETRY_RECORDED = "PAYMENT_RETRY_RECORDED"
    PAYMENT_APPLIED = "PAYMENT_APPLIED"
    PAYMENT_STATE_MISMATCH = "PAYMENT_STATE_MISMATCH"

    # Refunds
    REFUND_REQUESTED = "REFUND_REQUESTED"
    REFUND_FAILED = "REFUND_FAILED"

    # Auth
    USER_LOGIN_SUCCESS = "USER_LOGIN_SUCCESS"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"

    # Account holder self-service
    PROFILE_UPDATED = "PROFILE_UPDATED"

    # Email
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"

    # Admin Actions
    ADMIN_ACTION = "ADMIN_ACTION"

class EmailTemplateAlias(str, Enum):
    WELCOME = "welcome"
    ADMIN_NEW_REGISTRATION = "admin-new-registration"
    APPLICATION_APPROVED = "application-approved"
    APPLICATION_REJECTED = "application-rejected"
    ACCOUNT_SUSPENDED = "account-suspended"
    ACCOUNT_REACTIVATED = "account-reactivated"
    SERVICE_WITHDRAWN = "service-withdrawn"
    PAYMENT_RECEIVED = "payment-received"
    PAYMENT_FAILED = "payment-failed"
    RENEWAL_REMINDER = "renewal-reminder"


# ============================================================================
# PERSISTED DOCUMENTS
# ============================================================================

class Account(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str = Field(default_factory=new_id)
    email: EmailStr
    password_hash: str
    role: UserRole = UserRole.CLIENT
    is_active: bool = True
    email_verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)

class BusinessProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    business_profile_id: str = Field(default_factory=new_id)
    account_id: str
    company_name: str
    company_number: str
    company_type: CompanyType = CompanyType.LTD
    incorporation_date: Optional[date] = None
    sic_codes: List[str] = Field(default_factory=list)
    registered_address: str = ""
    trading_address: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

class Director(BaseModel):
    model_config = ConfigDict(extra="ignore")

    director_id: str = Field(default_factory=new_id)
    business_profile_id: str
    full_name: str
    position: str = "Director"
    date_of_birth: Optional[date] = None
    residential_address: str = ""
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    identity_document_id: str
    identity_document_filename: str
    identity_document_content_type: str
    address_proof_id: str
    address_proof_filename: str
    address_proof_content_type: str
    created_at: datetime = Field(default_factory=utcnow)

class KycDocument(BaseModel):
    """One KYC upload, kept in its own document so each stays under the BSON size cap."""
    model_config = ConfigDict(extra="ignore")

    document_id: str = Field(default_factory=new_id)
    director_id: str
    business_profile_id: str
    kind: KycDocumentKind
    filename: str
    content_type: str
    size_bytes: int
    sha256_hash: str
    data: bytes
    created_at: datetime = Field(default_factory=utcnow)

class AgreementTemplate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    template_id: str = Field(default_factory=new_id)
    version: int = 1
    title: str = "Registered Office Service Agreement"
    content_html: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

class Agreement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    agreement_id: str = Field(default_factory=new_id)
    account_id: str
    template_id: str
    template_version: int
    signature_type: SignatureType
    signature_data: str
    signer_name: str
    ip_address: str = "unknown"
    status: AgreementStatus = AgreementStatus.SIGNED
    signed_at: Optional[datetime] = Field(default_factory=utcnow)
    document_ref: Optional[str] = None

class Subscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription_id: str = Field(default_factory=new_id)
    account_id: str
    status: SubscriptionStatus = SubscriptionStatus.DRAFT
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    next_payment_date: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None
    retry_count: int = 0
    gateway_customer_id: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class Payment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment_id: str = Field(default_factory=new_id)
    subscription_id: str
    account_id: str
    amount: int
    currency: str = "gbp"
    status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

class AdminAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    admin_action_id: str = Field(default_factory=new_id)
    admin_user_id: str
    target_account_id: str
    subscription_id: Optional[str] = None
    action_type: AdminActionType
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    notification_id: str = Field(default_factory=new_id)
    account_id: str
    type: NotificationType
    title: str
    message: str
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=new_id)
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    account_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

class MessageLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=new_id)
    postmark_message_id: Optional[str] = None
    account_id: Optional[str] = None
    recipient: EmailStr
    template_alias: EmailTemplateAlias
    subject: str
    status: str = "queued"
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    provider_error_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class UploadedDocument(BaseModel):
    filename: str
    content_type: str
    data: str  # base64

class BusinessDetails(BaseModel):
    company_name: str = ""
    company_number: str = ""
    company_type: Optional[str] = None
    incorporation_date: Optional[date] = None
    sic_codes: List[str] = Field(default_factory=list)
    registered_address: str = ""
    trading_address: Optional[str] = None
    phone: Optional[str] = None

class DirectorDetails(BaseModel):
    full_name: str = ""
    position: Optional[str] = None
    date_of_birth: Optional[date] = None
    residential_address: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    identity_document: Optional[UploadedDocument] = None
    address_proof: Optional[UploadedDocument] = None

class AccountCredentials(BaseModel):
    email: str = ""
    password: str = ""

class AgreementPayload(BaseModel):
    signature_type: Optional[SignatureType] = None
    signature_data: Optional[str] = None
    signer_name: Optional[str] = None

class RegistrationRequest(BaseModel):
    business: BusinessDetails
    director: DirectorDetails
    account: AccountCredentials
    agreement: AgreementPayload

class RegistrationResponse(BaseModel):
    success: bool = True
    message: str = "Registration submitted successfully"
    user_id: str
    subscription_id: str
    checkout_url: Optional[str] = None

class CheckEmailRequest(BaseModel):
    email: str = ""

class AdminActionRequest(BaseModel):
    action: str
    reason: Optional[str] = None
    notes: Optional[str] = None

class PaymentEvent(BaseModel):
    """Gateway-neutral payment event consumed by reconciliation."""
    model_config = ConfigDict(extra="ignore")

    type: PaymentEventType
    transaction_id: str
    subscription_id: Optional[str] = None  # refunds may only carry the transaction id
    amount: int = 0
    currency: str = "gbp"
    payment_method: Optional[PaymentMethod] = None
    gateway_customer_id: Optional[str] = None
    event_id: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.type.value}:{self.transaction_id}"

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class ProfileUpdateRequest(BaseModel):
    """Fields an account holder may change without review. Company identity stays admin-only."""
    trading_address: Optional[str] = None
    phone: Optional[str] = None

class PasswordChangeRequest(BaseModel):
    current_password: str = ""
    new_password: str = ""

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]
