"""
In-memory stand-ins for MongoDB and the external collaborators (gateway, mailer,
document store, renderer) used by the lifecycle tests.

FakeDatabase supports the subset of the motor API the services use, enforces the
same unique indexes as Database._create_indexes and rolls every collection back
when an exception escapes transaction().
"""
import copy
import itertools
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from services.errors import ExternalServiceFailure

# collection -> [(field, sparse)]
UNIQUE_INDEXES = {
    "accounts": [("account_id", False), ("email", False)],
    "business_profiles": [("company_number", False), ("account_id", False)],
    "kyc_documents": [("document_id", False)],
    "agreements": [("agreement_id", False)],
    "subscriptions": [("subscription_id", False), ("account_id", False)],
    "payments": [("payment_id", False), ("transaction_id", True)],
    "payment_events": [("idempotency_key", False)],
}

_ids = itertools.count(1)


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "$in":
        return actual in expected
    if op == "$nin":
        return actual not in expected
    if op == "$ne":
        return actual != expected
    if op == "$exists":
        return (actual is not None) == bool(expected)
    if actual is None:
        return False
    if op == "$lt":
        return actual < expected
    if op == "$lte":
        return actual <= expected
    if op == "$gt":
        return actual > expected
    if op == "$gte":
        return actual >= expected
    raise NotImplementedError(op)


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, expected in (query or {}).items():
        actual = doc.get(key)
        if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
            if not all(_compare(op, actual, value) for op, value in expected.items()):
                return False
        elif actual != expected:
            return False
    return True


def project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    include = [k for k, v in projection.items() if v and k != "_id"]
    if include:
        result = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        return result
    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


def _sort(docs: List[Dict[str, Any]], sort) -> List[Dict[str, Any]]:
    for key, direction in reversed(sort or []):
        present = [d for d in docs if d.get(key) is not None]
        missing = [d for d in docs if d.get(key) is None]
        present.sort(key=lambda d: d[key], reverse=direction < 0)
        docs = present + missing if direction < 0 else missing + present
    return docs


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
    for key, value in update.get("$set", {}).items():
        doc[key] = copy.deepcopy(value)
    for key, value in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + value
    for key in update.get("$unset", {}):
        doc.pop(key, None)


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs
        self._limit = None

    def sort(self, key, direction=None):
        spec = key if isinstance(key, list) else [(key, direction or 1)]
        self._docs = _sort(self._docs, spec)
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = self._docs
        for bound in (self._limit, length):
            if bound:
                docs = docs[:bound]
        return docs


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique = UNIQUE_INDEXES.get(name, [])
        self.fail_insert: Optional[Exception] = None

    def _check_unique(self, candidate: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None) -> None:
        for key, sparse in self.unique:
            value = candidate.get(key)
            if value is None and sparse:
                continue
            for doc in self.docs:
                if doc is not ignore and doc.get(key) == value:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: test.{self.name} index: {key}_1",
                        11000,
                        {"keyPattern": {key: 1}, "keyValue": {key: value}},
                    )

    async def insert_one(self, doc: Dict[str, Any], session=None):
        if self.fail_insert is not None:
            error, self.fail_insert = self.fail_insert, None
            raise error
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", f"oid-{next(_ids)}")
        self._check_unique(stored)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    def _matching(self, query) -> List[Dict[str, Any]]:
        return [d for d in self.docs if matches(d, query)]

    async def find_one(self, query=None, projection=None, session=None, sort=None):
        found = _sort(self._matching(query), sort)
        return project(found[0], projection) if found else None

    def find(self, query=None, projection=None, session=None):
        return FakeCursor([project(d, projection) for d in self._matching(query)])

    async def find_one_and_update(
        self, query, update, projection=None, return_document=False, session=None, upsert=False, sort=None
    ):
        found = _sort(self._matching(query), sort)
        if not found:
            if not upsert:
                return None
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            _apply_update(doc, update)
            await self.insert_one(doc)
            return project(doc, projection) if return_document else None
        doc = found[0]
        before = copy.deepcopy(doc)
        _apply_update(doc, update)
        self._check_unique(doc, ignore=doc)
        return project(doc if return_document else before, projection)

    async def update_one(self, query, update, session=None, upsert=False):
        found = self._matching(query)
        if not found:
            if upsert:
                doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
                _apply_update(doc, update)
                await self.insert_one(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        _apply_update(found[0], update)
        return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)

    async def update_many(self, query, update, session=None):
        found = self._matching(query)
        for doc in found:
            _apply_update(doc, update)
        return SimpleNamespace(matched_count=len(found), modified_count=len(found))

    async def count_documents(self, query=None, session=None):
        return len(self._matching(query))

    async def create_index(self, *args, **kwargs):
        return None


class FakeSession:
    in_transaction = True


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}
        self.transactions_started = 0
        self.transactions_aborted = 0

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def __getitem__(self, name: str) -> FakeCollection:
        return getattr(self, name)

    @asynccontextmanager
    async def transaction(self):
        self.transactions_started += 1
        snapshot = {name: copy.deepcopy(c.docs) for name, c in self.collections.items()}
        try:
            yield FakeSession()
        except BaseException:
            self.transactions_aborted += 1
            for name, collection in self.collections.items():
                collection.docs = snapshot.get(name, [])
            raise


# ============================================================================
# External collaborators
# ============================================================================

class FakeGateway:
    def __init__(self, fail_customer=False, fail_checkout=False, fail_refund=False):
        self.fail_customer = fail_customer
        self.fail_checkout = fail_checkout
        self.fail_refund = fail_refund
        self.customers = []
        self.checkouts = []
        self.refunds = []

    async def create_customer(self, email, metadata):
        if self.fail_customer:
            raise ExternalServiceFailure("payment_gateway", "customer create failed")
        self.customers.append((email, metadata))
        return f"cus_test_{len(self.customers)}"

    async def create_checkout_session(self, customer_id, account_id, subscription_id, origin_url=None):
        if self.fail_checkout:
            raise ExternalServiceFailure("payment_gateway", "checkout unavailable")
        self.checkouts.append((customer_id, account_id, subscription_id))
        return {"checkout_url": f"https://checkout.stripe.com/c/pay/cs_test_{len(self.checkouts)}",
                "session_id": f"cs_test_{len(self.checkouts)}"}

    async def request_refund(self, transaction_id, idempotency_key, amount=None):
        if self.fail_refund:
            raise ExternalServiceFailure("payment_gateway", "refund declined")
        self.refunds.append((transaction_id, idempotency_key, amount))
        return f"re_test_{len(self.refunds)}"


class FakeMailer:
    """Records every send. fail=True returns failed logs, raise_errors=True raises."""

    def __init__(self, fail=False, raise_errors=False, admin_recipients=1):
        self.fail = fail
        self.raise_errors = raise_errors
        self.admin_recipients = admin_recipients
        self.sent = []

    def _log(self, name, *args):
        if self.raise_errors:
            raise RuntimeError("mail transport down")
        self.sent.append((name, args))
        if self.fail:
            return SimpleNamespace(status="failed", error_message="postmark rejected")
        return SimpleNamespace(status="sent", error_message=None)

    def names(self):
        return [name for name, _ in self.sent]

    async def send_email(self, recipient, template_alias, template_model, account_id=None):
        return self._log("send_email", recipient, template_alias, template_model, account_id)

    async def send_welcome_email(self, recipient, company_name, account_id):
        return self._log("welcome", recipient, company_name, account_id)

    async def send_admin_new_registration_email(self, company_name, company_number, client_email, account_id):
        return [self._log("admin_alert", company_name, company_number, client_email, account_id)
                for _ in range(self.admin_recipients)]

    async def send_payment_received_email(self, recipient, company_name, amount_pence, status_line, account_id):
        return self._log("payment_received", recipient, company_name, amount_pence, status_line, account_id)

    async def send_payment_failed_email(self, recipient, company_name, retry_count, threshold, account_id):
        return self._log("payment_failed", recipient, company_name, retry_count, threshold, account_id)

    async def send_renewal_reminder_email(self, recipient, company_name, days_remaining, expiry_date, account_id):
        return self._log("renewal_reminder", recipient, company_name, days_remaining, expiry_date, account_id)


class FakeDocumentStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.stored = {}

    async def store(self, key, data, content_type, metadata=None):
        if self.fail:
            raise ExternalServiceFailure("storage", "bucket unavailable")
        self.stored[key] = (data, content_type, metadata)
        return SimpleNamespace(key=key)

    async def fetch(self, key):
        from services.storage_adapter import DocumentNotFoundError

        if key not in self.stored:
            raise DocumentNotFoundError(f"File not found: {key}")
        data, content_type, metadata = self.stored[key]
        return data, SimpleNamespace(key=key, content_type=content_type, metadata=metadata)


class FakeRenderer:
    def __init__(self):
        self.calls = []

    def render(self, **kwargs):
        self.calls.append(kwargs)
        return b"%PDF-1.4 fake agreement"


# ============================================================================
# Seed helpers
# ============================================================================

def seed_client(db: FakeDatabase, status="DRAFT", email="owner@acme-trading.co.uk",
                company_name="Acme Trading Ltd", company_number="12345678", **subscription_fields):
    """Insert an account, business profile and subscription directly. Returns the subscription doc."""
    from models import Account, BusinessProfile, Subscription, SubscriptionStatus, to_document

    account = Account(email=email, password_hash="not-a-real-hash")
    profile = BusinessProfile(account_id=account.account_id, company_name=company_name,
                              company_number=company_number)
    subscription = Subscription(account_id=account.account_id, status=SubscriptionStatus(status))
    sub_doc = {**to_document(subscription), **subscription_fields}

    db.accounts.docs.append(to_document(account))
    db.business_profiles.docs.append(to_document(profile))
    db.subscriptions.docs.append(sub_doc)
    return copy.deepcopy(sub_doc)


def seed_payment(db: FakeDatabase, subscription, status="SUCCEEDED", transaction_id="pi_test_paid", amount=9900):
    from models import Payment, PaymentStatus, to_document

    payment = Payment(
        subscription_id=subscription["subscription_id"],
        account_id=subscription["account_id"],
        amount=amount,
        status=PaymentStatus(status),
        transaction_id=transaction_id,
    )
    doc = to_document(payment)
    db.payments.docs.append(doc)
    return copy.deepcopy(doc)


def subscription_row(db: FakeDatabase, subscription_id: str):
    return next(d for d in db.subscriptions.docs if d["subscription_id"] == subscription_id)


def registration_payload(**sections):
    """A valid registration body. Each keyword replaces keys within that section."""
    import base64

    def document(filename, content):
        return {"filename": filename, "content_type": "application/pdf",
                "data": base64.b64encode(content).decode()}

    payload = {
        "business": {
            "company_name": "Acme Trading Ltd",
            "company_number": "12345678",
            "company_type": "ltd",
            "registered_address": "1 High Street, London, EC1A 1AA",
        },
        "director": {
            "full_name": "Jordan Smith",
            "email": "jordan@acme-trading.co.uk",
            "residential_address": "2 Low Road, London, N1 1AA",
            "identity_document": document("passport.pdf", b"%PDF-1.4 passport scan"),
            "address_proof": document("utility-bill.pdf", b"%PDF-1.4 utility bill"),
        },
        "account": {"email": "Owner@Acme-Trading.co.uk", "password": "Secure123!"},
        "agreement": {"signature_type": "TYPED", "signature_data": "Jordan Smith", "signer_name": "Jordan Smith"},
    }
    for section, values in sections.items():
        payload[section] = {**payload[section], **values}
    return payload


def seed_agreement_template(db: FakeDatabase, version=1, content_html="<p>Service terms</p>"):
    from models import AgreementTemplate, to_document

    doc = to_document(AgreementTemplate(version=version, content_html=content_html))
    db.agreement_templates.docs.append(doc)
    return doc
