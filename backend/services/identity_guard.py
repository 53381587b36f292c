"""Identity & Duplicate Guard - email / company number uniqueness.

Run inside the registration transaction so the check and the insert see the
same snapshot. Two concurrent registrations that both pass the check collide on
the unique indexes at commit; registration maps that onto DuplicateIdentity.
"""
from dataclasses import dataclass
from typing import Optional

from database import database
from services.errors import DuplicateIdentity


@dataclass(frozen=True)
class IdentityAvailability:
    email_taken: bool
    company_taken: bool

    @property
    def available(self) -> bool:
        return not (self.email_taken or self.company_taken)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_company_number(company_number: str) -> str:
    return (company_number or "").strip().upper()


async def check_available(email: str, company_number: Optional[str] = None, session=None) -> IdentityAvailability:
    db = database.get_db()

    email_taken = False
    if email:
        existing_account = await db.accounts.find_one(
            {"email": normalize_email(email)}, {"_id": 0, "account_id": 1}, session=session
        )
        email_taken = existing_account is not None

    company_taken = False
    if company_number:
        existing_business = await db.business_profiles.find_one(
            {"company_number": normalize_company_number(company_number)},
            {"_id": 0, "business_profile_id": 1},
            session=session,
        )
        company_taken = existing_business is not None

    return IdentityAvailability(email_taken=email_taken, company_taken=company_taken)


async def ensure_available(email: str, company_number: str, session=None) -> None:
    availability = await check_available(email, company_number, session=session)
    if not availability.available:
        raise DuplicateIdentity(
            email_taken=availability.email_taken,
            company_taken=availability.company_taken,
        )
