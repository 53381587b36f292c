"""
Idempotent seed: an ADMIN account and an active agreement template.
Override the admin with SEED_ADMIN_EMAIL / SEED_ADMIN_PASSWORD (local/testing only).
Without an active template, registrations are accepted with no agreement row.
"""
import asyncio
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

from auth import hash_password
from database import get_db_context
from models import Account, AgreementTemplate, UserRole, to_document

SEED_ADMIN_EMAIL = os.environ.get("SEED_ADMIN_EMAIL", "admin@registeredoffice.co.uk")
SEED_ADMIN_PASSWORD = os.environ.get("SEED_ADMIN_PASSWORD", "Admin123!")

DEFAULT_AGREEMENT_HTML = """
<h1>Registered Office Service Agreement</h1>
<p>The provider agrees to act as the registered office address of the client company for a
term of twelve months from approval, and to forward statutory mail received at that address.</p>
<p>The client agrees to pay the annual fee in advance, to keep its contact details up to date,
and not to use the address as a trading or residential address.</p>
<p>Either party may end the service on written notice. Fees already paid for the current term
are refundable only where the application is not approved.</p>
"""


async def seed_database(db):
    print("Seeding database (idempotent)...")

    existing_admin = await db.accounts.find_one({"email": SEED_ADMIN_EMAIL.lower()})
    if existing_admin:
        print(f"  ADMIN exists: {SEED_ADMIN_EMAIL}")
    else:
        admin = Account(
            email=SEED_ADMIN_EMAIL.lower(),
            password_hash=hash_password(SEED_ADMIN_PASSWORD),
            role=UserRole.ADMIN,
            is_active=True,
            email_verified=True,
        )
        await db.accounts.insert_one(to_document(admin))
        print(f"  ADMIN created: {SEED_ADMIN_EMAIL}")

    active_template = await db.agreement_templates.find_one({"is_active": True})
    if active_template:
        print(f"  Agreement template exists: version {active_template.get('version')}")
    else:
        template = AgreementTemplate(version=1, content_html=DEFAULT_AGREEMENT_HTML.strip())
        await db.agreement_templates.insert_one(to_document(template))
        print("  Agreement template created: version 1")

    print("Seed complete.")


async def main():
    async with get_db_context() as db:
        await seed_database(db)


if __name__ == "__main__":
    asyncio.run(main())
