from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

TRANSACTION_MAX_ATTEMPTS = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "3"))

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so end_date comparisons stay in UTC
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    @asynccontextmanager
    async def transaction(self):
        """Multi-document transaction. Commits on clean exit, aborts on any exception.

        Requires a replica set (or sharded) deployment.

        Usage:
            async with database.transaction() as session:
                await db.accounts.insert_one(doc, session=session)
        """
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def run_transaction(self, unit, max_attempts: int = TRANSACTION_MAX_ATTEMPTS):
        """Run ``await unit(session)`` in a transaction and return its result.

        Write conflicts between concurrent transactions abort with the
        TransientTransactionError label; the whole unit is re-run on a fresh
        snapshot so its reads see the other writer's commit.
        """
        attempt = 1
        while True:
            try:
                async with self.transaction() as session:
                    return await unit(session)
            except PyMongoError as e:
                if attempt >= max_attempts or not e.has_error_label("TransientTransactionError"):
                    raise
                logger.warning(f"Transient transaction error (attempt {attempt}/{max_attempts}), retrying: {e}")
                attempt += 1

    async def _create_indexes(self):
        """Create MongoDB indexes. Unique indexes back the engine's own identity checks."""
        try:
            # Identity - case-insensitive email is normalised before insert
            await self.db.accounts.create_index("account_id", unique=True)
            await self.db.accounts.create_index("email", unique=True)
            await self.db.accounts.create_index("role")

            await self.db.business_profiles.create_index("company_number", unique=True)
            await self.db.business_profiles.create_index("account_id", unique=True)
            await self.db.directors.create_index("business_profile_id")
            await self.db.kyc_documents.create_index("document_id", unique=True)
            await self.db.kyc_documents.create_index("director_id")

            await self.db.agreement_templates.create_index([("is_active", 1), ("version", -1)])
            await self.db.agreements.create_index("agreement_id", unique=True)
            await self.db.agreements.create_index("account_id")

            # One subscription per account
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            await self.db.subscriptions.create_index("account_id", unique=True)
            await self.db.subscriptions.create_index([("status", 1), ("end_date", 1)])

            # Payment idempotency
            await self.db.payments.create_index("payment_id", unique=True)
            await self.db.payments.create_index("transaction_id", unique=True, sparse=True)
            await self.db.payments.create_index([("subscription_id", 1), ("status", 1)])
            await self.db.payment_events.create_index("idempotency_key", unique=True)

            # Append-only trails
            await self.db.admin_actions.create_index([("target_account_id", 1), ("created_at", -1)])
            await self.db.audit_logs.create_index([("account_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.notifications.create_index([("account_id", 1), ("created_at", -1)])
            await self.db.notifications.create_index([("account_id", 1), ("read", 1)])
            await self.db.message_logs.create_index([("created_at", -1)])
            await self.db.message_logs.create_index([("account_id", 1), ("created_at", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist with different options, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.subscriptions.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ['DB_NAME']
        client = AsyncIOMotorClient(mongo_url, tz_aware=True)
        db = client[db_name]
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
