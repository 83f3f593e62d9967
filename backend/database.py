from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
            db_name = os.environ.get('DB_NAME', 'order_lifecycle')
            # tz_aware so deadline comparisons stay in UTC
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {db_name}")

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
        """Run a block of writes as one multi-document transaction.

        Yields the client session; pass it as ``session=`` to every call that
        must commit or abort together. Requires a replica set deployment.

        Usage:
            async with database.transaction() as session:
                await db.orders.update_one(..., session=session)
                await db.orders_history.insert_one(..., session=session)
        """
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def _create_indexes(self):
        """Create MongoDB indexes for efficient queries."""
        try:
            # Orders - unique business identifiers
            await self.db.orders.create_index("order_id", unique=True)
            try:
                await self.db.orders.create_index("query_code", unique=True, sparse=True)
                await self.db.orders.create_index("work_code", unique=True, sparse=True)
            except Exception:
                pass  # Index may already exist with different options
            # Deadline sweep
            await self.db.orders.create_index([("status", 1), ("deadline_at", 1)])
            await self.db.orders.create_index("writer_id")

            # Order history - timeline per order
            await self.db.orders_history.create_index([("order_id", 1), ("created_at", -1)])

            # Users - admin fan-out
            await self.db.users.create_index("user_id", unique=True)
            await self.db.users.create_index([("role", 1), ("status", 1)])

            # Notifications - inbox and unread sweep
            await self.db.notifications.create_index("notification_id", unique=True)
            await self.db.notifications.create_index([("recipient_id", 1), ("is_read", 1), ("created_at", -1)])
            await self.db.notifications.create_index(
                [("reminder_tracked", 1), ("is_read", 1), ("severity", 1), ("created_at", 1)]
            )

            # Reminder markers - one per (subject, recipient)
            try:
                await self.db.reminder_markers.create_index(
                    [("subject_type", 1), ("subject_id", 1), ("recipient_id", 1)],
                    unique=True
                )
            except Exception:
                pass

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("actor_id")

            # Side-effect retry queue (outbox pattern)
            await self.db.side_effect_queue.create_index([("status", 1), ("next_run_at", 1)])
            await self.db.side_effect_queue.create_index("effect_id", unique=True)
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.orders.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
        db_name = os.environ.get('DB_NAME', 'order_lifecycle')
        client = AsyncIOMotorClient(mongo_url, tz_aware=True)
        db = client[db_name]
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
