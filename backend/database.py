from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
            db_name = os.environ.get('DB_NAME', 'flowforge')
            self.client = AsyncIOMotorClient(mongo_url)
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

    async def _create_indexes(self):
        """Create MongoDB indexes for efficient queries."""
        try:
            await self.db.users.create_index("uid", unique=True)
            try:
                await self.db.users.create_index("email", unique=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.users.create_index("stripe_customer_id", sparse=True)
            await self.db.users.create_index("plan")

            # Workflow history - newest first per user
            await self.db.workflows.create_index("workflow_id", unique=True)
            await self.db.workflows.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.workflows.create_index("platform")

            # Conversion opportunities - one row per limit hit
            await self.db.conversion_opportunities.create_index([("user_id", 1), ("converted", 1)])
            await self.db.conversion_opportunities.create_index("timestamp")

            # Usage analytics - daily/monthly aggregation keys
            await self.db.usage_analytics.create_index([("month", 1), ("platform", 1)])
            await self.db.usage_analytics.create_index("date")
            await self.db.usage_analytics.create_index("user_id")

            await self.db.analytics_events.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.analytics_events.create_index([("event", 1), ("timestamp", -1)])
            await self.db.business_metrics.create_index([("metric", 1), ("timestamp", -1)])

            # Stripe webhook idempotency - duplicate event_id must not process twice
            try:
                await self.db.stripe_events.create_index("event_id", unique=True)
            except Exception:
                pass
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            logger.warning(f"Index creation failed: {e}")

database = Database()
