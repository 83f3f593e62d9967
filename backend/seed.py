"""
Idempotent seed for local development: one user per role plus a sample order
waiting for a quotation. Prints a bearer token for each seeded user.
"""
import asyncio
from datetime import datetime, timezone
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

from auth import create_access_token
from database import get_db_context
from services.order_workflow import OrderStatus

SEED_USERS = [
    {"user_id": "seed-client", "role": "client", "name": "Sample Client", "email": "client@example.com"},
    {"user_id": "seed-bde", "role": "bde", "name": "Sample BDE", "email": "bde@example.com"},
    {"user_id": "seed-writer", "role": "writer", "name": "Sample Writer", "email": "writer@example.com"},
    {"user_id": "seed-admin", "role": "admin", "name": "Sample Admin",
     "email": os.environ.get("SEED_ADMIN_EMAIL", "admin@example.com")},
]

SEED_ORDER_ID = "ORD-SEED-1"


async def seed_database():
    async with get_db_context() as db:
        print("Seeding database (idempotent)...")
        now = datetime.now(timezone.utc)

        for user in SEED_USERS:
            result = await db.users.update_one(
                {"user_id": user["user_id"]},
                {"$setOnInsert": {**user, "status": "ACTIVE", "created_at": now}},
                upsert=True,
            )
            print(f"  {user['role']:<7} {user['user_id']}: {'created' if result.upserted_id else 'exists'}")

        result = await db.orders.update_one(
            {"order_id": SEED_ORDER_ID},
            {"$setOnInsert": {
                "order_id": SEED_ORDER_ID,
                "query_code": "QRY_SEED0001",
                "paper_topic": "Sample research brief",
                "client_id": "seed-client",
                "bde_id": "seed-bde",
                "writer_id": None,
                "currency": "GBP",
                "amount": 200,
                "status": int(OrderStatus.PENDING_QUERY),
                "created_at": now,
                "updated_at": now,
            }},
            upsert=True,
        )
        print(f"  order   {SEED_ORDER_ID}: {'created' if result.upserted_id else 'exists'}")

        print("\nBearer tokens:")
        for user in SEED_USERS:
            token = create_access_token({"user_id": user["user_id"], "role": user["role"], "name": user["name"]})
            print(f"  {user['role']:<7} {token}")
        print("\nSeed complete.")


if __name__ == "__main__":
    asyncio.run(seed_database())
