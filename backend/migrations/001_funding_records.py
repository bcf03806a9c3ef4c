#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Funding Records Foundation

Creates:
1. predict_records, actual_user_records, actual_fin_records with a unique
   (fund_need_key, year, month) index
2. audit_records with a unique (fund_need_key, year, month) index
3. withdrawal_requests and withdrawal_configs lookup indexes
4. record_history lookup index

Index names match the ones the service ensures at startup.

Run: python migrations/001_funding_records.py
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

load_dotenv()

MIGRATION_ID = "001_funding_records"

RECORD_COLLECTIONS = ["predict_records", "actual_user_records", "actual_fin_records"]

PERIOD_KEY = [("fund_need_key", 1), ("year", 1), ("month", 1)]


async def run_migration():
    """Execute the funding records migration."""

    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
    db_name = os.environ.get('DB_NAME', 'funding_management')

    print(f"Connecting to: {mongo_url}")
    print(f"Database: {db_name}")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]
    indexes_created = []

    try:
        # Test connection
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        existing = await db.list_collection_names()

        # =====================================================
        # 1. Record collections
        # =====================================================
        for name in RECORD_COLLECTIONS + ["audit_records"]:
            if name not in existing:
                await db.create_collection(name)
                print(f"✓ Created {name} collection")
            else:
                print(f"• {name} collection already exists")

            await db[name].create_index(PERIOD_KEY, unique=True, name="uniq_fund_need_key_year_month")
            await db[name].create_index([("year", -1), ("month", -1), ("status", 1)], name="idx_period_status")
            indexes_created += [f"{name}.uniq_fund_need_key_year_month", f"{name}.idx_period_status"]
            print(f"✓ Created indexes on {name}")

        # =====================================================
        # 2. Withdrawal collections
        # =====================================================
        await db.withdrawal_requests.create_index(
            [("record_id", 1), ("request_status", 1)],
            name="idx_withdrawal_record_status"
        )
        await db.withdrawal_requests.create_index([("requested_at", -1)], name="idx_withdrawal_requested_at")
        await db.withdrawal_configs.create_index([("module_type", 1)], unique=True, name="uniq_module_type")
        indexes_created += [
            "withdrawal_requests.idx_withdrawal_record_status",
            "withdrawal_requests.idx_withdrawal_requested_at",
            "withdrawal_configs.uniq_module_type",
        ]
        print("✓ Created withdrawal indexes")

        # =====================================================
        # 3. History
        # =====================================================
        await db.record_history.create_index(
            [("entity_type", 1), ("entity_id", 1), ("timestamp", -1)],
            name="idx_history_entity"
        )
        indexes_created.append("record_history.idx_history_entity")
        print("✓ Created index: idx_history_entity")

        # =====================================================
        # Migration metadata
        # =====================================================
        await db.migrations.update_one(
            {"migration_id": MIGRATION_ID},
            {"$set": {
                "migration_id": MIGRATION_ID,
                "description": "Funding records, audit decisions and withdrawal workflow",
                "indexes_created": indexes_created,
                "executed_at": datetime.utcnow(),
                "status": "success"
            }},
            upsert=True
        )
        print("\n✓ Migration record saved")

        print("\n" + "="*50)
        print("MIGRATION COMPLETE: Funding Records Foundation")
        print("="*50)

        return {"status": "success", "indexes": len(indexes_created)}

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
