"""
Seed script for the funding management service.

Creates:
- Withdrawal policies for predict, actual_user and actual_fin
  (SUBMITTED only, 24h window, 3 attempts, approval required)
- Unique indexes on every funding collection
- A one-off admin access token for local use
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent))

import config
from auth import create_access_token
from funding_engine import FundingServices, MotorDocumentStore, WithdrawalPolicy
from permissions import RolePermissionGate

DEFAULT_POLICIES = [
    WithdrawalPolicy(module_type=module_type, allowed_statuses=["SUBMITTED"],
                     time_limit=24, max_attempts=3, require_approval=True)
    for module_type in ("predict", "actual_user", "actual_fin")
]


async def seed_database():
    """Seed the database with initial data"""

    client = AsyncIOMotorClient(config.MONGO_URL)
    services = FundingServices(MotorDocumentStore(client, client[config.DB_NAME]), RolePermissionGate())

    print("🌱 Starting database seeding...")

    try:
        # ============================================
        # 1. INDEXES
        # ============================================
        await services.ensure_indexes()
        print("   ✅ Indexes created")

        # ============================================
        # 2. WITHDRAWAL POLICIES
        # ============================================
        print("⚙️  Creating withdrawal policies...")
        existing = {p.module_type for p in await services.policies.list()}
        for policy in DEFAULT_POLICIES:
            if policy.module_type in existing:
                print(f"   ⚠️  Policy for {policy.module_type} already exists. Skipping...")
                continue
            await services.policies.upsert(policy)
            print(f"   ✅ Policy created: {policy.module_type} -> {policy.allowed_statuses}")

        # ============================================
        # SUMMARY
        # ============================================
        token = create_access_token({"user_id": "admin", "role": "ADMIN"})
        print("\n" + "="*60)
        print("✨ DATABASE SEEDING COMPLETE ✨")
        print("="*60)
        print(f"\n🔑 Admin token (30 min): {token}")
        print("\n📖 API Documentation: http://localhost:8001/docs")
        print("="*60)

    except Exception as e:
        print(f"\n❌ Error during seeding: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(seed_database())
