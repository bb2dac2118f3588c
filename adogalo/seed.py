"""
Seed script for a local Adogalo environment.

Creates:
- 1 demo project (client + vendor) with 3 milestones, termin schedule,
  ledger and retensi agreement
- 1 manager account allowed on that project
- Bearer tokens for admin, manager, client and vendor (dev only)
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from pathlib import Path
from dotenv import load_dotenv
import os

from adogalo.auth import create_access_token
from adogalo.core.access import ROLE_ADMIN, ROLE_MANAGER, ROLE_USER
from adogalo.core.services import build_services, ensure_indexes

# Load environment
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'adogalo')

ADMIN_EMAIL = "admin@adogalo.example.com"
MANAGER_EMAIL = "manager@adogalo.example.com"
CLIENT_EMAIL = "client@adogalo.example.com"
VENDOR_EMAIL = "vendor@adogalo.example.com"


async def seed_database():
    """Seed the database with a demo project"""

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]
    use_transactions = os.environ.get("MONGO_TRANSACTIONS", "true").lower() in ("1", "true", "yes", "on")
    services = build_services(db, client, use_transactions=use_transactions)
    admin = {"email": ADMIN_EMAIL, "role": ROLE_ADMIN, "user_id": "seed-admin"}

    print("🌱 Starting database seeding...")

    try:
        await ensure_indexes(db)

        existing = await db.projects.find_one({"client_email": CLIENT_EMAIL, "judul": "Renovasi Rumah Demo"})
        if existing:
            project_id = str(existing["_id"])
            print(f"ℹ️  Demo project already exists: {project_id}")
        else:
            result = await services.projects.create_project(admin, {
                "judul": "Renovasi Rumah Demo",
                "client_name": "Budi Client",
                "client_email": CLIENT_EMAIL,
                "vendor_name": "CV Vendor Jaya",
                "vendor_email": VENDOR_EMAIL,
                "budget": 30000000,
                "client_fee_percent": 1,
                "vendor_fee_percent": 2,
                "retensi_percent": 5,
                "retensi_days": 30,
                "milestones": [
                    {"judul": "Pekerjaan Pondasi", "persentase": 30, "deskripsi": "Galian dan pondasi batu kali"},
                    {"judul": "Pekerjaan Struktur", "persentase": 40, "deskripsi": "Kolom, balok dan dinding"},
                    {"judul": "Finishing", "persentase": 30, "deskripsi": "Plester, cat dan keramik"},
                ],
            })
            project_id = str(result["project"]["_id"])
            print(f"✅ Created demo project: {project_id}")

        manager = await db.users.find_one({"email": MANAGER_EMAIL})
        if manager:
            manager_id = str(manager["_id"])
            print(f"ℹ️  Manager already exists: {MANAGER_EMAIL}")
        else:
            result = await services.managers.create_manager(admin, "Manager Demo", MANAGER_EMAIL, [project_id])
            manager_id = str(result["manager"]["_id"])
            print(f"✅ Created manager: {MANAGER_EMAIL}")

        print("\n🔑 Dev tokens (Authorization: Bearer <token>):")
        print(f"   admin   : {create_access_token({'email': ADMIN_EMAIL, 'role': ROLE_ADMIN})}")
        print(f"   manager : {create_access_token({'email': MANAGER_EMAIL, 'role': ROLE_MANAGER, 'user_id': manager_id})}")
        print(f"   client  : {create_access_token({'email': CLIENT_EMAIL, 'role': ROLE_USER})}")
        print(f"   vendor  : {create_access_token({'email': VENDOR_EMAIL, 'role': ROLE_USER})}")
        print("\n🎉 Database seeding completed successfully!")

    finally:
        client.close()


def main():
    asyncio.run(seed_database())


if __name__ == "__main__":
    main()
