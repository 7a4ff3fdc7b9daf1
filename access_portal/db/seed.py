"""Seed the database with a demo catalog and a bootstrap admin.

Run with ``python -m access_portal.db.seed``. Every step is idempotent: existing
systems, instances, tiers and users are left as they are.
"""
import asyncio

from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.config import settings
from access_portal.db.database import async_session, close_db, init_db
from access_portal.db.models import System, User
from access_portal.services import catalog, roles, users

# System name -> (description, instances, tiers)
# Instances are (name, region, environment), tiers are (name, description)
CATALOG = {
    "Magento": (
        "E-commerce platform for UCOOK, Faithful to Nature and PetHeaven",
        [
            ("UCOOK Production", "ZA", "production"),
            ("Faithful to Nature Production", "ZA", "production"),
            ("PetHeaven Production", "ZA", "production"),
            ("UCOOK Staging", "ZA", "staging"),
        ],
        [
            ("Viewer", "Read-only access to products and orders"),
            ("Editor", "Can edit products, manage inventory and process orders"),
            ("Admin", "Full administrative access including settings and user management"),
        ],
    ),
    "Acumatica": (
        "ERP system for financial and inventory management",
        [
            ("Production", "ZA", "production"),
            ("Staging", "ZA", "staging"),
            ("Development", "ZA", "development"),
        ],
        [
            ("Viewer", "Read-only access to financial reports and data"),
            ("Accountant", "Can create and edit journal entries"),
            ("Admin", "Full system administration"),
        ],
    ),
    "Google Analytics": (
        "Web analytics and tracking platform",
        [("Production", "Global", "production"), ("Staging", "Global", "staging")],
        [
            ("Viewer", "Read-only access to reports and dashboards"),
            ("Analyst", "Can create custom reports and segments"),
            ("Admin", "Full access including account management"),
        ],
    ),
    "Zoho People": (
        "HR management and employee database",
        [("Production", "ZA", "production"), ("Staging", "ZA", "staging")],
        [
            ("Employee", "Standard employee access to own profile and leave requests"),
            ("Manager", "Can view team members and approve leave requests"),
            ("HR Admin", "Full HR administration"),
        ],
    ),
    "Shopify": (
        "E-commerce platform for SKOON and other brands",
        [("SKOON Production", "ZA", "production"), ("SKOON Staging", "ZA", "staging")],
        [
            ("Viewer", "Read-only access to store and products"),
            ("Staff", "Can manage products, orders and customers"),
            ("Admin", "Full store administration"),
        ],
    ),
}


async def seed_catalog(db: AsyncSession) -> dict[str, System]:
    """Create missing systems with their instances and tiers."""
    system_map = {}
    for name, (description, instances, tiers) in CATALOG.items():
        system = await catalog.find_system_by_name(db, name)
        if not system:
            system = await catalog.create_system(db, name, description)
        system_map[name] = system

        for instance_name, region, environment in instances:
            if not await catalog.find_instance_by_name(db, system.id, instance_name):
                await catalog.create_instance(
                    db, system.id, instance_name, region=region, environment=environment
                )
        for tier_name, tier_description in tiers:
            if not await catalog.find_tier_by_name(db, system.id, tier_name):
                await catalog.create_tier(db, system.id, tier_name, tier_description)

    return system_map


async def seed_admin_user(db: AsyncSession, email: str) -> User:
    """Create (or restore) the bootstrap admin and give it the admin role."""
    admin = await users.get_or_create_by_email(db, email)
    if not await roles.is_admin(db, admin.id):
        await roles.assign_role(db, admin.id, "admin")
        print(f"Granted admin role to {admin.email}")
    return admin


async def seed_database():
    """Run all seed operations."""
    await init_db()

    async with async_session() as db:
        print("Seeding catalog...")
        system_map = await seed_catalog(db)
        print(f"  Created/verified {len(system_map)} systems")

        print("Checking admin user...")
        await seed_admin_user(db, settings.auth.bootstrap_admin_email)

        await db.commit()
        print("Database seeding complete!")

    await close_db()


if __name__ == "__main__":
    asyncio.run(seed_database())
