import asyncio

from app.core.constants import AdminPermission
from app.db.database import async_session_local, seed_default_plans
from app.db.repositories.organization_repository import OrganizationRepository
from app.db.repositories.plan_repository import PlanRepository
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.db.repositories.super_admin_repository import SuperAdminRepository


async def seed_data():
    async with async_session_local() as session:
        created = await seed_default_plans(session)
        print(f"Plans seeded: {created} new")

        org_repo = OrganizationRepository(session)
        subscription_repo = SubscriptionRepository(session)
        admin_repo = SuperAdminRepository(session)

        # Create or get demo organization
        organization = await org_repo.get("demo-org-001")
        if organization:
            print(f"Organization already exists: {organization.name}")
        else:
            organization = await org_repo.create({"id": "demo-org-001", "name": "Demo Company"})
            free_plan = await PlanRepository(session).get_by_name("free")
            await subscription_repo.create_for_organization(organization.id, free_plan)
            print(f"Created organization: {organization.name}")

        # Create or get platform super admin
        admin = await admin_repo.get_by_user("demo-admin-001")
        if admin:
            print(f"Super admin already exists: {admin.user_id}")
        else:
            admin = await admin_repo.create({
                "user_id": "demo-admin-001",
                "display_name": "Demo Admin",
                "permissions": {permission.value: True for permission in AdminPermission},
            })
            print(f"Created super admin: {admin.user_id}")

        await session.commit()
        print("\nRequest headers:")
        print("X-User-ID: demo-admin-001")
        print(f"X-Organization-ID: {organization.id}")
        print("X-Organization-Role: admin")

if __name__ == "__main__":
    asyncio.run(seed_data())
