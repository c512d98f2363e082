"""Seed script for development data.

Creates:
- One active plan per tier (free_trial, basic, pro, enterprise)
- Owner user "owner@tenancy.local"
- Workspace "Tenancy Dev" owned by that user, on a free trial

Can be run multiple times safely (skips if exists).
"""
import asyncio
import os
from decimal import Decimal

from sqlalchemy import select

from tenancy.core.database import get_db
from tenancy.core.security import create_access_token
from tenancy.models.enums import PlanTier, WorkspaceRole
from tenancy.models.plan import Plan
from tenancy.models.user import User
from tenancy.models.workspace import Workspace, workspace_members
from tenancy.schemas.metadata import PlanLimits
from tenancy.services.subscription_service import SubscriptionService

PLANS: dict[PlanTier, tuple[str, Decimal, PlanLimits]] = {
    PlanTier.FREE_TRIAL: ("Free Trial", Decimal("0"), PlanLimits(users=3, patients=100, locations=1)),
    PlanTier.BASIC: ("Basic", Decimal("49.00"), PlanLimits(users=5, patients=1000, locations=1)),
    PlanTier.PRO: ("Pro", Decimal("149.00"), PlanLimits(users=25, patients=10000, locations=5)),
    PlanTier.ENTERPRISE: ("Enterprise", Decimal("499.00"), PlanLimits()),
}


async def seed_data():
    """Seed development data."""
    print("Starting database seeding...")

    workspace_name = os.environ.get("SEED_WORKSPACE_NAME", "Tenancy Dev")
    owner_email = os.environ.get("SEED_OWNER_EMAIL", "owner@tenancy.local").lower()

    async for db in get_db():
        for tier, (name, price, limits) in PLANS.items():
            result = await db.execute(select(Plan).where(Plan.tier == tier, Plan.version == 1))
            if result.scalar_one_or_none():
                print(f"✓ Plan '{name}' already exists")
                continue
            db.add(Plan(name=name, tier=tier, version=1, price=price, limits=limits.to_column()))
            print(f"✓ Created plan '{name}'")
        await db.flush()

        result = await db.execute(select(User).where(User.email == owner_email))
        owner = result.scalar_one_or_none()
        if owner:
            print(f"✓ Owner '{owner_email}' already exists (ID: {owner.id})")
        else:
            owner = User(email=owner_email, first_name="Dev", last_name="Owner")
            db.add(owner)
            await db.flush()
            print(f"✓ Created owner '{owner_email}' (ID: {owner.id})")

        result = await db.execute(select(Workspace).where(Workspace.owner_id == owner.id))
        workspace = result.scalar_one_or_none()
        if workspace:
            print(f"✓ Workspace '{workspace.name}' already exists (ID: {workspace.id})")
        else:
            workspace = Workspace(name=workspace_name, owner_id=owner.id)
            db.add(workspace)
            await db.flush()
            await db.execute(
                workspace_members.insert().values(workspace_id=workspace.id, user_id=owner.id)
            )
            owner.workspace_id = workspace.id
            owner.workspace_role = WorkspaceRole.OWNER
            subscription = await SubscriptionService(db).start_trial(workspace)
            print(f"✓ Created workspace '{workspace_name}' (ID: {workspace.id})")
            print(f"✓ Trial ends {subscription.trial_end_date.date().isoformat()}")

        await db.commit()

    print("\n✓ Database seeding completed successfully!")
    print("\nBearer token for the owner (30 minutes):")
    print(f"  {create_access_token({'sub': str(owner.id)})}")


if __name__ == "__main__":
    asyncio.run(seed_data())
