"""
Seed admin roles, permissions and role grants.

Idempotent: running it again only adds what is missing.

Usage:
    python -m scripts.seed_admin_roles
    python -m scripts.seed_admin_roles --assign <USER_ID> support_admin
"""
import argparse
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import AsyncSessionLocal, dialect_insert, engine, Base
from app.core.logging_config import setup_logging
from app.models.admin_role import AppRole, UserRole, AdminPermission, AdminRolePermission
from app.models.user import User
from app.models import user_subscription  # noqa: F401
from app.services.admin_permissions import ADMIN_PERMISSIONS, ROLE_PERMISSIONS

logger = logging.getLogger(__name__)


class AdminRoleSeeder:
    """Creates the role/permission rows used by has_admin_permission()."""

    async def seed(self, db: AsyncSession) -> dict:
        """
        Insert missing roles, permissions and grants.

        Args:
            db (AsyncSession): Database session

        Returns:
            dict: Number of rows created per table
        """
        created = {"roles": 0, "permissions": 0, "grants": 0}

        result = await db.execute(select(AdminPermission))
        permissions = {permission.key: permission for permission in result.scalars().all()}
        for key, description in ADMIN_PERMISSIONS.items():
            if key not in permissions:
                permissions[key] = AdminPermission(key=key, description=description)
                db.add(permissions[key])
                created["permissions"] += 1

        result = await db.execute(select(AppRole))
        roles = {role.role: role for role in result.scalars().all()}
        for role_name in ROLE_PERMISSIONS:
            if role_name not in roles:
                roles[role_name] = AppRole(role=role_name)
                db.add(roles[role_name])
                created["roles"] += 1

        await db.flush()

        result = await db.execute(select(AdminRolePermission.role_id, AdminRolePermission.permission_id))
        grants = {(row.role_id, row.permission_id) for row in result.all()}
        for role_name, permission_keys in ROLE_PERMISSIONS.items():
            for key in permission_keys:
                grant = (roles[role_name].id, permissions[key].id)
                if grant not in grants:
                    db.add(AdminRolePermission(role_id=grant[0], permission_id=grant[1]))
                    grants.add(grant)
                    created["grants"] += 1

        await db.commit()
        logger.info(f"[SEED] Admin roles seeded: {created}")
        return created

    async def assign_role(self, db: AsyncSession, user_id: str, role_name: str) -> bool:
        """
        Grant a role to a user.

        Args:
            db (AsyncSession): Database session
            user_id (str): Supabase user id
            role_name (str): One of the seeded roles

        Returns:
            bool: True if the role was newly assigned

        Raises:
            ValueError: If the role does not exist
        """
        result = await db.execute(select(AppRole).where(AppRole.role == role_name))
        role = result.scalar_one_or_none()
        if role is None:
            raise ValueError(f"Role '{role_name}' does not exist, run the seeder first")

        insert = dialect_insert(db)
        await db.execute(insert(User).values(id=user_id).on_conflict_do_nothing(index_elements=["id"]))

        result = await db.execute(
            select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role.id)
        )
        if result.scalar_one_or_none() is not None:
            await db.commit()
            logger.info(f"[SEED] {user_id} already has role {role_name}")
            return False

        db.add(UserRole(user_id=user_id, role_id=role.id))
        await db.commit()
        logger.info(f"[SEED] Assigned role {role_name} to {user_id}")
        return True


async def main(assign: list[str] | None = None) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    seeder = AdminRoleSeeder()
    async with AsyncSessionLocal() as db:
        await seeder.seed(db)
        if assign:
            user_id, role_name = assign
            await seeder.assign_role(db, user_id, role_name)

    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed admin roles and permissions")
    parser.add_argument(
        "--assign",
        nargs=2,
        metavar=("USER_ID", "ROLE"),
        help="Also grant ROLE to USER_ID",
    )
    args = parser.parse_args()

    setup_logging()
    asyncio.run(main(args.assign))
