"""
Role based admin permissions.

Users hold roles (user_roles), roles are granted permissions
(admin_role_permissions). The super_admin role implies every permission.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.admin_role import AppRole, UserRole, AdminPermission, AdminRolePermission

SUPER_ADMIN_ROLE = "super_admin"

ADMIN_PERMISSIONS = {
    "billing.read": "View billing state and invoices",
    "billing.write": "Change billing state",
    "support.read": "View support cases",
    "support.write": "Update and close support cases",
    "impersonation.start": "Start an impersonation session",
    "impersonation.stop": "Stop an impersonation session",
    "audit.read": "Read the admin audit log",
    "roles.manage": "Grant and revoke admin roles",
}

ROLE_PERMISSIONS = {
    "billing_admin": ["billing.read", "billing.write", "support.read", "audit.read"],
    "support_admin": ["support.read", "support.write", "audit.read"],
    "impersonation_admin": ["support.read", "impersonation.start", "impersonation.stop", "audit.read"],
    SUPER_ADMIN_ROLE: list(ADMIN_PERMISSIONS),
}


async def get_user_roles(db: AsyncSession, user_id: str) -> list[str]:
    result = await db.execute(
        select(AppRole.role)
        .join(UserRole, UserRole.role_id == AppRole.id)
        .where(UserRole.user_id == user_id)
        .order_by(AppRole.role)
    )
    return list(result.scalars().all())


async def has_admin_permission(db: AsyncSession, user_id: str, permission_key: str) -> bool:
    """
    Check whether a user holds a permission through any of their roles.

    Args:
        db: Database session
        user_id: User to check
        permission_key: e.g. 'support.write'

    Returns:
        bool: True if granted (always True for super_admin)
    """
    result = await db.execute(
        select(AppRole.role, AdminPermission.key)
        .select_from(UserRole)
        .join(AppRole, AppRole.id == UserRole.role_id)
        .outerjoin(AdminRolePermission, AdminRolePermission.role_id == AppRole.id)
        .outerjoin(AdminPermission, AdminPermission.id == AdminRolePermission.permission_id)
        .where(UserRole.user_id == user_id)
    )

    for role, key in result.all():
        if role == SUPER_ADMIN_ROLE or key == permission_key:
            return True
    return False
