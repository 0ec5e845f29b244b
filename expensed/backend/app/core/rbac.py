# backend/app/core/rbac.py
"""
Super-admin permission gate and organization role checks.

Every ``admin_*`` billing action resolves its required ``AdminPermission``
from ``ADMIN_ACTION_PERMISSIONS`` and calls ``AuthorizationGate.require``
before touching its target.
"""
import asyncio
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import AdminPermission, OrganizationRole
from app.core.exceptions import PermissionDenied
from app.core.logging import get_logger
from app.db.models.super_admin import SuperAdmin
from app.db.repositories.super_admin_repository import SuperAdminRepository

logger = get_logger(__name__)


ADMIN_ACTION_PERMISSIONS: Dict[str, AdminPermission] = {
    "admin_get_all_subscriptions": AdminPermission.VIEW_ORGANIZATIONS,
    "admin_apply_discount": AdminPermission.MANAGE_SUBSCRIPTIONS,
    "admin_issue_refund": AdminPermission.ISSUE_REFUNDS,
    "admin_create_coupon": AdminPermission.CREATE_COUPONS,
    "admin_deactivate_coupon": AdminPermission.CREATE_COUPONS,
    "admin_pause_subscription": AdminPermission.MANAGE_SUBSCRIPTIONS,
    "admin_resume_subscription": AdminPermission.MANAGE_SUBSCRIPTIONS,
    "admin_cancel_subscription": AdminPermission.MANAGE_SUBSCRIPTIONS,
    "admin_extend_trial": AdminPermission.MANAGE_SUBSCRIPTIONS,
    "admin_delete_organization": AdminPermission.DELETE_ORGANIZATIONS,
    "admin_update_plan": AdminPermission.MANAGE_PLANS,
    "admin_get_analytics": AdminPermission.VIEW_ANALYTICS,
    "admin_get_audit_log": AdminPermission.VIEW_ANALYTICS,
    "admin_add_super_admin": AdminPermission.MANAGE_SUPER_ADMINS,
}

ROLE_HIERARCHY = [
    OrganizationRole.EMPLOYEE,
    OrganizationRole.MANAGER,
    OrganizationRole.FINANCE,
    OrganizationRole.ADMIN,
]


def role_at_least(role: Optional[str], required: OrganizationRole) -> bool:
    """True when ``role`` is ``required`` or above it in the organization hierarchy"""
    try:
        current = OrganizationRole(role)
    except ValueError:
        return False
    return ROLE_HIERARCHY.index(current) >= ROLE_HIERARCHY.index(required)


class AuthorizationGate:
    """
    Permission set of one authenticated actor.

    The super-admin record is loaded once per gate. ``wait_for_admin_check``
    joins the in-flight load instead of answering from the empty initial
    state, so the first decision for a new actor already sees the stored
    permissions. No active record means every permission is false.
    """

    def __init__(self, session: AsyncSession, user_id: Optional[str]):
        self.session = session
        self.user_id = user_id
        self._permissions: Dict[str, bool] = {}
        self._is_super_admin = False
        self._load_task: Optional[asyncio.Task] = None

    async def _load(self) -> None:
        admin: Optional[SuperAdmin] = None
        if self.user_id:
            admin = await SuperAdminRepository(self.session).get_active_by_user(self.user_id)

        if admin is None:
            self._permissions = {}
            self._is_super_admin = False
            return

        stored = admin.permissions or {}
        self._permissions = {
            permission.value: stored.get(permission.value) is True
            for permission in AdminPermission
        }
        self._is_super_admin = True

    def load(self) -> "asyncio.Task[None]":
        """Start the permission load, or return the one already running"""
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
        return self._load_task

    async def wait_for_admin_check(self) -> bool:
        """Resolve once the initial load finished; returns whether the actor is a super admin"""
        task = self.load()
        try:
            await task
        except Exception:
            # Allow a later call to retry the load
            self._load_task = None
            raise
        return self._is_super_admin

    @property
    def is_loaded(self) -> bool:
        return self._load_task is not None and self._load_task.done() and self._load_task.exception() is None

    @property
    def is_super_admin(self) -> bool:
        return self._is_super_admin

    @property
    def permissions(self) -> Dict[str, bool]:
        return dict(self._permissions)

    def has_permission(self, permission: AdminPermission) -> bool:
        """Synchronous check against whatever is loaded; unloaded means denied"""
        if not self.is_loaded:
            return False
        return self._permissions.get(AdminPermission(permission).value, False)

    async def check(self, permission: AdminPermission) -> bool:
        await self.wait_for_admin_check()
        return self.has_permission(permission)

    async def require(self, permission: AdminPermission) -> None:
        if not await self.check(permission):
            logger.warning(
                f"Permission denied: {AdminPermission(permission).value}",
                extra={"user_id": self.user_id},
            )
            raise PermissionDenied(f"Missing permission: {AdminPermission(permission).value}")

    async def require_action(self, action: str) -> None:
        permission = ADMIN_ACTION_PERMISSIONS.get(action)
        if permission is None:
            raise PermissionDenied(f"Unknown admin action: {action}")
        await self.require(permission)
